"""Listing sentinel package.

Ingests exchange listing notices from an unreliable upstream, normalizes them
into content-addressed events and guarantees each real listing surfaces once,
with the resilience layer (breaker, rate limiter, retrying HTTP client) and
latency instrumentation that make continuous polling safe.
"""

__version__ = "0.1.0"

__all__: list[str] = []
