"""
Pipeline latency checkpoints.

A flow (one detection attempt) is marked at named checkpoints; whenever both
ends of a known adjacent pair are present the delta is fed into the shared
``Quantiles`` under the pair name.  Deltas over a soft threshold bump the
``slow_warnings`` counter and log a warning; nothing here ever fails the
pipeline.

``mark()`` on an unknown flow creates it instead of dropping the measurement,
because concurrent paths may race to start the same flow.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .logging_utils import get_logger
from .quantiles import Quantiles

log = get_logger("latency")

T0_FETCH_DONE = "t0_fetch_done"
T0_DETECTED = "t0_detected"
DEDUP_INSERTED = "dedup_inserted"
ORDER_SENT = "order_sent"
ORDER_ACK = "order_ack"

CHECKPOINTS = (T0_FETCH_DONE, T0_DETECTED, DEDUP_INSERTED, ORDER_SENT, ORDER_ACK)
TERMINAL_CHECKPOINT = ORDER_ACK

# (from, to, metric name, soft threshold ms or None)
STAGE_PAIRS: Tuple[Tuple[str, str, str, Optional[float]], ...] = (
    (T0_FETCH_DONE, T0_DETECTED, "t0_fetch", None),
    (T0_DETECTED, DEDUP_INSERTED, "t0_detect_to_insert", 300.0),
    (DEDUP_INSERTED, ORDER_SENT, "t0_insert_to_order", 1500.0),
    (ORDER_SENT, ORDER_ACK, "t0_order_to_ack", None),
)

COUNTER_NAMES = ("new", "dup", "future", "stale", "slow_warnings")


@dataclass
class LatencyFlow:
    flow_id: str
    start_time: int
    marks: Dict[str, int] = field(default_factory=dict)


class LatencyTracker:
    def __init__(
        self,
        quantiles: Optional[Quantiles] = None,
        clock_ns: Callable[[], int] = time.perf_counter_ns,
        thresholds: Optional[Dict[str, float]] = None,
    ):
        self.quantiles = quantiles or Quantiles()
        self._clock_ns = clock_ns
        self._flows: Dict[str, LatencyFlow] = {}
        self._thresholds: Dict[str, Optional[float]] = {
            name: thr for _, _, name, thr in STAGE_PAIRS
        }
        if thresholds:
            self._thresholds.update(thresholds)
        self.counters: Dict[str, int] = {name: 0 for name in COUNTER_NAMES}

    # ---------------------------------------------------------------- flows

    def begin(self, flow_id: str) -> LatencyFlow:
        """Start a flow; calling it again for the same id is a no-op."""
        flow = self._flows.get(flow_id)
        if flow is None:
            flow = LatencyFlow(flow_id=flow_id, start_time=self._clock_ns())
            self._flows[flow_id] = flow
        return flow

    def now_ns(self) -> int:
        return self._clock_ns()

    def mark(self, flow_id: str, checkpoint: str, at_ns: Optional[int] = None) -> None:
        """Record ``checkpoint`` now (or at ``at_ns``, a value from ``now_ns()``)."""
        if checkpoint not in CHECKPOINTS:
            log.debug("latency_unknown_checkpoint flow=%s checkpoint=%s", flow_id, checkpoint)
        flow = self._flows.get(flow_id)
        if flow is None:
            # fail-open: keep the measurement
            flow = self.begin(flow_id)
        flow.marks[checkpoint] = self._clock_ns() if at_ns is None else at_ns
        self._record_pairs(flow, checkpoint)
        if checkpoint == TERMINAL_CHECKPOINT:
            self.cleanup_flow(flow_id)

    def _record_pairs(self, flow: LatencyFlow, checkpoint: str) -> None:
        for start, end, name, _ in STAGE_PAIRS:
            if checkpoint not in (start, end):
                continue
            if start not in flow.marks or end not in flow.marks:
                continue
            delta_ms = (flow.marks[end] - flow.marks[start]) / 1_000_000.0
            self.quantiles.record(name, delta_ms)
            threshold = self._thresholds.get(name)
            if threshold is not None and delta_ms > threshold:
                self.counters["slow_warnings"] += 1
                log.warning(
                    "latency_slo_breach flow=%s stage=%s delta_ms=%.1f threshold_ms=%.0f",
                    flow.flow_id,
                    name,
                    delta_ms,
                    threshold,
                )

    def get_flow(self, flow_id: str) -> Optional[LatencyFlow]:
        return self._flows.get(flow_id)

    def cleanup_flow(self, flow_id: str) -> None:
        self._flows.pop(flow_id, None)

    def cleanup_all_flows(self) -> None:
        self._flows.clear()

    def sweep_expired(self, ttl_ms: float) -> int:
        """Drop flows started more than ``ttl_ms`` ago."""
        cutoff = self._clock_ns() - int(ttl_ms * 1_000_000)
        expired = [fid for fid, f in self._flows.items() if f.start_time < cutoff]
        for fid in expired:
            del self._flows[fid]
        if expired:
            log.debug("latency_flows_swept count=%d", len(expired))
        return len(expired)

    @property
    def active_flows(self) -> int:
        return len(self._flows)

    # ------------------------------------------------------------- counters

    def inc_new(self) -> None:
        self.counters["new"] += 1

    def inc_dup(self) -> None:
        self.counters["dup"] += 1

    def inc_future(self) -> None:
        self.counters["future"] += 1

    def inc_stale(self) -> None:
        self.counters["stale"] += 1

    def reset_counters(self) -> None:
        for name in self.counters:
            self.counters[name] = 0

    def get_metrics(self) -> Dict[str, Any]:
        stages: Dict[str, Any] = {}
        for _, _, name, _ in STAGE_PAIRS:
            s = self.quantiles.get_stats(name)
            if s is not None:
                stages[name] = {
                    "count": s["count"],
                    "p50": s["p50"],
                    "p95": s["p95"],
                    "p99": s["p99"],
                }
        return {
            "counters": dict(self.counters),
            "stages": stages,
            "active_flows": self.active_flows,
        }

    def stage_names(self) -> List[str]:
        return [name for _, _, name, _ in STAGE_PAIRS]
