import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _env_float_opt(name: str) -> Optional[float]:
    """
    Read an optional float from env. Returns None if unset, blank, or non-numeric.
    """
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    if raw == "" or raw.lower() in {"none", "null"} or raw.startswith("#"):
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _env_int(name: str, default: int) -> int:
    val = _env_float_opt(name)
    return default if val is None else int(val)


def _b(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in {
        "1",
        "true",
        "yes",
        "y",
        "on",
    }


@dataclass
class Settings:
    # --- Upstream notice board ---
    # Structured (JSON) rendering of the notice list.  Leave blank to rely on
    # the markup rendering only.
    notice_json_url: str = os.getenv(
        "NOTICE_JSON_URL", "https://api.bithumb.com/v1/notices"
    )
    # Markup (HTML) rendering of the same notice board.
    notice_html_url: str = os.getenv(
        "NOTICE_HTML_URL", "https://feed.bithumb.com/notice"
    )
    notice_poll_sec: float = float(os.getenv("NOTICE_POLL_SEC", "5") or "5")
    notice_source: str = os.getenv("NOTICE_SOURCE", "bithumb.notice")
    push_source: str = os.getenv("PUSH_SOURCE", "bithumb.ws")

    # --- Ticker stream (push channel) ---
    push_enabled: bool = _b("PUSH_ENABLED", True)
    push_ws_url: str = os.getenv("PUSH_WS_URL", "wss://pubwss.bithumb.com/pub/ws")
    # Snapshot of every traded KRW market; seeds the known-bases baseline.
    push_rest_url: str = os.getenv(
        "PUSH_REST_URL", "https://api.bithumb.com/public/ticker/ALL_KRW"
    )
    # Bases first seen this soon after a connect are treated as existing markets.
    push_warmup_ms: int = _env_int("PUSH_WARMUP_MS", 5_000)
    push_debounce_ms: int = _env_int("PUSH_DEBOUNCE_MS", 10_000)
    push_max_reconnects: int = _env_int("PUSH_MAX_RECONNECTS", 10)
    push_flush_sec: float = float(os.getenv("PUSH_FLUSH_SEC", "1") or "1")

    # --- Timing / dedup windows ---
    # Trade-start times within +/- this window of "now" are treated as live.
    live_window_ms: int = _env_int("LIVE_WINDOW_MS", 120_000)
    # A freshly-seeded watermark sits this far in the past so a cold start
    # still sees items published just before boot.
    watermark_grace_sec: int = _env_int("WATERMARK_GRACE_SEC", 300)
    cooldown_hours: float = float(os.getenv("COOLDOWN_HOURS", "24") or "24")
    event_retention_days: int = _env_int("EVENT_RETENTION_DAYS", 30)
    maintenance_interval_sec: float = float(
        os.getenv("MAINTENANCE_INTERVAL_SEC", "300") or "300"
    )

    # --- HTTP resilience ---
    http_timeout_secs: float = float(os.getenv("HTTP_TIMEOUT_SECS", "10") or "10")
    http_max_retries: int = _env_int("HTTP_MAX_RETRIES", 3)
    http_base_delay_ms: int = _env_int("HTTP_BASE_DELAY_MS", 250)
    http_max_delay_ms: int = _env_int("HTTP_MAX_DELAY_MS", 4000)
    http_jitter_pct: float = float(os.getenv("HTTP_JITTER_PCT", "0.1") or "0.1")
    breaker_errors_before_open: int = _env_int("BREAKER_ERRORS_BEFORE_OPEN", 3)
    breaker_open_duration_ms: int = _env_int("BREAKER_OPEN_DURATION_MS", 60_000)
    user_agent: str = os.getenv(
        "HTTP_USER_AGENT",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    )

    # --- Latency instrumentation ---
    latency_flow_ttl_ms: int = _env_int("LATENCY_FLOW_TTL_MS", 300_000)
    quantiles_max_samples: int = _env_int("QUANTILES_MAX_SAMPLES", 10_000)

    # --- Logging ---
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_plain: bool = _b("LOG_PLAIN", False)
    log_rotation_days: int = _env_int("LOG_ROTATION_DAYS", 7)
    log_dedup_window_ms: int = _env_int("LOG_DEDUP_WINDOW_MS", 60_000)
    log_dedup_max_per_window: int = _env_int("LOG_DEDUP_MAX_PER_WINDOW", 2)

    # --- Storage ---
    data_dir: Path = field(
        default_factory=lambda: Path(os.getenv("DATA_DIR", "data")).resolve()
    )
    db_path: Path = field(
        default_factory=lambda: Path(
            os.getenv("LISTING_DB_PATH", "data/listing_sentinel.db")
        ).resolve()
    )


SETTINGS = Settings()


def get_settings() -> Settings:
    return SETTINGS
