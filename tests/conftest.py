import pytest

from listing_sentinel.event_store import EventStore
from listing_sentinel.latency import LatencyTracker
from listing_sentinel.quantiles import Quantiles
from listing_sentinel.storage import open_store
from listing_sentinel.watermark_store import WatermarkStore


def pytest_collection_modifyitems(config, items):
    """Skip trio backend tests since trio is not installed."""
    skip_trio = pytest.mark.skip(reason="trio backend not installed")
    for item in items:
        if "trio" in item.nodeid:
            item.add_marker(skip_trio)


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: float = 1_700_000_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def conn(tmp_path):
    c = open_store(str(tmp_path / "sentinel.db"))
    yield c
    c.close()


@pytest.fixture
def event_store(conn):
    return EventStore(conn)


@pytest.fixture
def watermark_store(conn):
    return WatermarkStore(conn)


@pytest.fixture
def latency():
    return LatencyTracker(Quantiles())
