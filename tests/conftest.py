import contextlib
from typing import Dict, List, Optional, Set

import pytest
import structlog

from pagecache.errors import TransientFetchError
from pagecache.fetch.client import Page
from pagecache.orchestrator.checkpoint import CheckpointStore
from pagecache.orchestrator.collections import CollectionRegistry
from pagecache.orchestrator.coordinator import JobCoordinator
from pagecache.orchestrator.jobs import Cursor
from pagecache.storage.materialize import Materializer
from pagecache.storage.models import SourceRecord
from pagecache.storage.record_cache import RecordCache

ENVIRON = {
    "DEMO_US_SHOP_DOMAIN": "demo-us.myshopify.com",
    "DEMO_US_ACCESS_TOKEN": "shpat_test",
    "DEMO_EU_SHOP_DOMAIN": "demo-eu.myshopify.com",
    "DEMO_EU_ACCESS_TOKEN": "shpat_test_eu",
}


def customer(index: int, **overrides) -> Dict[str, object]:
    payload = {
        "id": f"gid://shopify/Customer/{index:06d}",
        "firstName": f"First{index}",
        "lastName": f"Last{index}",
        "displayName": f"First{index} Last{index}",
        "updatedAt": "2024-05-01T10:00:00Z",
        "tags": ["vip", "newsletter"],
        "verifiedEmail": True,
        "amountSpent": {"amount": "12.50", "currencyCode": "USD"},
        "addresses": [{"city": "Osaka", "zip": "530-0001"}],
        "events": {"nodes": [{"action": "create", "appTitle": None, "message": "Customer created"}]},
        "orders": {"nodes": []},
    }
    payload.update(overrides)
    return payload


def source_record(index: int, **overrides) -> SourceRecord:
    payload = customer(index, **overrides)
    return SourceRecord(external_id=payload["id"], payload=payload, source_timestamp=payload["updatedAt"])


class FakeSource:
    """Serves ``total`` records in pages; cursors are offsets the pager never inspects."""

    def __init__(self, total: int, *, fail_on_calls: Optional[Set[int]] = None, error=None) -> None:
        self.total = total
        self.fail_on_calls = fail_on_calls or set()
        self.error = error or TransientFetchError("upstream unavailable")
        self.calls: List[Optional[str]] = []

    async def fetch_page(self, *, page_size: int, cursor: Optional[Cursor]) -> Page:
        self.calls.append(cursor)
        if len(self.calls) in self.fail_on_calls:
            raise self.error
        start = int(cursor.split(":", 1)[1]) if cursor else 0
        end = min(start + page_size, self.total)
        records = [source_record(i) for i in range(start, end)]
        has_more = end < self.total
        return Page(records=records, has_more=has_more, next_cursor=Cursor(f"offset:{end}") if records else None)

    def factory(self):
        @contextlib.asynccontextmanager
        async def _open(config):
            yield self

        return _open


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(autouse=True, scope="session")
def _route_structlog_through_logging():
    structlog.configure(
        processors=[structlog.processors.KeyValueRenderer()],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
    )
    yield
    structlog.reset_defaults()


@pytest.fixture()
def cache(tmp_path):
    return RecordCache(tmp_path / "cache.db")


@pytest.fixture()
def checkpoints(tmp_path):
    return CheckpointStore(tmp_path / "cache.db")


@pytest.fixture()
def registry():
    return CollectionRegistry(
        {"demo-us": {"env_prefix": "DEMO_US"}, "demo-eu": {"env_prefix": "DEMO_EU"}},
        environ=ENVIRON,
    )


@pytest.fixture()
def materializer(tmp_path, cache):
    return Materializer(cache, exports_dir=tmp_path / "exports")


@pytest.fixture()
def make_coordinator(tmp_path, registry, checkpoints, cache, materializer):
    def _make(source: Optional[FakeSource] = None, **kwargs) -> JobCoordinator:
        options = {"page_size": 250, "delay_seconds": 0.5, "sleep": SleepRecorder()}
        if source is not None:
            options["source_factory"] = source.factory()
        options.update(kwargs)
        return JobCoordinator(
            registry=registry,
            checkpoints=checkpoints,
            cache=cache,
            materializer=materializer,
            metrics_dir=tmp_path / "metrics",
            **options,
        )

    return _make
