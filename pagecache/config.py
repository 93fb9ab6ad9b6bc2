"""Settings loading and service wiring shared by the CLIs."""
from __future__ import annotations

import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

from pagecache.fetch.client import open_source
from pagecache.orchestrator.checkpoint import CheckpointStore
from pagecache.orchestrator.collections import CollectionRegistry
from pagecache.orchestrator.coordinator import JobCoordinator
from pagecache.orchestrator.pager import DEFAULT_DELAY_SECONDS, DEFAULT_PAGE_SIZE
from pagecache.storage.layout import DataLayout
from pagecache.storage.materialize import Materializer
from pagecache.storage.record_cache import RecordCache

DEFAULT_SETTINGS_PATH = Path("config/settings.toml")
DEFAULT_LOGGING_PATH = Path("config/logging.yaml")


def load_settings(path: Path) -> Dict[str, object]:
    """Read the TOML configuration file."""
    if not path.exists():
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


@dataclass
class Services:
    layout: DataLayout
    registry: CollectionRegistry
    cache: RecordCache
    checkpoints: CheckpointStore
    materializer: Materializer
    coordinator: JobCoordinator


def build_services(
    settings: Mapping[str, object],
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Services:
    """Wire stores, materializer and coordinator from settings."""
    fetch = settings.get("fetch", {}) or {}
    layout = DataLayout.from_settings(settings)
    registry = CollectionRegistry.from_settings(settings, environ=environ)
    cache = RecordCache(layout.database)
    checkpoints = CheckpointStore(layout.database)
    materializer = Materializer(cache, exports_dir=layout.exports)
    timeout = float(fetch.get("timeout_seconds", 30))
    max_pages = int(fetch.get("max_pages", 0)) or None
    coordinator = JobCoordinator(
        registry=registry,
        checkpoints=checkpoints,
        cache=cache,
        materializer=materializer,
        source_factory=lambda config: open_source(config, timeout=timeout),
        page_size=int(fetch.get("page_size", DEFAULT_PAGE_SIZE)),
        delay_seconds=int(fetch.get("delay_ms", DEFAULT_DELAY_SECONDS * 1000)) / 1000,
        max_pages=max_pages,
        metrics_dir=layout.metrics,
    )
    return Services(
        layout=layout,
        registry=registry,
        cache=cache,
        checkpoints=checkpoints,
        materializer=materializer,
        coordinator=coordinator,
    )
