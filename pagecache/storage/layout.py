"""Path helpers for the cache database, exports and metrics."""
from __future__ import annotations

from pathlib import Path
from typing import Mapping


class DataLayout:
    """Computes structured output paths inside the data root."""

    def __init__(self, *, database: Path, exports: Path, metrics: Path) -> None:
        self.database = database
        self.exports = exports
        self.metrics = metrics
        for path in (database.parent, exports, metrics):
            path.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_settings(cls, settings: Mapping[str, object]) -> "DataLayout":
        app = settings.get("app", {}) or {}
        root = Path(str(app.get("data_root", "data")))
        return cls(
            database=Path(str(app.get("database_path", root / "cache.db"))),
            exports=Path(str(app.get("exports_dir", root / "exports"))),
            metrics=Path(str(app.get("metrics_dir", root / "metrics"))),
        )
