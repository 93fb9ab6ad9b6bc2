"""Record types flowing from the upstream source into the cache."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(slots=True)
class SourceRecord:
    """An entity exactly as retrieved from one upstream page."""

    external_id: str
    payload: Dict[str, Any]
    source_timestamp: Optional[str] = None


@dataclass(slots=True)
class CachedRecord:
    """A record as stored in the local cache."""

    collection: str
    external_id: str
    payload: Dict[str, Any]
    source_timestamp: Optional[str]
    cached_at: datetime
