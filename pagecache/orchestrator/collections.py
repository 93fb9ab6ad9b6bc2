"""Registry of configured collections and their upstream credentials."""
from __future__ import annotations

import os
import re
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from pagecache.errors import ValidationError

DEFAULT_API_VERSION = "2025-04"


class CollectionConfig(BaseModel):
    """Validated upstream settings for a single collection."""

    name: str = Field(min_length=1)
    domain: str = Field(min_length=1)
    access_token: str = Field(min_length=1, repr=False)
    api_version: str = Field(default=DEFAULT_API_VERSION, pattern=r"^\d{4}-\d{2}$|^unstable$")


def env_prefix_for(name: str) -> str:
    """``evisu-us`` -> ``EVISU_US``."""
    return re.sub(r"[^A-Za-z0-9]+", "_", name).strip("_").upper()


class CollectionRegistry:
    """Resolves collection names from ``[collections.*]`` settings plus the environment."""

    def __init__(
        self,
        entries: Mapping[str, Mapping[str, object]],
        *,
        environ: Optional[Mapping[str, str]] = None,
        api_version: str = DEFAULT_API_VERSION,
    ) -> None:
        self._entries = {name: dict(entry) for name, entry in entries.items()}
        self._environ = environ if environ is not None else os.environ
        self._api_version = api_version

    @classmethod
    def from_settings(
        cls,
        settings: Mapping[str, object],
        *,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "CollectionRegistry":
        fetch = settings.get("fetch", {}) or {}
        return cls(
            settings.get("collections", {}) or {},
            environ=environ,
            api_version=str(fetch.get("api_version", DEFAULT_API_VERSION)),
        )

    def names(self) -> List[str]:
        return sorted(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def get(self, name: str) -> CollectionConfig:
        """Return the validated config or raise ``ValidationError``."""
        entry = self._entries.get(name)
        if entry is None:
            raise ValidationError(f"unknown collection {name!r}; available: {', '.join(self.names()) or 'none'}")
        prefix = str(entry.get("env_prefix") or env_prefix_for(name))
        domain_var = f"{prefix}_SHOP_DOMAIN"
        token_var = f"{prefix}_ACCESS_TOKEN"
        try:
            return CollectionConfig(
                name=name,
                domain=str(entry.get("domain") or self._environ.get(domain_var, "")),
                access_token=self._environ.get(token_var, ""),
                api_version=str(entry.get("api_version") or self._api_version),
            )
        except PydanticValidationError as exc:
            raise ValidationError(
                f"collection {name!r} is misconfigured; set {domain_var} and {token_var}: "
                f"{exc.error_count()} invalid field(s)"
            ) from exc

    def validate_all(self) -> Dict[str, str]:
        """Return ``ok`` or the error message for every configured collection."""
        results: Dict[str, str] = {}
        for name in self.names():
            try:
                self.get(name)
            except ValidationError as exc:
                results[name] = str(exc)
            else:
                results[name] = "ok"
        return results
