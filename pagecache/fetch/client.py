"""Paginated upstream source: request ``(page_size, cursor)``, receive one page."""
from __future__ import annotations

import contextlib
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx
import orjson
import structlog
from pydantic import BaseModel, field_validator
from pydantic import ValidationError as PydanticValidationError

from pagecache.errors import FatalFetchError, TransientFetchError
from pagecache.fetch.query import CUSTOMERS_QUERY
from pagecache.fetch.session import create_api_session
from pagecache.observability.tracing import log_fetch_result, span
from pagecache.orchestrator.collections import CollectionConfig
from pagecache.orchestrator.jobs import Cursor
from pagecache.storage.models import SourceRecord

logger = structlog.get_logger(__name__)

GRAPHQL_PATH = "/graphql.json"
TRANSIENT_GRAPHQL_CODES = {"THROTTLED", "INTERNAL_SERVER_ERROR", "SERVICE_UNAVAILABLE"}


@dataclass(slots=True)
class Page:
    """One page of upstream records plus its continuation token."""

    records: List[SourceRecord] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[Cursor] = None


class PageSource(Protocol):
    async def fetch_page(self, *, page_size: int, cursor: Optional[Cursor]) -> Page:
        ...


class PageInfo(BaseModel):
    hasNextPage: bool
    endCursor: Optional[str] = None


class CustomerEdge(BaseModel):
    cursor: Optional[str] = None
    node: Dict[str, Any]

    @field_validator("node")
    @classmethod
    def _require_id(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(value.get("id"), str) or not value["id"]:
            raise ValueError("node is missing its id")
        return value


class CustomerConnection(BaseModel):
    edges: List[CustomerEdge]
    pageInfo: PageInfo


def _graphql_errors(body: Dict[str, Any]) -> List[Dict[str, Any]]:
    errors = body.get("errors")
    if not errors:
        return []
    if isinstance(errors, dict):
        errors = errors.get("graphQLErrors") or [errors]
    if isinstance(errors, str):
        return [{"message": errors}]
    return [error if isinstance(error, dict) else {"message": str(error)} for error in errors]


def _error_codes(errors: List[Dict[str, Any]]) -> set[str]:
    codes = set()
    for error in errors:
        extensions = error.get("extensions") or {}
        if isinstance(extensions, dict) and extensions.get("code"):
            codes.add(str(extensions["code"]))
    return codes


def parse_page(body: Any) -> Page:
    """Validate a decoded GraphQL response and convert it into a ``Page``."""
    if not isinstance(body, dict):
        raise TransientFetchError("response body is not a JSON object")
    errors = _graphql_errors(body)
    if errors:
        codes = _error_codes(errors)
        summary = orjson.dumps(errors).decode()
        if codes and codes <= TRANSIENT_GRAPHQL_CODES:
            raise TransientFetchError(f"GraphQL error: {summary}")
        raise FatalFetchError(f"GraphQL error: {summary}")
    customers = (body.get("data") or {}).get("customers")
    if customers is None:
        raise TransientFetchError("response is missing data.customers")
    try:
        connection = CustomerConnection.model_validate(customers)
    except PydanticValidationError as exc:
        raise TransientFetchError(f"malformed page: {exc.error_count()} invalid field(s)") from exc
    info = connection.pageInfo
    if info.hasNextPage and not info.endCursor:
        raise TransientFetchError("page reports more results without an end cursor")
    records = [
        SourceRecord(
            external_id=edge.node["id"],
            payload=edge.node,
            source_timestamp=edge.node.get("updatedAt"),
        )
        for edge in connection.edges
    ]
    return Page(
        records=records,
        has_more=info.hasNextPage,
        next_cursor=Cursor(info.endCursor) if info.endCursor else None,
    )


class GraphQLCustomerSource:
    """Pages through a store's customers over the Admin GraphQL API."""

    def __init__(self, client: httpx.AsyncClient, *, collection: str) -> None:
        self._client = client
        self._collection = collection

    async def fetch_page(self, *, page_size: int, cursor: Optional[Cursor]) -> Page:
        payload = {"query": CUSTOMERS_QUERY, "variables": {"first": page_size, "after": cursor}}
        start = time.perf_counter()
        try:
            with span(name="fetch_page", collection=self._collection):
                response = await self._client.post(GRAPHQL_PATH, content=orjson.dumps(payload))
        except httpx.TransportError as exc:
            raise TransientFetchError(f"request failed: {exc!r}") from exc

        status = response.status_code
        if status == httpx.codes.TOO_MANY_REQUESTS or status >= 500:
            raise TransientFetchError(f"upstream returned HTTP {status}")
        if status in (httpx.codes.UNAUTHORIZED, httpx.codes.FORBIDDEN):
            raise FatalFetchError(f"upstream rejected credentials (HTTP {status})")
        if status >= 400:
            raise FatalFetchError(f"upstream returned HTTP {status}")

        try:
            body = orjson.loads(response.content)
        except orjson.JSONDecodeError as exc:
            raise TransientFetchError(f"undecodable response body: {exc}") from exc
        page = parse_page(body)
        log_fetch_result(
            collection=self._collection,
            status=status,
            records=len(page.records),
            has_more=page.has_more,
            elapsed_ms=int((time.perf_counter() - start) * 1000),
        )
        return page


@contextlib.asynccontextmanager
async def open_source(
    config: CollectionConfig,
    *,
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[GraphQLCustomerSource]:
    """Yield a ready ``GraphQLCustomerSource`` for the collection."""
    async with create_api_session(
        domain=config.domain,
        access_token=config.access_token,
        api_version=config.api_version,
        timeout=timeout,
        transport=transport,
    ) as client:
        logger.debug("source_opened", collection=config.name, api_version=config.api_version)
        yield GraphQLCustomerSource(client, collection=config.name)
