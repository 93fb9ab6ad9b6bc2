"""Column contract used to flatten cached customer payloads into CSV rows.

Every column is a named extractor with an explicit default. Scalars fall back
to ``""``, flags to ``"false"``; nested lists (address history, recent events,
recent orders) are embedded as JSON blobs instead of being flattened.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Sequence

import orjson

Extractor = Callable[[Mapping[str, Any]], str]


@dataclass(frozen=True, slots=True)
class Column:
    name: str
    extract: Extractor


def _walk(payload: Mapping[str, Any], path: Sequence[str]) -> Any:
    value: Any = payload
    for key in path:
        if not isinstance(value, Mapping):
            return None
        value = value.get(key)
    return value


def scalar(*path: str, default: str = "") -> Extractor:
    def extract(payload: Mapping[str, Any]) -> str:
        value = _walk(payload, path)
        if value is None or value == "":
            return default
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    return extract


def flag(*path: str) -> Extractor:
    def extract(payload: Mapping[str, Any]) -> str:
        return "true" if _walk(payload, path) is True else "false"

    return extract


def joined(*path: str, separator: str = ", ") -> Extractor:
    def extract(payload: Mapping[str, Any]) -> str:
        value = _walk(payload, path)
        if not isinstance(value, list):
            return ""
        return separator.join(str(item) for item in value)

    return extract


def blob(*path: str) -> Extractor:
    def extract(payload: Mapping[str, Any]) -> str:
        value = _walk(payload, path)
        return orjson.dumps(value if value is not None else []).decode()

    return extract


_ADDRESS_FIELDS = (
    "address1",
    "address2",
    "city",
    "country",
    "countryCodeV2",
    "province",
    "provinceCode",
    "zip",
    "phone",
    "firstName",
    "lastName",
    "company",
)


def _default_address_columns() -> List[Column]:
    return [Column(f"defaultAddress_{name}", scalar("defaultAddress", name)) for name in _ADDRESS_FIELDS]


CUSTOMER_COLUMNS: List[Column] = [
    Column("id", scalar("id")),
    Column("firstName", scalar("firstName")),
    Column("lastName", scalar("lastName")),
    Column("displayName", scalar("displayName")),
    Column("email", scalar("defaultEmailAddress", "emailAddress")),
    Column("phone", scalar("defaultPhoneNumber", "phoneNumber")),
    Column("verifiedEmail", flag("verifiedEmail")),
    Column("state", scalar("state")),
    Column("locale", scalar("locale")),
    Column("note", scalar("note")),
    Column("tags", joined("tags")),
    Column("createdAt", scalar("createdAt")),
    Column("updatedAt", scalar("updatedAt")),
    Column("amountSpent", scalar("amountSpent", "amount")),
    Column("amountSpentCurrency", scalar("amountSpent", "currencyCode")),
    Column("numberOfOrders", scalar("numberOfOrders")),
    Column("lifetimeDuration", scalar("lifetimeDuration")),
    *_default_address_columns(),
    Column("lastOrder_id", scalar("lastOrder", "id")),
    Column("lastOrder_name", scalar("lastOrder", "name")),
    Column("lastOrder_createdAt", scalar("lastOrder", "createdAt")),
    Column("productSubscriberStatus", scalar("productSubscriberStatus")),
    Column("isMergeable", flag("mergeable", "isMergeable")),
    Column("originalCreatedDate", scalar("originalCreatedDate", "value")),
    Column("allAddresses", blob("addresses")),
    Column("lastFiveEvents", blob("events", "nodes")),
    Column("lastFiveOrders", blob("orders", "nodes")),
    Column("statistics_predictedSpendTier", scalar("statistics", "predictedSpendTier")),
    Column("statistics_rfmGroup", scalar("statistics", "rfmGroup")),
]


def header(columns: Sequence[Column] = CUSTOMER_COLUMNS) -> List[str]:
    return [column.name for column in columns]


def flatten(payload: Mapping[str, Any], columns: Sequence[Column] = CUSTOMER_COLUMNS) -> List[str]:
    return [column.extract(payload) for column in columns]
