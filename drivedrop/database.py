from __future__ import annotations

import uuid
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from drivedrop.realtime import ChangeEvent, ChangeFeed, ChangeType

K = TypeVar("K")
V = TypeVar("V")

Row = dict[str, Any]

TABLES = (
    "shipments",
    "pickup_verifications",
    "messages",
    "job_applications",
    "driver_settings",
    "profiles",
)

# Tables keyed by something other than "id"
PRIMARY_KEYS = {"driver_settings": "driver_id"}


class DuplicateKeyError(Exception):
    pass


class Store(Generic[K, V]):
    """Keyed in-memory storage behind every emulator table and registry.

    Iterating yields the stored values; lookups never copy.
    """

    def __init__(self) -> None:
        self._items: dict[K, V] = {}

    def put(self, key: K, value: V) -> None:
        self._items[key] = value

    def get(self, key: K) -> V | None:
        return self._items.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __iter__(self) -> Iterator[V]:
        yield from self._items.values()

    def __len__(self) -> int:
        return len(self._items)


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def row_matches(row: Row, filters: dict[str, str]) -> bool:
    """Apply PostgREST style ``eq.<value>`` and ``is.null`` filters."""
    for column, expression in filters.items():
        value = row.get(column)
        if expression == "is.null":
            if value is not None:
                return False
        elif expression.startswith("eq."):
            if value is None or _as_text(value) != expression[3:]:
                return False
        else:
            raise ValueError(f"Unsupported filter {column}={expression}")
    return True


class Database:
    """Tables, object storage and auth tokens of the local backend."""

    def __init__(self, feed: ChangeFeed | None = None) -> None:
        self.feed = feed if feed is not None else ChangeFeed()
        self.tables: dict[str, Store[str, Row]] = {
            name: Store() for name in TABLES
        }
        self.objects: Store[str, bytes] = Store()
        self.tokens: Store[str, Row] = Store()

    def table(self, name: str) -> Store[str, Row]:
        return self.tables[name]

    @staticmethod
    def primary_key(table: str) -> str:
        return PRIMARY_KEYS.get(table, "id")

    def get(self, table: str, key: str) -> Row | None:
        row = self.table(table).get(key)
        return dict(row) if row is not None else None

    def select(
        self,
        table: str,
        filters: dict[str, str] | None = None,
        order: str | None = None,
    ) -> list[Row]:
        rows = [dict(r) for r in self.table(table) if row_matches(r, filters or {})]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(
                key=lambda r: (r.get(column) is None, r.get(column) or ""),
                reverse=direction == "desc",
            )
        return rows

    async def insert(self, table: str, row: Row) -> Row:
        pk = self.primary_key(table)
        row = dict(row)
        if pk == "id":
            row.setdefault("id", str(uuid.uuid4()))
        if row[pk] in self.table(table):
            raise DuplicateKeyError(f"{table}.{pk}={row[pk]} already exists")
        now = utcnow_iso()
        row.setdefault("created_at", now)
        row.setdefault("updated_at", now)
        self.table(table).put(row[pk], row)
        await self.feed.publish(
            ChangeEvent(table=table, event_type=ChangeType.INSERT, new=dict(row))
        )
        return dict(row)

    async def update(self, table: str, key: str, values: Row) -> Row:
        old = self.table(table).get(key)
        if old is None:
            raise KeyError(key)
        new = {**old, **values}
        if "updated_at" not in values:
            new["updated_at"] = utcnow_iso()
        self.table(table).put(key, new)
        await self.feed.publish(
            ChangeEvent(
                table=table, event_type=ChangeType.UPDATE, new=dict(new), old=dict(old)
            )
        )
        return dict(new)

    async def upsert(self, table: str, row: Row) -> Row:
        key = row.get(self.primary_key(table))
        if key is not None and key in self.table(table):
            return await self.update(table, key, row)
        return await self.insert(table, row)

    def user_for_token(self, token: str) -> Row | None:
        return self.tokens.get(token)

    def active_verification(self, shipment_id: str) -> Row | None:
        """The verification still open for a shipment, if any."""
        for row in self.select(
            "pickup_verifications", {"shipment_id": f"eq.{shipment_id}"}
        ):
            if row.get("client_response") is None and row.get(
                "verification_status"
            ) != "matches":
                return row
        return None


_db: Database | None = None


def get_db() -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        _db = Database()
    return _db
