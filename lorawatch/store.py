"""
lorawatch Row Store Adapters
============================
The tracker only needs one capability from the row store:

    fetch rows with captured_at in [start, end], newest- or oldest-first,
    up to a row limit

plus, optionally, a push channel announcing inserted/changed rows.

Adapters:
  • MemoryRowStore     - in-process rows, push on insert (dev / tests)
  • SQLRowStore        - SQLAlchemy table (id, data, inserted_at)
  • PostgrestRowStore  - Supabase / PostgREST REST API over httpx

Every adapter converts its transport failures into FetchError.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, NamedTuple, Optional, Protocol, runtime_checkable

import httpx
from sqlalchemy import Column, DateTime, Integer, MetaData, Table, Text, create_engine, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .config import DEFAULT_FETCH_LIMIT, DEFAULT_TABLE, TrackerConfig
from .errors import ConfigError, FetchError, ParseError, WriteError
from .models import RawRow, Reading
from .parser import parse_batch, parse_timestamp

logger = logging.getLogger("lorawatch.store")

RowCallback = Callable[[Optional[RawRow]], None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def row_from_record(record: dict) -> RawRow:
    """Map a stored record ({id, data, inserted_at}) to a RawRow."""
    return RawRow(
        id=record.get("id"),
        raw_payload=record.get("data"),
        captured_at=record.get("inserted_at"),
    )


# ─── Capability ──────────────────────────────────────────────────────────────────
@runtime_checkable
class RowStore(Protocol):
    async def fetch_rows(
        self,
        start: datetime,
        end: datetime,
        *,
        newest_first: bool = True,
        limit: int = DEFAULT_FETCH_LIMIT,
    ) -> list[RawRow]:
        ...


class Subscription:
    """Handle returned by subscribe(); close() stops delivery."""

    def __init__(self, channel: "PushChannel", callback: RowCallback):
        self._channel = channel
        self._callback = callback
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self._channel._unsubscribe(self._callback)
            self.closed = True


class PushChannel:
    """Fan-out of row change notifications to subscribers."""

    def __init__(self):
        self._subscribers: list[RowCallback] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: RowCallback) -> Subscription:
        self._subscribers.append(callback)
        return Subscription(self, callback)

    def _unsubscribe(self, callback: RowCallback) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def publish(self, row: Optional[RawRow]) -> None:
        for callback in list(self._subscribers):
            try:
                callback(row)
            except Exception:
                logger.exception(f"[STORE] Push subscriber failed for row {getattr(row, 'id', None)}")


def _in_window(row: RawRow, start: datetime, end: datetime) -> bool:
    try:
        ts = parse_timestamp(row.captured_at)
    except (ValueError, TypeError, OverflowError, OSError):
        return False
    return start <= ts <= end


# ─── In-memory ───────────────────────────────────────────────────────────────────
class MemoryRowStore(PushChannel):
    """Rows kept in a list. Inserts are pushed to subscribers."""

    def __init__(self, rows: Optional[list[RawRow]] = None):
        super().__init__()
        self._rows: list[RawRow] = list(rows or [])
        self._next_id = max((r.id for r in self._rows if isinstance(r.id, int)), default=0) + 1

    @property
    def rows(self) -> list[RawRow]:
        return list(self._rows)

    def add_row(self, row: RawRow, publish: bool = True) -> RawRow:
        self._rows.append(row)
        if isinstance(row.id, int):
            self._next_id = max(self._next_id, row.id + 1)
        if publish:
            self.publish(row)
        return row

    async def insert_payload(self, payload: dict, captured_at: Optional[datetime] = None) -> RawRow:
        row = RawRow(
            id=self._next_id,
            raw_payload=json.dumps(payload),
            captured_at=captured_at or utc_now(),
        )
        return self.add_row(row)

    async def fetch_rows(
        self,
        start: datetime,
        end: datetime,
        *,
        newest_first: bool = True,
        limit: int = DEFAULT_FETCH_LIMIT,
    ) -> list[RawRow]:
        matching = [r for r in self._rows if _in_window(r, start, end)]
        matching.sort(key=lambda r: (parse_timestamp(r.captured_at), r.id), reverse=newest_first)
        return matching[:limit]


# ─── SQLAlchemy ──────────────────────────────────────────────────────────────────
def _to_naive_utc(ts: datetime) -> datetime:
    """Timestamps are stored as naive UTC so SQLite and Postgres agree."""
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


class SQLRowStore(PushChannel):
    """
    Row store backed by a SQL table:

        id          INTEGER PRIMARY KEY (autoincrement)
        data        TEXT                (JSON payload)
        inserted_at TIMESTAMP           (naive UTC, set on insert)

    SQLAlchemy calls are synchronous and run in a worker thread.
    Only rows inserted through this instance are pushed to subscribers.
    """

    def __init__(self, database_url: str, table: str = DEFAULT_TABLE, **engine_kwargs: Any):
        super().__init__()
        self.database_url = database_url
        self.engine = create_engine(database_url, pool_pre_ping=True, **engine_kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self.metadata = MetaData()
        self.table = Table(
            table,
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("data", Text, nullable=True),
            Column("inserted_at", DateTime, nullable=False, index=True),
        )

    def init_schema(self) -> None:
        self.metadata.create_all(bind=self.engine)
        logger.info(f"[STORE] Schema ready for table '{self.table.name}'")

    def close(self) -> None:
        self.engine.dispose()

    def _fetch_sync(self, start: datetime, end: datetime, newest_first: bool, limit: int) -> list[RawRow]:
        col = self.table.c
        order = (col.inserted_at.desc(), col.id.desc()) if newest_first else (col.inserted_at.asc(), col.id.asc())
        query = (
            select(col.id, col.data, col.inserted_at)
            .where(col.inserted_at >= _to_naive_utc(start))
            .where(col.inserted_at <= _to_naive_utc(end))
            .order_by(*order)
            .limit(limit)
        )
        with self.SessionLocal() as session:
            result = session.execute(query).all()
        return [RawRow(id=r.id, raw_payload=r.data, captured_at=r.inserted_at) for r in result]

    async def fetch_rows(
        self,
        start: datetime,
        end: datetime,
        *,
        newest_first: bool = True,
        limit: int = DEFAULT_FETCH_LIMIT,
    ) -> list[RawRow]:
        try:
            return await asyncio.to_thread(self._fetch_sync, start, end, newest_first, limit)
        except SQLAlchemyError as e:
            raise FetchError(f"SQL query on '{self.table.name}' failed: {e}", start, end) from e

    def _insert_sync(self, data: str, captured_at: datetime) -> RawRow:
        with self.SessionLocal() as session:
            result = session.execute(
                insert(self.table).values(data=data, inserted_at=_to_naive_utc(captured_at))
            )
            session.commit()
            row_id = result.inserted_primary_key[0]
        return RawRow(id=row_id, raw_payload=data, captured_at=captured_at)

    async def insert_payload(self, payload: dict, captured_at: Optional[datetime] = None) -> RawRow:
        try:
            row = await asyncio.to_thread(self._insert_sync, json.dumps(payload), captured_at or utc_now())
        except SQLAlchemyError as e:
            raise WriteError(f"SQL insert into '{self.table.name}' failed: {e}") from e
        self.publish(row)
        return row


# ─── Supabase / PostgREST ────────────────────────────────────────────────────────
class PostgrestRowStore:
    """
    Read-only adapter for a PostgREST endpoint (Supabase REST).
    Push notifications arrive through the HTTP row-change webhook instead.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = DEFAULT_TABLE,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.table = table
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        }

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/rest/v1/{self.table}"

    async def fetch_rows(
        self,
        start: datetime,
        end: datetime,
        *,
        newest_first: bool = True,
        limit: int = DEFAULT_FETCH_LIMIT,
    ) -> list[RawRow]:
        direction = "desc" if newest_first else "asc"
        params = [
            ("select", "id,data,inserted_at"),
            ("inserted_at", f"gte.{start.isoformat()}"),
            ("inserted_at", f"lte.{end.isoformat()}"),
            ("order", f"inserted_at.{direction},id.{direction}"),
            ("limit", str(limit)),
        ]
        try:
            response = await self.client.get(self.endpoint, params=params, headers=self.headers)
            response.raise_for_status()
            records = response.json()
        except httpx.HTTPStatusError as e:
            raise FetchError(
                f"Store API error {e.response.status_code}: {e.response.text[:200]}", start, end
            ) from e
        except httpx.HTTPError as e:
            raise FetchError(f"Store unreachable: {e}", start, end) from e
        except ValueError as e:
            raise FetchError(f"Store returned invalid JSON: {e}", start, end) from e

        if not isinstance(records, list):
            raise FetchError(f"Expected a list of rows, got {type(records).__name__}", start, end)
        return [row_from_record(r) for r in records if isinstance(r, dict)]

    async def aclose(self) -> None:
        await self.client.aclose()


# ─── History ─────────────────────────────────────────────────────────────────────
class NodeHistory(NamedTuple):
    readings: list[Reading]
    errors: list[ParseError]
    truncated: bool


async def fetch_node_history(
    store: RowStore,
    node_id: str,
    start: datetime,
    end: datetime,
    limit: int = DEFAULT_FETCH_LIMIT,
) -> NodeHistory:
    """
    One node's readings in [start, end], oldest first.

    The newest `limit` rows of the window (all nodes) are fetched, so when the
    cap is hit it is the oldest part of the window that is missing and
    `truncated` is set.
    """
    rows = await store.fetch_rows(start, end, newest_first=True, limit=limit)
    truncated = len(rows) >= limit
    if truncated:
        logger.warning(
            f"[STORE] History for {node_id} capped at {limit} rows; "
            f"readings before the oldest fetched row are not included"
        )
    readings, errors = parse_batch(reversed(rows))
    return NodeHistory([r for r in readings if r.node_id == node_id], errors, truncated)


# ─── Factory ─────────────────────────────────────────────────────────────────────
def create_store(config: TrackerConfig):
    """
    Pick a row store from configuration:
      store_url set    → PostgrestRowStore (store_key required)
      database_url set → SQLRowStore
      neither          → MemoryRowStore (nothing persists)
    """
    if config.store_url:
        if not config.store_key:
            raise ConfigError("LORAWATCH_STORE_KEY is required when LORAWATCH_STORE_URL is set")
        logger.info(f"[STORE] Using PostgREST store at {config.store_url} (table '{config.table}')")
        return PostgrestRowStore(config.store_url, config.store_key, table=config.table)
    if config.database_url:
        logger.info(f"[STORE] Using SQL store (table '{config.table}')")
        return SQLRowStore(config.database_url, table=config.table)
    logger.warning("[STORE] No store configured - using in-memory rows, nothing persists")
    return MemoryRowStore()
