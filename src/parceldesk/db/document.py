"""
Document-store backend (Supabase / PostgREST).

Queries are chained builder calls (see QueryTranslator.apply_document).
PostgREST offers no client-side transactions, so multi-step writes run
one request at a time; if a later step fails, the earlier ones stay
applied and the failure is logged with what already went through.

Reads are always cached on this backend.
"""

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

from parceldesk.db.adapter import BackendAdapter, ChangeCallback, ChangeEvent, RecordStore
from parceldesk.db.cache import ResultCache
from parceldesk.db.entities import ENTITIES, EntityDefinition
from parceldesk.db.filters import ListQuery
from parceldesk.db.translate import QueryTranslator
from parceldesk.errors import ConnectivityError, ConstraintError, DataError, ValidationError

logger = logging.getLogger(__name__)

# Postgres SQLSTATEs surfaced by PostgREST
CONSTRAINT_CODES = {
    "23505": "unique_violation",
    "23503": "foreign_key_violation",
    "23502": "not_null_violation",
    "23514": "check_violation",
}
INVALID_INPUT_CODES = {"22P02", "22007", "22008", "22023"}


def _json_values(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in values.items()}


def translate_api_error(e: APIError) -> DataError:
    code = e.code or ""
    if code in CONSTRAINT_CODES:
        return ConstraintError(e.message or CONSTRAINT_CODES[code], constraint=CONSTRAINT_CODES[code])
    if code in INVALID_INPUT_CODES:
        return ValidationError(e.message or f"Invalid input ({code})")
    return DataError(f"Document store error {code}: {e.message}")


class DocumentRecordStore(RecordStore):
    """Sequential PostgREST requests; remembers which writes went through."""

    def __init__(self, client: AsyncClient):
        self.client = client
        self.completed_writes: list[str] = []

    async def _execute(self, builder: Any) -> Any:
        try:
            return await builder.execute()
        except APIError as e:
            raise translate_api_error(e) from e
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Document store unreachable: {e}") from e

    async def fetch(self, entity: EntityDefinition, query: ListQuery) -> list[dict[str, Any]]:
        builder = self.client.table(entity.table).select("*")
        response = await self._execute(QueryTranslator.apply_document(builder, entity, query))
        return response.data

    async def fetch_one(self, entity: EntityDefinition, field_name: str, value: Any) -> dict[str, Any] | None:
        builder = self.client.table(entity.table).select("*").eq(field_name, value).limit(1)
        response = await self._execute(builder)
        return response.data[0] if response.data else None

    async def count(self, entity: EntityDefinition, query: ListQuery) -> int:
        builder = self.client.table(entity.table).select(entity.id_field, count="exact", head=True)
        response = await self._execute(QueryTranslator.apply_document(builder, entity, query, paginate=False))
        return response.count or 0

    async def insert(self, entity: EntityDefinition, values: dict[str, Any]) -> dict[str, Any]:
        response = await self._execute(self.client.table(entity.table).insert(_json_values(values)))
        self.completed_writes.append(f"insert {entity.name} {values[entity.id_field]}")
        return response.data[0]

    async def update(self, entity: EntityDefinition, key: str, values: dict[str, Any]) -> dict[str, Any] | None:
        builder = self.client.table(entity.table).update(_json_values(values)).eq(entity.id_field, key)
        response = await self._execute(builder)
        if not response.data:
            return None
        self.completed_writes.append(f"update {entity.name} {key}")
        return response.data[0]

    async def update_where(self, entity: EntityDefinition, query: ListQuery, values: dict[str, Any]) -> int:
        builder = self.client.table(entity.table).update(_json_values(values))
        response = await self._execute(QueryTranslator.apply_document(builder, entity, query, paginate=False))
        if response.data:
            self.completed_writes.append(f"update {entity.name} x{len(response.data)}")
        return len(response.data)

    async def delete(self, entity: EntityDefinition, key: str) -> bool:
        response = await self._execute(self.client.table(entity.table).delete().eq(entity.id_field, key))
        if response.data:
            self.completed_writes.append(f"delete {entity.name} {key}")
        return bool(response.data)

    async def delete_where(self, entity: EntityDefinition, query: ListQuery) -> int:
        builder = self.client.table(entity.table).delete()
        response = await self._execute(QueryTranslator.apply_document(builder, entity, query, paginate=False))
        if response.data:
            self.completed_writes.append(f"delete {entity.name} x{len(response.data)}")
        return len(response.data)


class DocumentStoreAdapter(BackendAdapter):
    """
    Supabase adapter.

    `client` may be passed in (tests); otherwise connect() creates one
    from the URL and key.
    """

    kind = "document"
    always_cache = True

    def __init__(
        self,
        url: str | None = None,
        key: str | None = None,
        client: AsyncClient | None = None,
        cache: ResultCache | None = None,
        cache_ttl_seconds: float = 300,
    ):
        super().__init__(cache=cache, cache_enabled=True, cache_ttl_seconds=cache_ttl_seconds)
        self.url = url
        self.key = key
        self._client = client
        self._channels: dict[int, Any] = {}
        self._callback_tasks: set[asyncio.Task] = set()

    async def connect(self) -> None:
        if self._client is not None:
            return
        if not (self.url and self.key):
            raise ConnectivityError("Supabase URL and key are required for the document store")
        try:
            self._client = await acreate_client(self.url, self.key)
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Could not create Supabase client: {e}") from e
        logger.info(f"Supabase client created for {self.url}")

    async def close(self) -> None:
        for handle in list(self._channels):
            await self.unsubscribe(handle)
        self._client = None

    async def health_check(self) -> bool:
        try:
            async with self.unit_of_work() as store:
                await store.fetch_one(ENTITIES["accounts"], "id", "00000000-0000-0000-0000-000000000000")
            return True
        except DataError as e:
            logger.warning(f"Document store health check failed: {e}")
            return False

    @property
    def client(self) -> AsyncClient:
        if self._client is None:
            raise ConnectivityError("Document store is not connected. Call connect() first.")
        return self._client

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[DocumentRecordStore]:
        store = DocumentRecordStore(self.client)
        try:
            yield store
        except BaseException as e:
            if store.completed_writes:
                logger.error(
                    f"Document store write failed after partial progress ({'; '.join(store.completed_writes)}): {e!r}"
                )
            raise

    # -------------------------------------------------------------------------
    # Change feed (Supabase realtime)
    # -------------------------------------------------------------------------

    async def subscribe(self, table: str, callback: ChangeCallback) -> int:
        """Subscribe to row changes on `table`. Returns a handle for unsubscribe()."""
        if table not in ENTITIES:
            raise ValidationError(f"Unknown table '{table}'")

        def on_change(payload: dict[str, Any]) -> None:
            result = callback(normalize_change(table, payload))
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_tasks.discard)

        channel = self.client.channel(f"parceldesk:{table}:{len(self._channels)}")
        channel.on_postgres_changes("*", schema="public", table=table, callback=on_change)
        await channel.subscribe()

        handle = id(channel)
        self._channels[handle] = channel
        logger.info(f"Subscribed to {table} changes")
        return handle

    async def unsubscribe(self, handle: int) -> None:
        channel = self._channels.pop(handle, None)
        if channel is not None and self._client is not None:
            await self._client.remove_channel(channel)


def normalize_change(table: str, payload: dict[str, Any]) -> ChangeEvent:
    """Flatten the realtime payload variants into a ChangeEvent."""
    data = payload.get("data", payload)
    event = (data.get("type") or data.get("eventType") or "UPDATE").upper()
    record = data.get("record") or data.get("new") or data.get("old_record") or data.get("old") or {}
    return ChangeEvent(table=data.get("table", table), event=event, record=dict(record))
