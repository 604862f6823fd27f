"""
Fixture backend.

In-memory tables seeded from db.seed, for local development and tests.
Nothing is persisted. Uniqueness and foreign keys are enforced here from
the same schema metadata the relational backend uses, and each unit of
work is all-or-nothing (tables are restored on failure).

Dashboard aggregates are canned, not computed.
"""

import asyncio
import copy
import inspect
import itertools
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from parceldesk.db.adapter import BackendAdapter, ChangeCallback, ChangeEvent, RecordStore
from parceldesk.db.cache import ResultCache
from parceldesk.db.entities import ENTITIES, EntityDefinition
from parceldesk.db.filters import ListQuery
from parceldesk.db.schema import TABLES
from parceldesk.db.seed import CANNED_BROADCAST_COUNTS, CANNED_TICKET_COUNTS, CANNED_USER_COUNTS, seed_rows
from parceldesk.db.translate import QueryTranslator
from parceldesk.errors import ConstraintError, ValidationError
from parceldesk.models import BroadcastCounts, TicketCounts, UserCounts

logger = logging.getLogger(__name__)

Tables = dict[str, dict[str, dict[str, Any]]]


def _unique_columns(table_name: str) -> list[str]:
    return [c.name for c in TABLES[table_name].columns if c.unique]


def _foreign_keys(table_name: str) -> dict[str, str]:
    """column → referenced table"""
    return {
        c.name: fk.column.table.name
        for c in TABLES[table_name].columns
        for fk in c.foreign_keys
    }


def _referencing(table_name: str) -> list[tuple[str, str, str | None]]:
    """(child table, column, ondelete) for every FK pointing at table_name."""
    refs = []
    for child in TABLES.values():
        for column in child.columns:
            for fk in column.foreign_keys:
                if fk.column.table.name == table_name:
                    refs.append((child.name, column.name, fk.ondelete))
    return refs


class FixtureRecordStore(RecordStore):
    """Operates directly on the adapter's tables; the adapter handles rollback."""

    def __init__(self, tables: Tables):
        self.tables = tables
        self.changes: list[ChangeEvent] = []

    def _rows(self, entity: EntityDefinition) -> dict[str, dict[str, Any]]:
        return self.tables[entity.name]

    def _check(self, entity: EntityDefinition, row: dict[str, Any]) -> None:
        key = row[entity.id_field]
        for column in _unique_columns(entity.name):
            value = row.get(column)
            if value is None:
                continue
            for other_key, other in self._rows(entity).items():
                if other_key != key and other.get(column) == value:
                    raise ConstraintError(
                        f"Duplicate value for {entity.name}.{column}: {value}",
                        constraint=f"{entity.name}_{column}_key",
                    )
        for column, parent in _foreign_keys(entity.name).items():
            value = row.get(column)
            if value is not None and value not in self.tables[parent]:
                raise ConstraintError(
                    f"{entity.name}.{column} references missing {parent} row {value}",
                    constraint=f"{entity.name}_{column}_fkey",
                )

    def _record(self, entity: EntityDefinition, event: str, row: dict[str, Any]) -> None:
        self.changes.append(ChangeEvent(table=entity.name, event=event, record=copy.deepcopy(row)))

    async def fetch(self, entity: EntityDefinition, query: ListQuery) -> list[dict[str, Any]]:
        rows = QueryTranslator.evaluate(list(self._rows(entity).values()), entity, query)
        return copy.deepcopy(rows)

    async def fetch_one(self, entity: EntityDefinition, field_name: str, value: Any) -> dict[str, Any] | None:
        if field_name == entity.id_field:
            row = self._rows(entity).get(value)
        else:
            row = next((r for r in self._rows(entity).values() if r.get(field_name) == value), None)
        return copy.deepcopy(row) if row is not None else None

    async def count(self, entity: EntityDefinition, query: ListQuery) -> int:
        return len(QueryTranslator.matching(list(self._rows(entity).values()), entity, query))

    async def insert(self, entity: EntityDefinition, values: dict[str, Any]) -> dict[str, Any]:
        unknown = set(values) - set(entity.columns)
        if unknown:
            raise ValidationError(f"Not a column of {entity.name}: {', '.join(sorted(unknown))}")
        row = {column: None for column in entity.columns}
        row.update(copy.deepcopy(values))
        key = row[entity.id_field]
        if key in self._rows(entity):
            raise ConstraintError(f"Duplicate {entity.name} id {key}", constraint=f"{entity.name}_pkey")
        self._check(entity, row)
        self._rows(entity)[key] = row
        self._record(entity, "INSERT", row)
        return copy.deepcopy(row)

    async def update(self, entity: EntityDefinition, key: str, values: dict[str, Any]) -> dict[str, Any] | None:
        unknown = set(values) - set(entity.columns)
        if unknown:
            raise ValidationError(f"Not a column of {entity.name}: {', '.join(sorted(unknown))}")
        current = self._rows(entity).get(key)
        if current is None:
            return None
        row = {**current, **copy.deepcopy(values)}
        self._check(entity, row)
        self._rows(entity)[key] = row
        self._record(entity, "UPDATE", row)
        return copy.deepcopy(row)

    async def update_where(self, entity: EntityDefinition, query: ListQuery, values: dict[str, Any]) -> int:
        matched = QueryTranslator.matching(list(self._rows(entity).values()), entity, query)
        for row in matched:
            await self.update(entity, row[entity.id_field], values)
        return len(matched)

    async def delete(self, entity: EntityDefinition, key: str) -> bool:
        if key not in self._rows(entity):
            return False
        for child, column, ondelete in _referencing(entity.name):
            dependents = [r for r in self.tables[child].values() if r.get(column) == key]
            if not dependents:
                continue
            match (ondelete or "").upper():
                case "CASCADE":
                    for r in dependents:
                        await self.delete(ENTITIES[child], r["id"])
                case "SET NULL":
                    for r in dependents:
                        await self.update(ENTITIES[child], r["id"], {column: None})
                case _:
                    raise ConstraintError(
                        f"{entity.name} {key} is still referenced by {child}.{column}",
                        constraint=f"{child}_{column}_fkey",
                    )
        row = self._rows(entity).pop(key)
        self._record(entity, "DELETE", row)
        return True

    async def delete_where(self, entity: EntityDefinition, query: ListQuery) -> int:
        matched = QueryTranslator.matching(list(self._rows(entity).values()), entity, query)
        for row in matched:
            await self.delete(entity, row[entity.id_field])
        return len(matched)


class FixtureAdapter(BackendAdapter):
    """In-memory adapter over seed data."""

    kind = "fixture"

    def __init__(
        self,
        seed: dict[str, list[dict[str, Any]]] | None = None,
        now: datetime | None = None,
        cache: ResultCache | None = None,
        cache_enabled: bool = True,
        cache_ttl_seconds: float = 300,
    ):
        super().__init__(cache=cache, cache_enabled=cache_enabled, cache_ttl_seconds=cache_ttl_seconds)
        rows = seed if seed is not None else seed_rows(now)
        self._tables: Tables = {name: {} for name in ENTITIES}
        for name, table_rows in rows.items():
            for row in table_rows:
                self._tables[name][row["id"]] = copy.deepcopy(row)
        self._listeners: dict[int, tuple[str, ChangeCallback]] = {}
        self._handles = itertools.count(1)
        self._callback_tasks: set[asyncio.Task] = set()
        self.connected = False

    async def connect(self) -> None:
        self.connected = True
        counts = ", ".join(f"{len(rows)} {name}" for name, rows in self._tables.items())
        logger.info(f"Fixture backend loaded ({counts})")

    async def close(self) -> None:
        self.connected = False
        self._listeners.clear()

    async def health_check(self) -> bool:
        return True

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[FixtureRecordStore]:
        snapshot = copy.deepcopy(self._tables)
        store = FixtureRecordStore(self._tables)
        try:
            yield store
        except BaseException:
            self._tables.clear()
            self._tables.update(snapshot)
            raise
        self._dispatch(store.changes)

    async def _dashboard_counts(self, store: FixtureRecordStore) -> tuple[TicketCounts, BroadcastCounts, UserCounts]:
        logger.warning("Fixture backend: dashboard stats are canned values, not computed from data")
        return (
            CANNED_TICKET_COUNTS.model_copy(),
            CANNED_BROADCAST_COUNTS.model_copy(),
            CANNED_USER_COUNTS.model_copy(),
        )

    # -------------------------------------------------------------------------
    # Change feed (in-process)
    # -------------------------------------------------------------------------

    async def subscribe(self, table: str, callback: ChangeCallback) -> int:
        if table not in ENTITIES:
            raise ValidationError(f"Unknown table '{table}'")
        handle = next(self._handles)
        self._listeners[handle] = (table, callback)
        return handle

    async def unsubscribe(self, handle: int) -> None:
        self._listeners.pop(handle, None)

    def _dispatch(self, changes: list[ChangeEvent]) -> None:
        for change in changes:
            for table, callback in list(self._listeners.values()):
                if table != change.table:
                    continue
                result = callback(change)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._callback_tasks.add(task)
                    task.add_done_callback(self._callback_tasks.discard)
