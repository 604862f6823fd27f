"""
Backend adapter contract.

Every backend implements the same entity operations. The operations are
written once here on top of a small per-backend unit of work
(RecordStore), so the relational, document-store and fixture variants
differ only in transport and native query form, never in semantics.

Mandatory contract: BackendAdapter (abstract, checked at construction).
Optional capabilities: SupportsRawQuery, SupportsChangeFeed (runtime-checkable
protocols, detected once by the facade).

Reads go through the ResultCache when caching is on for the adapter
(`use_cache=False` bypasses it per call). Writes invalidate the whole
cache after the write and before returning, including when the write
fails or is cancelled.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, ClassVar, Literal, NamedTuple, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from parceldesk.db.cache import MISSING, ResultCache, make_key
from parceldesk.db.entities import ACCOUNTS, BROADCAST_LOGS, TICKET_COMMENTS, TICKETS, EntityDefinition
from parceldesk.db.filters import MAX_LIMIT, ListQuery, resolve_query
from parceldesk.errors import ConstraintError, ValidationError
from parceldesk.models import (
    Account,
    AccountCreate,
    AccountPatch,
    ActivityItem,
    AgentPerformance,
    BroadcastCounts,
    BroadcastLog,
    BroadcastLogCreate,
    BroadcastLogPatch,
    BroadcastSummary,
    BroadcastTrendPoint,
    DashboardStats,
    HourlyBroadcastPoint,
    PriorityShare,
    Ticket,
    TicketComment,
    TicketCommentCreate,
    TicketCounts,
    TicketCreate,
    TicketPatch,
    TicketStatus,
    TicketTrendPoint,
    UserCounts,
    new_id,
    new_ticket_uid,
    stamp_ticket_status,
    utc_now,
)

logger = logging.getLogger(__name__)

BackendKind = Literal["relational", "document", "fixture"]
QueryInput = ListQuery | Mapping[str, Any] | None

P = TypeVar("P", bound=BaseModel)

MAX_ANALYTICS_DAYS = 366


def _moment(value: datetime) -> datetime:
    # Naive datetimes are read as UTC, like stored timestamps
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def window_start(days: int, as_of: datetime | None = None) -> datetime:
    """UTC midnight `days` days before the day of `as_of` (now by default)."""
    if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= MAX_ANALYTICS_DAYS:
        raise ValidationError(f"days must be a whole number from 1 to {MAX_ANALYTICS_DAYS}", field="days")
    today = _moment(as_of or utc_now()).date()
    return datetime.combine(today - timedelta(days=days), time(), tzinfo=timezone.utc)


class RecordStore(ABC):
    """
    One unit of work against a backend.

    Rows are plain dicts keyed by column name. Queries handed to the store
    are already validated; the store only translates and executes them.
    """

    @abstractmethod
    async def fetch(self, entity: EntityDefinition, query: ListQuery) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def fetch_one(self, entity: EntityDefinition, field_name: str, value: Any) -> dict[str, Any] | None: ...

    @abstractmethod
    async def count(self, entity: EntityDefinition, query: ListQuery) -> int: ...

    @abstractmethod
    async def insert(self, entity: EntityDefinition, values: dict[str, Any]) -> dict[str, Any]: ...

    @abstractmethod
    async def update(self, entity: EntityDefinition, key: str, values: dict[str, Any]) -> dict[str, Any] | None: ...

    @abstractmethod
    async def update_where(self, entity: EntityDefinition, query: ListQuery, values: dict[str, Any]) -> int: ...

    @abstractmethod
    async def delete(self, entity: EntityDefinition, key: str) -> bool: ...

    @abstractmethod
    async def delete_where(self, entity: EntityDefinition, query: ListQuery) -> int: ...


class TicketTransition(NamedTuple):
    ticket: Ticket
    comment: TicketComment | None


# =============================================================================
# Optional capabilities
# =============================================================================


@dataclass
class ChangeEvent:
    """A row change pushed by a backend's change feed."""

    table: str
    event: Literal["INSERT", "UPDATE", "DELETE"]
    record: dict[str, Any] = field(default_factory=dict)


ChangeCallback = Callable[[ChangeEvent], Awaitable[None] | None]


@runtime_checkable
class SupportsRawQuery(Protocol):
    """Backends that accept raw SQL text with bound parameters."""

    async def execute_raw(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]: ...


@runtime_checkable
class SupportsChangeFeed(Protocol):
    """Backends that push row changes to subscribers."""

    async def subscribe(self, table: str, callback: ChangeCallback) -> Any: ...

    async def unsubscribe(self, handle: Any) -> None: ...


# =============================================================================
# Adapter base
# =============================================================================


def coerce_payload(model: type[P], data: P | Mapping[str, Any]) -> P:
    """Accept a payload model or a plain mapping; map pydantic errors to ours."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        err = e.errors()[0]
        loc = ".".join(str(part) for part in err.get("loc", ()))
        raise ValidationError(f"{model.__name__}: {loc + ': ' if loc else ''}{err['msg']}", field=loc or None) from e


class BackendAdapter(ABC):
    """
    Uniform entity-operation contract.

    Subclasses provide the transport: connect/close/health_check and a
    unit_of_work() yielding a RecordStore. They may override
    _dashboard_counts() where the backend can aggregate natively.
    """

    kind: ClassVar[BackendKind]
    always_cache: ClassVar[bool] = False

    def __init__(self, cache: ResultCache | None = None, cache_enabled: bool = True, cache_ttl_seconds: float = 300):
        self.cache = cache if cache is not None else ResultCache(cache_ttl_seconds)
        self.cache_enabled = cache_enabled or self.always_cache

    # -------------------------------------------------------------------------
    # Transport (per backend)
    # -------------------------------------------------------------------------

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def health_check(self) -> bool: ...

    @abstractmethod
    def unit_of_work(self) -> AbstractAsyncContextManager[RecordStore]:
        """All-or-nothing where the backend allows it."""

    # -------------------------------------------------------------------------
    # Read/write plumbing
    # -------------------------------------------------------------------------

    async def _read(
        self,
        operation: str,
        arguments: Any,
        loader: Callable[[], Awaitable[Any]],
        use_cache: bool = True,
        cache_ttl: float | None = None,
    ) -> Any:
        if not (use_cache and self.cache_enabled):
            return await loader()

        key = make_key(operation, arguments)
        cached = self.cache.get(key)
        if cached is not MISSING:
            return cached

        generation = self.cache.generation
        value = await loader()
        self.cache.set(key, value, cache_ttl, generation=generation)
        return value

    @asynccontextmanager
    async def _writing(self) -> AsyncIterator[RecordStore]:
        try:
            async with self.unit_of_work() as store:
                yield store
        finally:
            self.cache.invalidate_all()

    async def _get(
        self,
        entity: EntityDefinition,
        field_name: str,
        value: Any,
        use_cache: bool,
        cache_ttl: float | None,
    ) -> Any:
        async def load():
            async with self.unit_of_work() as store:
                row = await store.fetch_one(entity, field_name, value)
            return entity.model.model_validate(row) if row else None

        return await self._read(f"{entity.name}.by_{field_name}", value, load, use_cache, cache_ttl)

    async def _list(self, entity: EntityDefinition, query: QueryInput, use_cache: bool, cache_ttl: float | None) -> list:
        query = resolve_query(entity, query)

        async def load():
            async with self.unit_of_work() as store:
                rows = await store.fetch(entity, query)
            return [entity.model.model_validate(row) for row in rows]

        return await self._read(f"{entity.name}.list", query.cache_args(), load, use_cache, cache_ttl)

    async def _count(self, entity: EntityDefinition, query: QueryInput, use_cache: bool, cache_ttl: float | None) -> int:
        query = resolve_query(entity, query)

        async def load():
            async with self.unit_of_work() as store:
                return await store.count(entity, query)

        return await self._read(f"{entity.name}.count", query.cache_args(), load, use_cache, cache_ttl)

    async def _update(self, entity: EntityDefinition, key: str, patch: BaseModel) -> Any:
        values = {**patch.changes(), "updated_at": utc_now()} if "updated_at" in entity.field_types else patch.changes()
        async with self._writing() as store:
            row = await store.update(entity, key, values)
        return entity.model.model_validate(row) if row else None

    async def _delete(self, entity: EntityDefinition, key: str) -> bool:
        async with self._writing() as store:
            return await store.delete(entity, key)

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    async def get_account_by_id(self, account_id: str, use_cache: bool = True, cache_ttl: float | None = None) -> Account | None:
        return await self._get(ACCOUNTS, "id", account_id, use_cache, cache_ttl)

    async def get_account_by_email(self, email: str, use_cache: bool = True, cache_ttl: float | None = None) -> Account | None:
        return await self._get(ACCOUNTS, "email", email.strip().lower(), use_cache, cache_ttl)

    async def create_account(self, data: AccountCreate | Mapping[str, Any]) -> Account:
        payload = coerce_payload(AccountCreate, data)
        now = utc_now()
        row = {"id": new_id(), **payload.model_dump(), "created_at": now, "updated_at": now}
        async with self._writing() as store:
            created = await store.insert(ACCOUNTS, row)
        logger.info(f"Created account {created['id']} ({payload.role})")
        return Account.model_validate(created)

    async def update_account(self, account_id: str, patch: AccountPatch | Mapping[str, Any]) -> Account | None:
        return await self._update(ACCOUNTS, account_id, coerce_payload(AccountPatch, patch))

    async def delete_account(self, account_id: str, reassign_to: str | None = None) -> bool:
        """
        Delete an account without orphaning ticket assignments.

        Rejected with ConstraintError while tickets are assigned to the
        account, unless `reassign_to` names another account; those tickets
        are then reassigned in the same unit of work. Comments the account
        wrote are kept with their author cleared.
        """
        if reassign_to is not None and reassign_to == account_id:
            raise ValidationError("Cannot reassign tickets to the account being deleted", field="reassign_to")

        assigned = ListQuery().where("assigned_account_id", "=", account_id).validate_for(TICKETS)
        authored = ListQuery().where("author_account_id", "=", account_id).validate_for(TICKET_COMMENTS)

        async with self._writing() as store:
            if await store.fetch_one(ACCOUNTS, "id", account_id) is None:
                return False

            held = await store.count(TICKETS, assigned)
            if held:
                if reassign_to is None:
                    raise ConstraintError(
                        f"Account {account_id} still has {held} assigned ticket(s); reassign them first",
                        constraint="tickets_assigned_account_id_fkey",
                    )
                if await store.fetch_one(ACCOUNTS, "id", reassign_to) is None:
                    raise ConstraintError(
                        f"Cannot reassign tickets to unknown account {reassign_to}",
                        constraint="tickets_assigned_account_id_fkey",
                    )
                await store.update_where(TICKETS, assigned, {"assigned_account_id": reassign_to, "updated_at": utc_now()})
                logger.info(f"Reassigned {held} ticket(s) from {account_id} to {reassign_to}")

            await store.update_where(TICKET_COMMENTS, authored, {"author_account_id": None})
            return await store.delete(ACCOUNTS, account_id)

    async def list_accounts(self, query: QueryInput = None, use_cache: bool = True, cache_ttl: float | None = None) -> list[Account]:
        return await self._list(ACCOUNTS, query, use_cache, cache_ttl)

    # -------------------------------------------------------------------------
    # Tickets
    # -------------------------------------------------------------------------

    async def get_ticket_by_id(self, ticket_id: str, use_cache: bool = True, cache_ttl: float | None = None) -> Ticket | None:
        return await self._get(TICKETS, "id", ticket_id, use_cache, cache_ttl)

    async def create_ticket(self, data: TicketCreate | Mapping[str, Any]) -> Ticket:
        payload = coerce_payload(TicketCreate, data)
        now = utc_now()
        values = stamp_ticket_status(payload.model_dump(), now=now)
        row = {"id": new_id(), "human_uid": new_ticket_uid(now), **values, "created_at": now, "updated_at": now}
        async with self._writing() as store:
            created = await store.insert(TICKETS, row)
        logger.info(f"Created ticket {created['human_uid']}")
        return Ticket.model_validate(created)

    async def update_ticket(self, ticket_id: str, patch: TicketPatch | Mapping[str, Any]) -> Ticket | None:
        patch = coerce_payload(TicketPatch, patch)
        async with self._writing() as store:
            row = await store.fetch_one(TICKETS, "id", ticket_id)
            if row is None:
                return None
            now = utc_now()
            values = stamp_ticket_status(patch.changes(), Ticket.model_validate(row), now)
            values["updated_at"] = now
            updated = await store.update(TICKETS, ticket_id, values)
        return Ticket.model_validate(updated) if updated else None

    async def delete_ticket(self, ticket_id: str) -> bool:
        """Delete a ticket and its comments together."""
        comments = ListQuery().where("ticket_id", "=", ticket_id).validate_for(TICKET_COMMENTS)
        async with self._writing() as store:
            if await store.fetch_one(TICKETS, "id", ticket_id) is None:
                return False
            await store.delete_where(TICKET_COMMENTS, comments)
            return await store.delete(TICKETS, ticket_id)

    async def list_tickets(self, query: QueryInput = None, use_cache: bool = True, cache_ttl: float | None = None) -> list[Ticket]:
        return await self._list(TICKETS, query, use_cache, cache_ttl)

    async def count_tickets(self, query: QueryInput = None, use_cache: bool = True, cache_ttl: float | None = None) -> int:
        return await self._count(TICKETS, query, use_cache, cache_ttl)

    # -------------------------------------------------------------------------
    # Ticket comments
    # -------------------------------------------------------------------------

    async def list_ticket_comments(
        self,
        ticket_id: str,
        include_internal: bool = True,
        use_cache: bool = True,
        cache_ttl: float | None = None,
    ) -> list[TicketComment]:
        query = ListQuery(limit=MAX_LIMIT).where("ticket_id", "=", ticket_id)
        if not include_internal:
            query = query.where("internal", "=", False)
        return await self._list(TICKET_COMMENTS, query, use_cache, cache_ttl)

    async def add_ticket_comment(
        self,
        ticket_id: str,
        data: TicketCommentCreate | Mapping[str, Any],
    ) -> TicketComment | None:
        payload = coerce_payload(TicketCommentCreate, data)
        async with self._writing() as store:
            if await store.fetch_one(TICKETS, "id", ticket_id) is None:
                return None
            now = utc_now()
            created = await store.insert(TICKET_COMMENTS, {
                "id": new_id(),
                "ticket_id": ticket_id,
                **payload.model_dump(),
                "created_at": now,
            })
            await store.update(TICKETS, ticket_id, {"updated_at": now})
        return TicketComment.model_validate(created)

    async def transition_ticket(
        self,
        ticket_id: str,
        status: TicketStatus,
        comment: TicketCommentCreate | Mapping[str, Any] | None = None,
    ) -> TicketTransition | None:
        """
        Change a ticket's status and optionally append a comment, atomically.

        closed_at follows the status exactly as on update_ticket().
        """
        values = coerce_payload(TicketPatch, {"status": status}).changes()
        note = coerce_payload(TicketCommentCreate, comment) if comment is not None else None

        async with self._writing() as store:
            row = await store.fetch_one(TICKETS, "id", ticket_id)
            if row is None:
                return None
            now = utc_now()
            values = stamp_ticket_status(values, Ticket.model_validate(row), now)
            values["updated_at"] = now
            updated = await store.update(TICKETS, ticket_id, values)
            created = None
            if note is not None:
                created = await store.insert(TICKET_COMMENTS, {
                    "id": new_id(),
                    "ticket_id": ticket_id,
                    **note.model_dump(),
                    "created_at": now,
                })

        return TicketTransition(
            ticket=Ticket.model_validate(updated),
            comment=TicketComment.model_validate(created) if created else None,
        )

    # -------------------------------------------------------------------------
    # Broadcast logs
    # -------------------------------------------------------------------------

    async def get_broadcast_log_by_id(self, log_id: str, use_cache: bool = True, cache_ttl: float | None = None) -> BroadcastLog | None:
        return await self._get(BROADCAST_LOGS, "id", log_id, use_cache, cache_ttl)

    async def create_broadcast_log(self, data: BroadcastLogCreate | Mapping[str, Any]) -> BroadcastLog:
        payload = coerce_payload(BroadcastLogCreate, data)
        now = utc_now()
        row = {"id": new_id(), **payload.model_dump(), "created_at": now}
        row["broadcast_at"] = payload.broadcast_at or now
        async with self._writing() as store:
            created = await store.insert(BROADCAST_LOGS, row)
        return BroadcastLog.model_validate(created)

    async def update_broadcast_log(self, log_id: str, patch: BroadcastLogPatch | Mapping[str, Any]) -> BroadcastLog | None:
        return await self._update(BROADCAST_LOGS, log_id, coerce_payload(BroadcastLogPatch, patch))

    async def delete_broadcast_log(self, log_id: str) -> bool:
        return await self._delete(BROADCAST_LOGS, log_id)

    async def list_broadcast_logs(self, query: QueryInput = None, use_cache: bool = True, cache_ttl: float | None = None) -> list[BroadcastLog]:
        return await self._list(BROADCAST_LOGS, query, use_cache, cache_ttl)

    async def count_broadcast_logs(self, query: QueryInput = None, use_cache: bool = True, cache_ttl: float | None = None) -> int:
        return await self._count(BROADCAST_LOGS, query, use_cache, cache_ttl)

    # -------------------------------------------------------------------------
    # Dashboard
    # -------------------------------------------------------------------------

    async def get_dashboard_stats(self, use_cache: bool = True, cache_ttl: float | None = None) -> DashboardStats:
        async def load():
            async with self.unit_of_work() as store:
                tickets, broadcasts, users = await self._dashboard_counts(store)
                recent = await self._recent_activity(store)
            return DashboardStats(tickets=tickets, broadcasts=broadcasts, users=users, recent_activity=recent)

        return await self._read("dashboard.stats", None, load, use_cache, cache_ttl)

    async def _dashboard_counts(self, store: RecordStore) -> tuple[TicketCounts, BroadcastCounts, UserCounts]:
        """Count-per-predicate fallback; backends with native aggregates override this."""

        async def count(entity: EntityDefinition, where: Mapping[str, Any] | None = None) -> int:
            return await store.count(entity, ListQuery.build(where).validate_for(entity))

        tickets = TicketCounts(
            total_tickets=await count(TICKETS),
            open_tickets=await count(TICKETS, {"status": "open"}),
            pending_tickets=await count(TICKETS, {"status": "pending"}),
            on_hold_tickets=await count(TICKETS, {"status": "on_hold"}),
            closed_tickets=await count(TICKETS, {"status": "closed"}),
            urgent_tickets=await count(TICKETS, {"priority": "urgent"}),
            high_priority_tickets=await count(TICKETS, {"priority": "high"}),
        )
        broadcasts = BroadcastCounts.from_totals(
            total=await count(BROADCAST_LOGS),
            success=await count(BROADCAST_LOGS, {"status": "success"}),
            failed=await count(BROADCAST_LOGS, {"status": "failed"}),
            pending=await count(BROADCAST_LOGS, {"status": "pending"}),
        )
        users = UserCounts(
            total_users=await count(ACCOUNTS),
            active_agents=await count(ACCOUNTS, {"role": "agent", "active": True}),
            active_admins=await count(ACCOUNTS, {"role": "admin", "active": True}),
        )
        return tickets, broadcasts, users

    async def _recent_activity(self, store: RecordStore, per_kind: int = 5, total: int = 10) -> list[ActivityItem]:
        """Latest tickets and broadcasts, merged newest first."""
        tickets = await store.fetch(TICKETS, ListQuery(limit=per_kind).validate_for(TICKETS))
        logs = await store.fetch(BROADCAST_LOGS, ListQuery(limit=per_kind).validate_for(BROADCAST_LOGS))

        items = [
            ActivityItem(
                type="ticket",
                description=f"Ticket {t.human_uid}: {t.subject} ({t.status})",
                timestamp=t.created_at,
            )
            for t in (Ticket.model_validate(row) for row in tickets)
        ] + [
            ActivityItem(
                type="broadcast",
                description=f"Broadcast to {b.recipient_contact} for {b.tracking_ref}: {b.status}",
                timestamp=b.broadcast_at,
            )
            for b in (BroadcastLog.model_validate(row) for row in logs)
        ]
        items.sort(key=lambda item: item.timestamp, reverse=True)
        return items[:total]

    # -------------------------------------------------------------------------
    # Analytics
    # -------------------------------------------------------------------------

    async def get_ticket_trends(
        self, days: int = 7, as_of: datetime | None = None, use_cache: bool = True, cache_ttl: float | None = None
    ) -> list[TicketTrendPoint]:
        """Tickets created per UTC day over the last `days` days plus today, newest day first."""
        since = window_start(days, as_of)

        async def load():
            async with self.unit_of_work() as store:
                return await self._ticket_trends(store, since)

        return await self._read("analytics.ticket_trends", since, load, use_cache, cache_ttl)

    async def get_broadcast_trends(
        self, days: int = 7, as_of: datetime | None = None, use_cache: bool = True, cache_ttl: float | None = None
    ) -> list[BroadcastTrendPoint]:
        since = window_start(days, as_of)

        async def load():
            async with self.unit_of_work() as store:
                return await self._broadcast_trends(store, since)

        return await self._read("analytics.broadcast_trends", since, load, use_cache, cache_ttl)

    async def get_agent_performance(self, use_cache: bool = True, cache_ttl: float | None = None) -> list[AgentPerformance]:
        """Every active agent with their assigned-ticket tallies, busiest first."""

        async def load():
            async with self.unit_of_work() as store:
                agents = await self._agent_performance(store)
            return sorted(agents, key=AgentPerformance.ranking)

        return await self._read("analytics.agent_performance", None, load, use_cache, cache_ttl)

    async def get_priority_distribution(
        self, days: int = 30, as_of: datetime | None = None, use_cache: bool = True, cache_ttl: float | None = None
    ) -> list[PriorityShare]:
        since = window_start(days, as_of)

        async def load():
            async with self.unit_of_work() as store:
                return PriorityShare.distribution(await self._priority_counts(store, since))

        return await self._read("analytics.priority_distribution", since, load, use_cache, cache_ttl)

    async def get_broadcast_summary(
        self,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        as_of: datetime | None = None,
        use_cache: bool = True,
        cache_ttl: float | None = None,
    ) -> BroadcastSummary:
        """
        Broadcast outcome totals between `date_from` and `date_to` (inclusive)
        plus per-hour tallies for the 24 hour buckets ending at `as_of`.

        `date_from` defaults to seven days before `as_of`; without `date_to`
        the range is open-ended.
        """
        now = _moment(as_of) if as_of else utc_now().replace(second=0, microsecond=0)
        date_from = _moment(date_from) if date_from else now - timedelta(days=7)
        date_to = _moment(date_to) if date_to else None
        if date_to is not None and date_to < date_from:
            raise ValidationError("date_to must not be before date_from", field="date_to")
        hours_since = now.replace(minute=0, second=0, microsecond=0) - timedelta(hours=23)

        async def load():
            async with self.unit_of_work() as store:
                summary = await self._broadcast_counts_between(store, date_from, date_to)
                hourly = await self._hourly_broadcasts(store, hours_since)
            return BroadcastSummary(date_from=date_from, date_to=date_to, summary=summary, hourly=hourly)

        return await self._read(
            "analytics.broadcast_summary", [date_from, date_to, hours_since], load, use_cache, cache_ttl,
        )

    # Row-at-a-time fallbacks; backends with native aggregates override these.

    async def _fetch_all(self, store: RecordStore, entity: EntityDefinition, where: Mapping[str, Any]) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        offset = 0
        while True:
            query = ListQuery.build(where, limit=MAX_LIMIT, offset=offset).validate_for(entity)
            page = await store.fetch(entity, query)
            rows.extend(page)
            if len(page) < MAX_LIMIT:
                return rows
            offset += MAX_LIMIT

    async def _ticket_trends(self, store: RecordStore, since: datetime) -> list[TicketTrendPoint]:
        by_day: dict[date, list[dict[str, Any]]] = {}
        for row in await self._fetch_all(store, TICKETS, {"created_at": {">=": since}}):
            by_day.setdefault(Ticket.model_validate(row).created_at.date(), []).append(row)
        return [
            TicketTrendPoint.from_counts(day, TicketCounts.from_rows(rows))
            for day, rows in sorted(by_day.items(), reverse=True)
        ]

    async def _broadcast_trends(self, store: RecordStore, since: datetime) -> list[BroadcastTrendPoint]:
        by_day: dict[date, list[str]] = {}
        for row in await self._fetch_all(store, BROADCAST_LOGS, {"broadcast_at": {">=": since}}):
            log = BroadcastLog.model_validate(row)
            by_day.setdefault(log.broadcast_at.date(), []).append(log.status)
        points = []
        for day, statuses in sorted(by_day.items(), reverse=True):
            counts = BroadcastCounts.from_statuses(statuses)
            points.append(BroadcastTrendPoint(
                day=day,
                total=counts.total_broadcasts,
                success=counts.successful_broadcasts,
                failed=counts.failed_broadcasts,
                pending=counts.pending_broadcasts,
            ))
        return points

    async def _agent_performance(self, store: RecordStore) -> list[AgentPerformance]:
        agents = await self._fetch_all(store, ACCOUNTS, {"role": "agent", "active": True})
        if not agents:
            return []
        assigned: dict[str, list[Ticket]] = {agent["id"]: [] for agent in agents}
        for row in await self._fetch_all(store, TICKETS, {"assigned_account_id": {"in": list(assigned)}}):
            ticket = Ticket.model_validate(row)
            assigned[ticket.assigned_account_id].append(ticket)

        performance = []
        for agent in agents:
            owned = assigned[agent["id"]]
            statuses = [t.status for t in owned]
            hours = [(t.closed_at - t.created_at).total_seconds() / 3600 for t in owned if t.closed_at is not None]
            performance.append(AgentPerformance.from_tallies(
                agent,
                total=len(owned),
                closed=statuses.count("closed"),
                open=statuses.count("open"),
                pending=statuses.count("pending"),
                avg_resolution_hours=sum(hours) / len(hours) if hours else None,
            ))
        return performance

    async def _priority_counts(self, store: RecordStore, since: datetime) -> dict[str, int]:
        counts: dict[str, int] = {}
        for row in await self._fetch_all(store, TICKETS, {"created_at": {">=": since}}):
            counts[row["priority"]] = counts.get(row["priority"], 0) + 1
        return counts

    async def _broadcast_counts_between(self, store: RecordStore, date_from: datetime, date_to: datetime | None) -> BroadcastCounts:
        bounds: dict[str, Any] = {">=": date_from}
        if date_to is not None:
            bounds["<="] = date_to
        rows = await self._fetch_all(store, BROADCAST_LOGS, {"broadcast_at": bounds})
        return BroadcastCounts.from_statuses([row["status"] for row in rows])

    async def _hourly_broadcasts(self, store: RecordStore, since: datetime) -> list[HourlyBroadcastPoint]:
        by_hour: dict[datetime, list[str]] = {}
        for row in await self._fetch_all(store, BROADCAST_LOGS, {"broadcast_at": {">=": since}}):
            log = BroadcastLog.model_validate(row)
            by_hour.setdefault(log.broadcast_at.replace(minute=0, second=0, microsecond=0), []).append(log.status)
        return [
            HourlyBroadcastPoint(hour=hour, total=len(statuses), success=statuses.count("success"), failed=statuses.count("failed"))
            for hour, statuses in sorted(by_hour.items(), reverse=True)
        ]

    # -------------------------------------------------------------------------
    # Cache introspection
    # -------------------------------------------------------------------------

    def cache_stats(self) -> dict[str, Any]:
        return {"enabled": self.cache_enabled, **self.cache.stats()}

    def clear_cache(self) -> None:
        self.cache.invalidate_all()
