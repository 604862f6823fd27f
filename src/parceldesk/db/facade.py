"""
DatabaseFacade - the single entry point to the data layer.

Constructed once at process start and handed to everything that needs
data (no module-level singleton). start() picks exactly one backend:

    1. DB_BACKEND=fixture                     → fixture
    2. DB_BACKEND=document, or auto + Supabase → probe Supabase
       (explicit document failing is fatal; auto falls through)
    3. DB_BACKEND=auto|relational             → probe DATABASE_URL
       (explicit relational failing is fatal)
    4. last resort                            → fixture, with a warning

Selection is terminal: changing backend needs a restart.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from enum import Enum
from typing import Any

from parceldesk.config import DeskSettings
from parceldesk.db.adapter import (
    BackendAdapter,
    BackendKind,
    ChangeCallback,
    QueryInput,
    SupportsChangeFeed,
    SupportsRawQuery,
    TicketTransition,
)
from parceldesk.db.document import DocumentStoreAdapter
from parceldesk.db.fixture import FixtureAdapter
from parceldesk.db.relational import RelationalAdapter
from parceldesk.errors import ConnectivityError, DataError, UnsupportedOperation
from parceldesk.models import (
    Account,
    AgentPerformance,
    BroadcastLog,
    BroadcastSummary,
    BroadcastTrendPoint,
    DashboardStats,
    PriorityShare,
    Ticket,
    TicketComment,
    TicketStatus,
    TicketTrendPoint,
)

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[DeskSettings], BackendAdapter]

CAPABILITIES = {
    "raw_query": SupportsRawQuery,
    "change_feed": SupportsChangeFeed,
}


class FacadeState(str, Enum):
    UNSELECTED = "unselected"
    PROBING = "probing"
    ACTIVE = "active"


def _fixture(settings: DeskSettings) -> BackendAdapter:
    return FixtureAdapter(cache_enabled=settings.cache_enabled, cache_ttl_seconds=settings.cache_ttl_seconds)


def _document(settings: DeskSettings) -> BackendAdapter:
    return DocumentStoreAdapter(
        url=settings.supabase_url,
        key=settings.supabase_key,
        cache_ttl_seconds=settings.cache_ttl_seconds,
    )


def _relational(settings: DeskSettings) -> BackendAdapter:
    return RelationalAdapter(
        settings.database_url,
        pool_size=settings.db_pool_size,
        pool_timeout_seconds=settings.db_pool_timeout_seconds,
        connect_timeout_seconds=settings.probe_timeout_seconds,
        cache_enabled=settings.cache_enabled,
        cache_ttl_seconds=settings.cache_ttl_seconds,
    )


DEFAULT_FACTORIES: dict[BackendKind, AdapterFactory] = {
    "fixture": _fixture,
    "document": _document,
    "relational": _relational,
}


class DatabaseFacade:
    """
    Selects one BackendAdapter at startup and exposes its contract.

    Every operation is bounded by `query_timeout_seconds`; a timeout
    surfaces as ConnectivityError. Other errors pass through unchanged.
    """

    def __init__(self, settings: DeskSettings, factories: Mapping[BackendKind, AdapterFactory] | None = None):
        self.settings = settings
        self.factories = {**DEFAULT_FACTORIES, **(factories or {})}
        self.state = FacadeState.UNSELECTED
        self._adapter: BackendAdapter | None = None
        self._capabilities: frozenset[str] = frozenset()

    # =========================================================================
    # Selection
    # =========================================================================

    async def start(self) -> BackendKind:
        if self.state is not FacadeState.UNSELECTED:
            raise RuntimeError(f"DatabaseFacade already started (state={self.state.value})")
        self.state = FacadeState.PROBING

        choice = self.settings.db_backend
        logger.info(f"Selecting database backend (DB_BACKEND={choice})")

        try:
            adapter = await self._select(choice)
        except BaseException:
            self.state = FacadeState.UNSELECTED
            raise

        self._activate(adapter)
        return adapter.kind

    async def _select(self, choice: str) -> BackendAdapter:
        if choice == "fixture":
            return await self._open("fixture")

        if choice == "document" or (choice == "auto" and self.settings.supabase_url):
            adapter = await self._probe("document")
            if adapter is not None:
                return adapter
            if choice == "document":
                raise ConnectivityError("DB_BACKEND=document but the document store is unreachable")

        if choice in ("auto", "relational"):
            adapter = await self._probe("relational")
            if adapter is not None:
                return adapter
            if choice == "relational":
                raise ConnectivityError("DB_BACKEND=relational but the relational database is unreachable")

        logger.warning(
            "No persistent backend reachable: falling back to the in-memory FIXTURE backend. "
            "Data will NOT be persisted and is lost on restart."
        )
        return await self._open("fixture")

    async def _open(self, kind: BackendKind) -> BackendAdapter:
        adapter = self.factories[kind](self.settings)
        await adapter.connect()
        return adapter

    async def _probe(self, kind: BackendKind) -> BackendAdapter | None:
        """connect + health_check within probe_timeout_seconds; None on failure."""
        timeout = self.settings.probe_timeout_seconds
        logger.info(f"Probing {kind} backend (timeout {timeout}s)")
        adapter = self.factories[kind](self.settings)
        try:
            async with asyncio.timeout(timeout):
                await adapter.connect()
                healthy = await adapter.health_check()
        except TimeoutError:
            logger.warning(f"{kind} backend probe timed out after {timeout}s")
            healthy = False
        except Exception as e:
            # Any failure here means "not this backend"; selection moves on
            logger.warning(f"{kind} backend probe failed: {e!r}")
            healthy = False

        if healthy:
            logger.info(f"{kind} backend reachable")
            return adapter

        logger.warning(f"{kind} backend unavailable")
        await self._discard(adapter)
        return None

    async def _discard(self, adapter: BackendAdapter) -> None:
        try:
            await adapter.close()
        except DataError as e:
            logger.warning(f"Error closing {adapter.kind} adapter after failed probe: {e}")

    def _activate(self, adapter: BackendAdapter) -> None:
        self._adapter = adapter
        self._capabilities = frozenset(name for name, proto in CAPABILITIES.items() if isinstance(adapter, proto))
        self.state = FacadeState.ACTIVE
        caps = ", ".join(sorted(self._capabilities)) or "none"
        logger.info(f"Database backend active: {adapter.kind} (optional capabilities: {caps})")

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def adapter(self) -> BackendAdapter:
        if self._adapter is None:
            raise RuntimeError("DatabaseFacade not started. Call start() first.")
        return self._adapter

    @property
    def backend_kind(self) -> BackendKind:
        return self.adapter.kind

    def get_backend_kind(self) -> BackendKind:
        return self.backend_kind

    def supports(self, capability: str) -> bool:
        if capability not in CAPABILITIES:
            raise ValueError(f"Unknown capability '{capability}'. Known: {', '.join(CAPABILITIES)}")
        return capability in self._capabilities

    async def close(self) -> None:
        if self._adapter is not None:
            await self._adapter.close()
            logger.info(f"{self._adapter.kind} backend closed")

    # =========================================================================
    # Bounded delegation
    # =========================================================================

    async def _run(self, operation: str, call: Awaitable[Any]) -> Any:
        timeout = self.settings.query_timeout_seconds
        if not timeout:
            return await call
        try:
            async with asyncio.timeout(timeout):
                return await call
        except TimeoutError as e:
            raise ConnectivityError(f"{operation} timed out after {timeout}s on {self.backend_kind} backend") from e

    async def health_check(self) -> bool:
        return await self._run("health_check", self.adapter.health_check())

    # Accounts

    async def get_account_by_id(self, account_id: str, use_cache: bool = True, cache_ttl: float | None = None) -> Account | None:
        return await self._run("get_account_by_id", self.adapter.get_account_by_id(account_id, use_cache, cache_ttl))

    async def get_account_by_email(self, email: str, use_cache: bool = True, cache_ttl: float | None = None) -> Account | None:
        return await self._run("get_account_by_email", self.adapter.get_account_by_email(email, use_cache, cache_ttl))

    async def create_account(self, data) -> Account:
        return await self._run("create_account", self.adapter.create_account(data))

    async def update_account(self, account_id: str, patch) -> Account | None:
        return await self._run("update_account", self.adapter.update_account(account_id, patch))

    async def delete_account(self, account_id: str, reassign_to: str | None = None) -> bool:
        return await self._run("delete_account", self.adapter.delete_account(account_id, reassign_to))

    async def list_accounts(self, query: QueryInput = None, use_cache: bool = True, cache_ttl: float | None = None) -> list[Account]:
        return await self._run("list_accounts", self.adapter.list_accounts(query, use_cache, cache_ttl))

    # Tickets

    async def get_ticket_by_id(self, ticket_id: str, use_cache: bool = True, cache_ttl: float | None = None) -> Ticket | None:
        return await self._run("get_ticket_by_id", self.adapter.get_ticket_by_id(ticket_id, use_cache, cache_ttl))

    async def create_ticket(self, data) -> Ticket:
        return await self._run("create_ticket", self.adapter.create_ticket(data))

    async def update_ticket(self, ticket_id: str, patch) -> Ticket | None:
        return await self._run("update_ticket", self.adapter.update_ticket(ticket_id, patch))

    async def delete_ticket(self, ticket_id: str) -> bool:
        return await self._run("delete_ticket", self.adapter.delete_ticket(ticket_id))

    async def list_tickets(self, query: QueryInput = None, use_cache: bool = True, cache_ttl: float | None = None) -> list[Ticket]:
        return await self._run("list_tickets", self.adapter.list_tickets(query, use_cache, cache_ttl))

    async def count_tickets(self, query: QueryInput = None, use_cache: bool = True, cache_ttl: float | None = None) -> int:
        return await self._run("count_tickets", self.adapter.count_tickets(query, use_cache, cache_ttl))

    async def list_ticket_comments(
        self,
        ticket_id: str,
        include_internal: bool = True,
        use_cache: bool = True,
        cache_ttl: float | None = None,
    ) -> list[TicketComment]:
        return await self._run(
            "list_ticket_comments",
            self.adapter.list_ticket_comments(ticket_id, include_internal, use_cache, cache_ttl),
        )

    async def add_ticket_comment(self, ticket_id: str, data) -> TicketComment | None:
        return await self._run("add_ticket_comment", self.adapter.add_ticket_comment(ticket_id, data))

    async def transition_ticket(self, ticket_id: str, status: TicketStatus, comment=None) -> TicketTransition | None:
        return await self._run("transition_ticket", self.adapter.transition_ticket(ticket_id, status, comment))

    # Broadcast logs

    async def get_broadcast_log_by_id(self, log_id: str, use_cache: bool = True, cache_ttl: float | None = None) -> BroadcastLog | None:
        return await self._run("get_broadcast_log_by_id", self.adapter.get_broadcast_log_by_id(log_id, use_cache, cache_ttl))

    async def create_broadcast_log(self, data) -> BroadcastLog:
        return await self._run("create_broadcast_log", self.adapter.create_broadcast_log(data))

    async def update_broadcast_log(self, log_id: str, patch) -> BroadcastLog | None:
        return await self._run("update_broadcast_log", self.adapter.update_broadcast_log(log_id, patch))

    async def delete_broadcast_log(self, log_id: str) -> bool:
        return await self._run("delete_broadcast_log", self.adapter.delete_broadcast_log(log_id))

    async def list_broadcast_logs(self, query: QueryInput = None, use_cache: bool = True, cache_ttl: float | None = None) -> list[BroadcastLog]:
        return await self._run("list_broadcast_logs", self.adapter.list_broadcast_logs(query, use_cache, cache_ttl))

    async def count_broadcast_logs(self, query: QueryInput = None, use_cache: bool = True, cache_ttl: float | None = None) -> int:
        return await self._run("count_broadcast_logs", self.adapter.count_broadcast_logs(query, use_cache, cache_ttl))

    # Dashboard, analytics, cache

    async def get_dashboard_stats(self, use_cache: bool = True, cache_ttl: float | None = None) -> DashboardStats:
        return await self._run("get_dashboard_stats", self.adapter.get_dashboard_stats(use_cache, cache_ttl))

    async def get_ticket_trends(self, days: int = 7, as_of: datetime | None = None, use_cache: bool = True) -> list[TicketTrendPoint]:
        return await self._run("get_ticket_trends", self.adapter.get_ticket_trends(days, as_of, use_cache))

    async def get_broadcast_trends(self, days: int = 7, as_of: datetime | None = None, use_cache: bool = True) -> list[BroadcastTrendPoint]:
        return await self._run("get_broadcast_trends", self.adapter.get_broadcast_trends(days, as_of, use_cache))

    async def get_agent_performance(self, use_cache: bool = True) -> list[AgentPerformance]:
        return await self._run("get_agent_performance", self.adapter.get_agent_performance(use_cache))

    async def get_priority_distribution(self, days: int = 30, as_of: datetime | None = None, use_cache: bool = True) -> list[PriorityShare]:
        return await self._run("get_priority_distribution", self.adapter.get_priority_distribution(days, as_of, use_cache))

    async def get_broadcast_summary(
        self,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        as_of: datetime | None = None,
        use_cache: bool = True,
    ) -> BroadcastSummary:
        return await self._run(
            "get_broadcast_summary", self.adapter.get_broadcast_summary(date_from, date_to, as_of, use_cache),
        )

    def cache_stats(self) -> dict[str, Any]:
        return self.adapter.cache_stats()

    def clear_cache(self) -> None:
        self.adapter.clear_cache()

    # =========================================================================
    # Optional capabilities
    # =========================================================================

    async def execute_raw(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        if not self.supports("raw_query"):
            raise UnsupportedOperation("execute_raw", self.backend_kind)
        return await self._run("execute_raw", self.adapter.execute_raw(sql, params))

    async def subscribe(self, table: str, callback: ChangeCallback) -> Any:
        if not self.supports("change_feed"):
            raise UnsupportedOperation("subscribe", self.backend_kind)
        return await self.adapter.subscribe(table, callback)

    async def unsubscribe(self, handle: Any) -> None:
        if not self.supports("change_feed"):
            raise UnsupportedOperation("unsubscribe", self.backend_kind)
        await self.adapter.unsubscribe(handle)
