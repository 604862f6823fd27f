"""
Tests for RelationalAdapter against a real SQLite file (aiosqlite).
"""

import asyncio

import pytest

from parceldesk.db.adapter import SupportsChangeFeed, SupportsRawQuery
from parceldesk.db.entities import TICKETS
from parceldesk.db.relational import RelationalAdapter, _redact
from parceldesk.db.seed import ADMIN_ID, AGENT_ID
from parceldesk.errors import ConnectivityError, ConstraintError, ValidationError

OPEN_TICKET = "550e8400-e29b-41d4-a716-446655440020"


def run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio needed)."""
    return asyncio.run(coro)


def with_adapter(factory, body, **kwargs):
    """Build a seeded adapter, run body(adapter), always dispose the engine."""

    async def scenario():
        adapter = await factory(**kwargs)
        try:
            return await body(adapter)
        finally:
            await adapter.close()

    return run(scenario())


class TestLifecycle:
    def test_redact_hides_password(self):
        assert _redact("postgresql+asyncpg://desk:s3cret@db:5432/t") == "postgresql+asyncpg://desk:***@db:5432/t"
        assert _redact("sqlite+aiosqlite:///desk.db") == "sqlite+aiosqlite:///desk.db"

    def test_engine_before_connect(self, sqlite_url):
        adapter = RelationalAdapter(sqlite_url)
        with pytest.raises(ConnectivityError):
            adapter.engine

    def test_capabilities(self, sqlite_url):
        adapter = RelationalAdapter(sqlite_url)
        assert isinstance(adapter, SupportsRawQuery)
        assert not isinstance(adapter, SupportsChangeFeed)

    def test_health_check(self, relational_factory):
        async def body(adapter):
            return await adapter.health_check()

        assert with_adapter(relational_factory, body) is True

    def test_sqlite_file_pool_is_bounded(self, relational_factory):
        async def body(adapter):
            pool = adapter.engine.pool
            return pool.size(), pool.timeout(), pool._max_overflow

        assert with_adapter(relational_factory, body, pool_size=3, pool_timeout_seconds=1.5) == (3, 1.5, 0)

    def test_factory_gives_each_call_its_own_database(self, relational_factory):
        async def scenario():
            first = await relational_factory()
            second = await relational_factory()
            try:
                return await first.count_tickets(), await second.count_tickets()
            finally:
                await first.close()
                await second.close()

        assert run(scenario()) == (2, 2)

    def test_unreachable_database_is_connectivity_error(self, tmp_path):
        adapter = RelationalAdapter(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'desk.db'}")

        async def scenario():
            try:
                await adapter.connect()
            finally:
                await adapter.close()

        with pytest.raises(ConnectivityError):
            run(scenario())


class TestContract:
    def test_seeded_reads(self, relational_factory):
        async def body(adapter):
            agent = await adapter.get_account_by_email("agent1@example.com")
            tickets = await adapter.list_tickets({"assigned_account_id": AGENT_ID})
            return agent, tickets

        agent, tickets = with_adapter(relational_factory, body)
        assert agent.id == AGENT_ID
        assert agent.created_at.tzinfo is not None
        assert len(tickets) == 2

    def test_close_ticket_round_trip(self, relational_factory):
        async def body(adapter):
            closed = await adapter.update_ticket(OPEN_TICKET, {"status": "closed"})
            reread = await adapter.get_ticket_by_id(OPEN_TICKET)
            return closed, reread

        closed, reread = with_adapter(relational_factory, body)
        assert closed.closed_at is not None
        assert reread.status == "closed"
        assert reread.closed_at == closed.closed_at

    def test_duplicate_email(self, relational_factory):
        async def body(adapter):
            with pytest.raises(ConstraintError):
                await adapter.create_account({"display_name": "x", "email": "admin@example.com", "credential_hash": "h"})
            return await adapter.count_tickets()

        assert with_adapter(relational_factory, body) == 2

    def test_foreign_key_enforced(self, relational_factory):
        async def body(adapter):
            with pytest.raises(ConstraintError):
                await adapter.create_ticket({"subject": "x", "assigned_account_id": "ghost"})

        with_adapter(relational_factory, body)

    def test_transaction_rolls_back(self, relational_factory):
        async def body(adapter):
            with pytest.raises(ConstraintError):
                async with adapter.unit_of_work() as store:
                    await store.update(TICKETS, OPEN_TICKET, {"subject": "changed"})
                    await store.update(TICKETS, OPEN_TICKET, {"assigned_account_id": "ghost"})
            return await adapter.get_ticket_by_id(OPEN_TICKET, use_cache=False)

        assert with_adapter(relational_factory, body).subject == "Paket belum sampai"

    def test_delete_account_with_reassignment(self, relational_factory):
        async def body(adapter):
            with pytest.raises(ConstraintError):
                await adapter.delete_account(AGENT_ID)
            deleted = await adapter.delete_account(AGENT_ID, reassign_to=ADMIN_ID)
            return deleted, await adapter.count_tickets({"assigned_account_id": ADMIN_ID})

        assert with_adapter(relational_factory, body) == (True, 2)

    def test_delete_ticket_with_comments(self, relational_factory):
        async def body(adapter):
            await adapter.add_ticket_comment(OPEN_TICKET, {"text": "note", "author_account_id": AGENT_ID})
            deleted = await adapter.delete_ticket(OPEN_TICKET)
            return deleted, await adapter.list_ticket_comments(OPEN_TICKET)

        assert with_adapter(relational_factory, body) == (True, [])

    def test_transition_is_atomic(self, relational_factory):
        async def body(adapter):
            with pytest.raises(ConstraintError):
                await adapter.transition_ticket(OPEN_TICKET, "closed", {"text": "x", "author_account_id": "ghost"})
            return await adapter.get_ticket_by_id(OPEN_TICKET, use_cache=False)

        assert with_adapter(relational_factory, body).status == "open"

    def test_invalid_filter_never_reaches_database(self, relational_factory):
        async def body(adapter):
            with pytest.raises(ValidationError):
                await adapter.list_tickets({"status": "resolved"})

        with_adapter(relational_factory, body)

    def test_search_treats_wildcards_literally(self, relational_factory):
        from parceldesk.db.filters import ListQuery

        async def body(adapter):
            await adapter.create_ticket({"subject": "Diskon 50% hilang"})
            await adapter.create_ticket({"subject": "Diskon 500 hilang"})
            return await adapter.list_tickets(ListQuery(search="50%"))

        assert [t.subject for t in with_adapter(relational_factory, body)] == ["Diskon 50% hilang"]


class TestAggregates:
    def test_dashboard_counts_are_computed(self, relational_factory):
        async def body(adapter):
            await adapter.create_ticket({"subject": "urgent one", "priority": "urgent", "status": "on_hold"})
            await adapter.create_broadcast_log({
                "tracking_ref": "TRK9", "recipient_contact": "+62", "message_body": "x", "status": "failed",
            })
            return await adapter.get_dashboard_stats()

        stats = with_adapter(relational_factory, body)
        assert stats.tickets.total_tickets == 3
        assert stats.tickets.open_tickets == 1
        assert stats.tickets.pending_tickets == 1
        assert stats.tickets.on_hold_tickets == 1
        assert stats.tickets.urgent_tickets == 1
        assert stats.tickets.high_priority_tickets == 1
        assert stats.broadcasts.total_broadcasts == 3
        assert stats.broadcasts.failed_broadcasts == 1
        assert stats.broadcasts.success_rate == pytest.approx(66.67)
        assert stats.users.active_admins == 2
        assert stats.users.active_agents == 1
        assert len(stats.recent_activity) == 6


class TestRawQuery:
    def test_execute_raw_with_bound_params(self, relational_factory):
        async def body(adapter):
            await adapter.list_tickets()
            rows = await adapter.execute_raw(
                "SELECT human_uid FROM tickets WHERE assigned_account_id = :agent ORDER BY human_uid",
                {"agent": AGENT_ID},
            )
            return rows, adapter.cache_stats()["size"]

        rows, cached = with_adapter(relational_factory, body)
        assert rows == [{"human_uid": "CS-2024-0001"}, {"human_uid": "CS-2024-0002"}]
        assert cached == 0

    def test_execute_raw_write_returns_no_rows(self, relational_factory):
        async def body(adapter):
            rows = await adapter.execute_raw("UPDATE tickets SET priority = 'low'")
            return rows, await adapter.count_tickets({"priority": "low"})

        assert with_adapter(relational_factory, body) == ([], 2)
