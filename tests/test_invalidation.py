"""
Every mutation invalidates the read cache: a cached read taken before the
write never hides the write from the next cached read, on any backend.
"""

import asyncio

import pytest

from conftest import FakeSupabase
from parceldesk.db.document import DocumentStoreAdapter
from parceldesk.db.fixture import FixtureAdapter
from parceldesk.db.seed import AGENT_ID, LOGISTICS_ADMIN_ID, seed_rows

OPEN_TICKET = "550e8400-e29b-41d4-a716-446655440020"
PENDING_TICKET = "550e8400-e29b-41d4-a716-446655440021"
DELIVERED_LOG = "550e8400-e29b-41d4-a716-446655440010"
OTHER_LOG = "550e8400-e29b-41d4-a716-446655440011"

BACKENDS = ["fixture", "relational", "document"]


def run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio needed)."""
    return asyncio.run(coro)


async def observe_agent_name(adapter):
    return (await adapter.get_account_by_id(AGENT_ID)).display_name


async def observe_account_ids(adapter):
    return sorted(account.id for account in await adapter.list_accounts())


async def observe_comment_count(adapter):
    return len(await adapter.list_ticket_comments(OPEN_TICKET))


async def observe_open_ticket(adapter):
    ticket = await adapter.get_ticket_by_id(OPEN_TICKET)
    return ticket.status, ticket.closed_at is not None


async def observe_ticket_total(adapter):
    return await adapter.count_tickets()


async def observe_failed_logs(adapter):
    return [log.id for log in await adapter.list_broadcast_logs({"status": "failed"})]


async def observe_log_total(adapter):
    return await adapter.count_broadcast_logs()


# name -> (cached read, mutation, what the read must show afterwards)
CASES = {
    "update_account": (
        observe_agent_name,
        lambda a: a.update_account(AGENT_ID, {"display_name": "Agen Dua"}),
        "Agen Dua",
    ),
    "delete_account": (
        observe_account_ids,
        lambda a: a.delete_account(LOGISTICS_ADMIN_ID),
        sorted(row["id"] for row in seed_rows()["accounts"] if row["id"] != LOGISTICS_ADMIN_ID),
    ),
    "add_ticket_comment": (
        observe_comment_count,
        lambda a: a.add_ticket_comment(OPEN_TICKET, {"text": "Sudah dihubungi", "author_account_id": AGENT_ID}),
        1,
    ),
    "update_ticket": (
        observe_open_ticket,
        lambda a: a.update_ticket(OPEN_TICKET, {"status": "closed"}),
        ("closed", True),
    ),
    "transition_ticket": (
        observe_open_ticket,
        lambda a: a.transition_ticket(OPEN_TICKET, "closed", {"text": "Selesai", "author_account_id": AGENT_ID}),
        ("closed", True),
    ),
    "delete_ticket": (
        observe_ticket_total,
        lambda a: a.delete_ticket(PENDING_TICKET),
        1,
    ),
    "update_broadcast_log": (
        observe_failed_logs,
        lambda a: a.update_broadcast_log(DELIVERED_LOG, {"status": "failed", "error_detail": "nomor tidak aktif"}),
        [DELIVERED_LOG],
    ),
    "delete_broadcast_log": (
        observe_log_total,
        lambda a: a.delete_broadcast_log(OTHER_LOG),
        1,
    ),
}


async def _open(kind: str, relational_factory):
    rows = seed_rows()
    if kind == "fixture":
        adapter = FixtureAdapter(seed=rows)
        await adapter.connect()
        return adapter
    if kind == "document":
        return DocumentStoreAdapter(client=FakeSupabase(rows))
    return await relational_factory(rows)


@pytest.mark.parametrize("backend", BACKENDS)
@pytest.mark.parametrize("case", list(CASES))
def test_mutation_is_visible_through_cache(case, backend, relational_factory):
    observe, mutate, expected = CASES[case]

    async def scenario():
        adapter = await _open(backend, relational_factory)
        try:
            before = await observe(adapter)
            cached = adapter.cache_stats()["size"]
            await mutate(adapter)
            return before, await observe(adapter), cached
        finally:
            await adapter.close()

    before, after, cached = run(scenario())
    assert cached >= 1
    assert before != expected
    assert after == expected

