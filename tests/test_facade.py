"""
Tests for DatabaseFacade: startup selection, fallback, bounded delegation
and capability checks.
"""

import asyncio
import logging

import pytest

from conftest import FakeSupabase
from parceldesk.db.document import DocumentStoreAdapter
from parceldesk.db.facade import DatabaseFacade, FacadeState
from parceldesk.db.fixture import FixtureAdapter
from parceldesk.errors import ConnectivityError, UnsupportedOperation, ValidationError


def run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio needed)."""
    return asyncio.run(coro)


class StubBackend(FixtureAdapter):
    """A fixture adapter wearing another backend's kind, with scripted failures."""

    def __init__(self, kind: str, fail: str | None = None):
        super().__init__()
        self.kind = kind
        self.fail = fail
        self.closed = False

    async def connect(self) -> None:
        if self.fail == "connect":
            raise ConnectivityError(f"{self.kind} refused the connection")
        if self.fail == "hang":
            await asyncio.sleep(30)
        await super().connect()

    async def health_check(self) -> bool:
        return self.fail != "unhealthy"

    async def close(self) -> None:
        self.closed = True
        await super().close()


class Factories:
    """Records which backends were constructed."""

    def __init__(self, **behaviour):
        self.behaviour = behaviour
        self.built: dict[str, StubBackend] = {}

    def mapping(self):
        return {kind: self._factory(kind) for kind in ("document", "relational")}

    def _factory(self, kind):
        def build(settings):
            adapter = StubBackend(kind, self.behaviour.get(kind))
            self.built[kind] = adapter
            return adapter

        return build


@pytest.fixture
def auto_settings(make_settings):
    return make_settings(
        db_backend="auto",
        supabase_url="https://desk.supabase.co",
        supabase_key="anon-key",
        probe_timeout_seconds=0.05,
    )


class TestSelection:
    def test_explicit_fixture(self, make_settings):
        facade = DatabaseFacade(make_settings(db_backend="fixture"))
        assert run(facade.start()) == "fixture"
        assert facade.get_backend_kind() == "fixture"
        assert facade.state is FacadeState.ACTIVE

    def test_auto_prefers_document_store(self, auto_settings):
        factories = Factories()
        facade = DatabaseFacade(auto_settings, factories.mapping())
        assert run(facade.start()) == "document"
        assert "relational" not in factories.built

    def test_auto_falls_back_to_relational(self, auto_settings):
        factories = Factories(document="connect")
        facade = DatabaseFacade(auto_settings, factories.mapping())
        assert run(facade.start()) == "relational"
        assert factories.built["document"].closed is True

    def test_auto_without_supabase_skips_document(self, make_settings):
        factories = Factories()
        facade = DatabaseFacade(make_settings(db_backend="auto", probe_timeout_seconds=0.05), factories.mapping())
        assert run(facade.start()) == "relational"
        assert "document" not in factories.built

    def test_auto_falls_back_to_fixture_with_warning(self, auto_settings, caplog):
        factories = Factories(document="unhealthy", relational="hang")
        facade = DatabaseFacade(auto_settings, factories.mapping())
        with caplog.at_level(logging.WARNING, logger="parceldesk.db.facade"):
            assert run(facade.start()) == "fixture"
        assert facade.backend_kind == "fixture"
        assert "timed out" in caplog.text
        assert "FIXTURE" in caplog.text

    def test_explicit_document_failure_is_fatal(self, auto_settings):
        settings = auto_settings.model_copy(update={"db_backend": "document"})
        factories = Factories(document="connect")
        facade = DatabaseFacade(settings, factories.mapping())
        with pytest.raises(ConnectivityError):
            run(facade.start())
        assert facade.state is FacadeState.UNSELECTED
        assert "relational" not in factories.built

    def test_explicit_relational_failure_is_fatal(self, make_settings):
        factories = Factories(relational="unhealthy")
        facade = DatabaseFacade(make_settings(db_backend="relational"), factories.mapping())
        with pytest.raises(ConnectivityError):
            run(facade.start())

    def test_start_twice(self, make_settings):
        facade = DatabaseFacade(make_settings())

        async def scenario():
            await facade.start()
            await facade.start()

        with pytest.raises(RuntimeError):
            run(scenario())

    def test_not_started(self, make_settings):
        facade = DatabaseFacade(make_settings())
        with pytest.raises(RuntimeError):
            facade.backend_kind

    def test_real_sqlite_relational(self, make_settings, sqlite_url):
        facade = DatabaseFacade(make_settings(db_backend="relational", database_url=sqlite_url))

        async def scenario():
            kind = await facade.start()
            try:
                rows = await facade.execute_raw("SELECT count(*) AS n FROM accounts")
                return kind, facade.supports("raw_query"), facade.supports("change_feed"), rows
            finally:
                await facade.close()

        assert run(scenario()) == ("relational", True, False, [{"n": 0}])

    def test_real_document_store(self, make_settings):
        settings = make_settings(db_backend="document")
        facade = DatabaseFacade(settings, {"document": lambda s: DocumentStoreAdapter(client=FakeSupabase())})
        assert run(facade.start()) == "document"
        assert facade.supports("change_feed") is True


class TestDelegation:
    def test_operations_pass_through(self, make_settings):
        facade = DatabaseFacade(make_settings())

        async def scenario():
            await facade.start()
            tickets = await facade.list_tickets({"status": "open"})
            with pytest.raises(ValidationError):
                await facade.list_tickets({"status": "bogus"})
            return tickets

        assert len(run(scenario())) == 1

    def test_optional_capabilities_are_distinct_errors(self, make_settings):
        facade = DatabaseFacade(make_settings())
        run(facade.start())
        with pytest.raises(UnsupportedOperation) as exc:
            run(facade.execute_raw("SELECT 1"))
        assert exc.value.backend == "fixture"
        assert facade.supports("change_feed") is True

    def test_unknown_capability(self, make_settings):
        facade = DatabaseFacade(make_settings())
        run(facade.start())
        with pytest.raises(ValueError):
            facade.supports("time_travel")

    def test_query_timeout_is_connectivity_error(self, make_settings):
        class Slow(FixtureAdapter):
            async def list_tickets(self, *args, **kwargs):
                await asyncio.sleep(30)

        facade = DatabaseFacade(make_settings(query_timeout_seconds=0.05), {"fixture": lambda s: Slow()})

        async def scenario():
            await facade.start()
            await facade.list_tickets()

        with pytest.raises(ConnectivityError, match="timed out"):
            run(scenario())

    def test_cache_introspection(self, make_settings):
        facade = DatabaseFacade(make_settings())

        async def scenario():
            await facade.start()
            await facade.get_dashboard_stats()
            before = facade.cache_stats()["size"]
            facade.clear_cache()
            return before, facade.cache_stats()["size"]

        assert run(scenario()) == (1, 0)
