"""
Pytest configuration and fixtures for ParcelDesk tests.

Async code is driven with asyncio.run() inside each test; fixtures that
need an event loop (SQLite engines) hand out async factories instead of
live objects so everything runs on the test's own loop.
"""

import copy
import functools
import itertools
import os
import re
from datetime import datetime
from typing import Any

import pytest

# Set test environment before importing parceldesk modules
os.environ["DESK_ENV"] = "development"
os.environ["DB_BACKEND"] = "fixture"
os.environ["JWT_SECRET"] = "test-secret"

from postgrest.exceptions import APIError  # noqa: E402

from parceldesk.config import DeskSettings  # noqa: E402
from parceldesk.db.document import DocumentStoreAdapter  # noqa: E402
from parceldesk.db.entities import ENTITIES  # noqa: E402
from parceldesk.db.fixture import FixtureAdapter  # noqa: E402
from parceldesk.db.relational import RelationalAdapter  # noqa: E402
from parceldesk.db.seed import seed_rows  # noqa: E402

TEST_SECRET = "test-secret"


# =============================================================================
# Fake PostgREST / Supabase client
# =============================================================================


def _as_json(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


def _parse_ts(value: Any) -> datetime | None:
    if not isinstance(value, str) or len(value) < 19 or value[4] != "-":
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _compare(actual: Any, expected: Any) -> int | None:
    """PostgREST-style comparison of a stored JSON value with a filter value. None never compares."""
    if actual is None:
        return None
    if isinstance(actual, bool):
        expected = expected in (True, "true")
    else:
        left, right = _parse_ts(actual), _parse_ts(expected)
        if left is not None and right is not None:
            actual, expected = left, right
    if actual == expected:
        return 0
    return -1 if actual < expected else 1


def _like_regex(pattern: str) -> re.Pattern:
    out, chars = [], iter(pattern)
    for ch in chars:
        if ch == "\\":
            out.append(re.escape(next(chars, "\\")))
        elif ch == "%":
            out.append(".*")
        elif ch == "_":
            out.append(".")
        else:
            out.append(re.escape(ch))
    return re.compile("".join(out), re.IGNORECASE | re.DOTALL)


def _split_or(expression: str) -> list[str]:
    parts, current, quoted, escaped = [], [], False, False
    for ch in expression:
        if escaped:
            current.append(ch)
            escaped = False
        elif ch == "\\" and quoted:
            current.append(ch)
            escaped = True
        elif ch == '"':
            current.append(ch)
            quoted = not quoted
        elif ch == "," and not quoted:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return parts


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


class FakeResponse:
    def __init__(self, data: list[dict[str, Any]], count: int | None = None):
        self.data = data
        self.count = count


class FakeChannel:
    def __init__(self, name: str):
        self.name = name
        self.handlers: list[tuple[str, Any]] = []
        self.subscribed = False

    def on_postgres_changes(self, event: str, schema: str = "public", table: str = "*", callback=None, **kwargs):
        self.handlers.append((table, callback))
        return self

    async def subscribe(self):
        self.subscribed = True
        return self

    def emit(self, payload: dict[str, Any]) -> None:
        for _, callback in self.handlers:
            callback(payload)


class FakeQuery:
    """Records builder calls and evaluates them against the fake tables on execute()."""

    def __init__(self, client: "FakeSupabase", table: str):
        self.client = client
        self.table_name = table
        self.action = "select"
        self.payload: dict[str, Any] | None = None
        self.predicates: list[Any] = []
        self.orders: list[tuple[str, bool, bool]] = []
        self.window: tuple[int, int] | None = None
        self.max_rows: int | None = None
        self.count_mode: str | None = None
        self.head = False
        self._negate = False
        self.calls: list[tuple] = []

    # -- actions --------------------------------------------------------------

    def select(self, *columns, count=None, head=False):
        self.calls.append(("select", columns, count, head))
        self.count_mode, self.head = count, head
        return self

    def insert(self, payload):
        self.calls.append(("insert",))
        self.action, self.payload = "insert", payload
        return self

    def update(self, payload):
        self.calls.append(("update",))
        self.action, self.payload = "update", payload
        return self

    def delete(self):
        self.calls.append(("delete",))
        self.action = "delete"
        return self

    # -- filters --------------------------------------------------------------

    @property
    def not_(self):
        self._negate = True
        return self

    def _where(self, name: str, args: tuple, predicate) -> "FakeQuery":
        self.calls.append((name, *args))
        if self._negate:
            self._negate = False
            self.predicates.append(lambda row, inner=predicate: not inner(row))
        else:
            self.predicates.append(predicate)
        return self

    def eq(self, column, value):
        return self._where("eq", (column, value), lambda row: _compare(row.get(column), value) == 0)

    def neq(self, column, value):
        return self._where("neq", (column, value), lambda row: _compare(row.get(column), value) not in (0, None))

    def gt(self, column, value):
        return self._where("gt", (column, value), lambda row: (_compare(row.get(column), value) or 0) > 0)

    def gte(self, column, value):
        return self._where("gte", (column, value), lambda row: _compare(row.get(column), value) in (0, 1))

    def lt(self, column, value):
        return self._where("lt", (column, value), lambda row: (_compare(row.get(column), value) or 0) < 0)

    def lte(self, column, value):
        return self._where("lte", (column, value), lambda row: _compare(row.get(column), value) in (0, -1))

    def in_(self, column, values):
        return self._where(
            "in_", (column, tuple(values)),
            lambda row: any(_compare(row.get(column), v) == 0 for v in values),
        )

    def ilike(self, column, pattern):
        regex = _like_regex(pattern)
        return self._where(
            "ilike", (column, pattern),
            lambda row: row.get(column) is not None and regex.fullmatch(str(row[column])) is not None,
        )

    def is_(self, column, value):
        assert value == "null"
        return self._where("is_", (column, value), lambda row: row.get(column) is None)

    def or_(self, expression):
        conditions = []
        for part in _split_or(expression):
            column, op, raw = part.split(".", 2)
            assert op == "ilike", f"fake only supports ilike inside or_, got {op}"
            conditions.append((column, _like_regex(_unquote(raw))))
        return self._where(
            "or_", (expression,),
            lambda row: any(row.get(c) is not None and rx.fullmatch(str(row[c])) for c, rx in conditions),
        )

    # -- shaping --------------------------------------------------------------

    def order(self, column, desc=False, nullsfirst=False):
        self.calls.append(("order", column, desc, nullsfirst))
        self.orders.append((column, desc, nullsfirst))
        return self

    def range(self, start, end):
        self.calls.append(("range", start, end))
        self.window = (start, end)
        return self

    def limit(self, size):
        self.calls.append(("limit", size))
        self.max_rows = size
        return self

    # -- execution ------------------------------------------------------------

    def _sort(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        def cmp(a, b):
            for column, desc, nullsfirst in self.orders:
                va, vb = a.get(column), b.get(column)
                if va is None and vb is None:
                    continue
                if va is None:
                    return -1 if nullsfirst else 1
                if vb is None:
                    return 1 if nullsfirst else -1
                c = _compare(va, vb)
                if c:
                    return -c if desc else c
            return 0

        return sorted(rows, key=functools.cmp_to_key(cmp))

    async def execute(self) -> FakeResponse:
        self.client.requests.append(self)
        if self.client.failure is not None and self.client.fails(self):
            raise self.client.failure

        rows = self.client.tables.setdefault(self.table_name, [])

        if self.action == "insert":
            row = {column: None for column in ENTITIES[self.table_name].columns}
            row.update(copy.deepcopy(self.payload))
            for column in self.client.UNIQUE.get(self.table_name, ()):
                if any(other.get(column) == row[column] for other in rows):
                    raise APIError({
                        "message": f'duplicate key value violates unique constraint "{self.table_name}_{column}_key"',
                        "code": "23505",
                        "hint": None,
                        "details": None,
                    })
            rows.append(row)
            return FakeResponse([copy.deepcopy(row)])

        matched = [row for row in rows if all(p(row) for p in self.predicates)]

        if self.action == "update":
            for row in matched:
                row.update(copy.deepcopy(self.payload))
            return FakeResponse(copy.deepcopy(matched))

        if self.action == "delete":
            self.client.tables[self.table_name] = [row for row in rows if row not in matched]
            return FakeResponse(copy.deepcopy(matched))

        count = len(matched) if self.count_mode else None
        if self.head:
            return FakeResponse([], count)
        result = self._sort(matched)
        if self.window is not None:
            result = result[self.window[0]:self.window[1] + 1]
        if self.max_rows is not None:
            result = result[:self.max_rows]
        return FakeResponse(copy.deepcopy(result), count)


class FakeSupabase:
    """
    In-memory stand-in for supabase.AsyncClient.

    Supports the builder calls the document adapter makes. Set `failure`
    (optionally with `fail_on=(action, table)`) to make execute() raise.
    """

    UNIQUE = {
        "accounts": ("id", "email"),
        "tickets": ("id", "human_uid"),
        "ticket_comments": ("id",),
        "broadcast_logs": ("id",),
    }

    def __init__(self, tables: dict[str, list[dict[str, Any]]] | None = None):
        self.tables = {name: [] for name in ENTITIES}
        for name, rows in (tables or {}).items():
            self.tables[name] = [{k: _as_json(v) for k, v in row.items()} for row in rows]
        self.requests: list[FakeQuery] = []
        self.channels: list[FakeChannel] = []
        self.removed: list[FakeChannel] = []
        self.failure: BaseException | None = None
        self.fail_on: tuple[str, str] | None = None

    def fails(self, query: FakeQuery) -> bool:
        return self.fail_on is None or self.fail_on == (query.action, query.table_name)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def channel(self, name: str) -> FakeChannel:
        channel = FakeChannel(name)
        self.channels.append(channel)
        return channel

    async def remove_channel(self, channel: FakeChannel) -> None:
        self.removed.append(channel)


# =============================================================================
# Fake socket
# =============================================================================


class FakeConnection:
    """Satisfies the hub's Connection protocol and records what it was sent."""

    def __init__(self, fail_sends: bool = False):
        self.sent: list[dict[str, Any]] = []
        self.closed: tuple[int, str | None] | None = None
        self.fail_sends = fail_sends

    async def send_json(self, data: Any) -> None:
        if self.fail_sends:
            raise ConnectionResetError("socket gone")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed = (code, reason)

    def events(self) -> list[str]:
        return [frame.get("event") for frame in self.sent]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def make_settings():
    """Build DeskSettings without reading .env."""

    def build(**overrides) -> DeskSettings:
        values = {"jwt_secret": TEST_SECRET, "db_backend": "fixture", "supabase_url": None, "supabase_key": None}
        values.update(overrides)
        return DeskSettings(_env_file=None, **values)

    return build


@pytest.fixture
def seed():
    """Fresh seed rows (accounts, tickets, broadcast logs)."""
    return seed_rows()


@pytest.fixture
def fixture_adapter(seed):
    return FixtureAdapter(seed=seed)


@pytest.fixture
def fake_supabase(seed):
    return FakeSupabase(seed)


@pytest.fixture
def document_adapter(fake_supabase):
    return DocumentStoreAdapter(client=fake_supabase)


@pytest.fixture
def sqlite_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'desk.db'}"


@pytest.fixture
def relational_factory(tmp_path):
    """
    Async factory for a connected SQLite-backed RelationalAdapter loaded
    with `rows` (seed rows by default). Every call gets its own database
    file. Call it inside the test's loop and close the adapter before the
    loop ends.
    """
    files = itertools.count(1)

    async def build(rows: dict[str, list[dict[str, Any]]] | None = None, **kwargs) -> RelationalAdapter:
        adapter = RelationalAdapter(f"sqlite+aiosqlite:///{tmp_path / f'desk-{next(files)}.db'}", **kwargs)
        await adapter.connect()
        async with adapter.unit_of_work() as store:
            for name, table_rows in (rows if rows is not None else seed_rows()).items():
                for row in table_rows:
                    await store.insert(ENTITIES[name], row)
        return adapter

    return build


@pytest.fixture
def connection_factory():
    return FakeConnection
