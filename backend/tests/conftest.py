"""
Shared pytest fixtures for onlinewatch tests.

FakeConnection stands in for an asyncpg connection. It understands exactly the
statements the scraper issues and keeps the three tables in memory, including
transaction/savepoint snapshots, so tests can assert on resulting rows.
"""
import copy
from contextlib import asynccontextmanager

import asyncpg
import pytest

from onlinewatch.config import Settings


def make_settings(**overrides) -> Settings:
    """Settings that never read .env; fast timings for tests."""
    defaults = {
        "DATABASE_URL": "postgresql://test@localhost/test",
        "ONLINE_USERS_URL": "https://upstream.test/api/channels/online_users",
        "SCRAPE_BATCH_DELAY_SECONDS": 1.0,
        "RATE_LIMIT_BACKOFF_SECONDS": 5.0,
        "_env_file": None,
    }
    defaults.update(overrides)
    return Settings(**defaults)


def _norm(query: str) -> str:
    return " ".join(query.split())


class FakeTransaction:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn
        self._snapshot = None
        self.started = False
        self.committed = False
        self.rolled_back = False

    async def start(self) -> None:
        self._snapshot = self._conn.snapshot()
        self.started = True
        self._conn.open_transactions += 1

    async def commit(self) -> None:
        self._conn.open_transactions -= 1
        if self._conn.fail_commit and self._conn.open_transactions == 0:
            self._conn.restore(self._snapshot)
            raise asyncpg.InterfaceError("commit failed")
        self.committed = True
        self._conn.temp_ids = None

    async def rollback(self) -> None:
        self._conn.open_transactions -= 1
        self._conn.restore(self._snapshot)
        self.rolled_back = True
        self._conn.temp_ids = None

    async def __aenter__(self) -> "FakeTransaction":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()
        return False


class FakeConnection:
    def __init__(self) -> None:
        self.channels: dict[str, int] = {}
        self.users: dict[str, dict] = {}  # public_id -> {id, name, online}
        self.visits: list[dict] = []
        self.temp_ids: set[int] | None = None
        self.fail_on: str | None = None
        self.fail_commit = False
        self.open_transactions = 0
        self.queries: list[str] = []
        self.transactions: list[FakeTransaction] = []

    # -- state helpers -------------------------------------------------

    def snapshot(self):
        return copy.deepcopy((self.channels, self.users, self.visits))

    def restore(self, snap) -> None:
        self.channels, self.users, self.visits = copy.deepcopy(snap)

    def add_user(self, public_id: str, name: str = "x", online: bool = False) -> int:
        uid = len(self.users) + 1
        self.users[public_id] = {"id": uid, "name": name, "online": online}
        return uid

    def online_ids(self) -> set[int]:
        return {u["id"] for u in self.users.values() if u["online"]}

    def _user_by_id(self, user_id: int) -> dict | None:
        for u in self.users.values():
            if u["id"] == user_id:
                return u
        return None

    def _check_fail(self, q: str) -> None:
        if self.fail_on and self.fail_on in q:
            raise asyncpg.InterfaceError(f"injected failure on: {self.fail_on}")

    # -- asyncpg surface -----------------------------------------------

    def transaction(self) -> FakeTransaction:
        tx = FakeTransaction(self)
        self.transactions.append(tx)
        return tx

    async def execute(self, query: str, *args) -> str:
        q = _norm(query)
        self.queries.append(q)
        self._check_fail(q)
        if q.startswith("INSERT INTO channels"):
            if args[0] not in self.channels:
                self.channels[args[0]] = len(self.channels) + 1
                return "INSERT 0 1"
            return "INSERT 0 0"
        if q.startswith("INSERT INTO users"):
            if args[0] not in self.users:
                self.add_user(args[0], args[1], online=False)
                return "INSERT 0 1"
            return "INSERT 0 0"
        if q.startswith("INSERT INTO visits"):
            self.visits.append({"user_id": args[0], "channel_id": args[1], "timestamp": args[2]})
            return "INSERT 0 1"
        if q == "UPDATE users SET online = TRUE WHERE id = $1":
            user = self._user_by_id(args[0])
            if user:
                user["online"] = True
            return f"UPDATE {1 if user else 0}"
        if q.startswith("CREATE TEMP TABLE _active_ids"):
            self.temp_ids = set()
            return "CREATE TABLE"
        if q == "UPDATE users SET online = FALSE WHERE online = TRUE":
            changed = [u for u in self.users.values() if u["online"]]
            for u in changed:
                u["online"] = False
            return f"UPDATE {len(changed)}"
        if q.startswith("UPDATE users SET online = TRUE WHERE online = FALSE"):
            changed = [u for u in self.users.values() if not u["online"] and u["id"] in self.temp_ids]
            for u in changed:
                u["online"] = True
            return f"UPDATE {len(changed)}"
        if q.startswith("UPDATE users SET online = FALSE WHERE online = TRUE AND NOT EXISTS"):
            changed = [u for u in self.users.values() if u["online"] and u["id"] not in self.temp_ids]
            for u in changed:
                u["online"] = False
            return f"UPDATE {len(changed)}"
        raise AssertionError(f"unexpected statement: {q}")

    async def fetchval(self, query: str, *args):
        q = _norm(query)
        self.queries.append(q)
        self._check_fail(q)
        if q == "SELECT id FROM channels WHERE name = $1":
            return self.channels.get(args[0])
        if q == "SELECT id FROM users WHERE public_id = $1":
            user = self.users.get(args[0])
            return user["id"] if user else None
        if q.startswith("SELECT timestamp FROM visits"):
            rows = [v for v in self.visits if v["user_id"] == args[0] and v["channel_id"] == args[1]]
            if not rows:
                return None
            return max(rows, key=lambda v: v["timestamp"])["timestamp"]
        raise AssertionError(f"unexpected query: {q}")

    async def copy_records_to_table(self, table: str, *, records, columns) -> str:
        assert table == "_active_ids" and columns == ["user_id"]
        assert self.temp_ids is not None, "staging table not created"
        self.temp_ids.update(r[0] for r in records)
        return f"COPY {len(records)}"


class FakePool:
    def __init__(self, conn: FakeConnection) -> None:
        self.conn = conn
        self.acquired = 0

    @asynccontextmanager
    async def acquire(self):
        self.acquired += 1
        yield self.conn


class FakeDatabase:
    def __init__(self, conn: FakeConnection) -> None:
        self.pool = FakePool(conn)


@pytest.fixture()
def conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture()
def fake_db(conn) -> FakeDatabase:
    return FakeDatabase(conn)


@pytest.fixture()
def config_factory():
    """Build a Settings instance with overrides, isolated from .env."""
    return make_settings
