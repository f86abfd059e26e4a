"""Shared fixtures: test environment and an in-memory stand-in for the Supabase client."""

import itertools
import os
from types import SimpleNamespace

import pytest

os.environ.update({
    "SUPABASE_URL": "https://test.supabase.co",
    "SUPABASE_SERVICE_ROLE_KEY": "service-role-test-key",
    "WHATSAPP_PHONE_NUMBER_ID": "123456",
    "WHATSAPP_ACCESS_TOKEN": "wa-test-token",
    "WHATSAPP_VERIFY_TOKEN": "verify-me",
    "WHATSAPP_APP_SECRET": "app-secret",
    "STRIPE_SECRET_KEY": "sk_test_123",
    "STRIPE_WEBHOOK_SECRET": "whsec_test",
    "GOOGLE_CLIENT_ID": "client-id.apps.googleusercontent.com",
    "GOOGLE_CLIENT_SECRET": "google-secret",
    "GOOGLE_CALENDAR_REDIRECT_URI": "https://api.test/functions/google-calendar-callback",
    "ANTHROPIC_API_KEY": "",
    "CRON_SECRET": "cron-secret",
    "SITE_URL": "https://app.test",
    "APP_TIMEZONE": "America/Sao_Paulo",
})

import financasai.db as db_module  # noqa: E402


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Enough of the PostgREST builder for the queries this service makes."""

    def __init__(self, store: "FakeSupabase", table: str):
        self.store = store
        self.table = table
        self.op = "select"
        self.payload = None
        self.on_conflict = ""
        self.filters = []
        self._limit = None
        self._order = None

    # operations
    def select(self, *_args, **_kwargs):
        return self

    def insert(self, rows):
        self.op, self.payload = "insert", rows
        return self

    def update(self, values):
        self.op, self.payload = "update", values
        return self

    def upsert(self, rows, on_conflict=""):
        self.op, self.payload, self.on_conflict = "upsert", rows, on_conflict
        return self

    def delete(self):
        self.op = "delete"
        return self

    # filters
    def eq(self, col, value):
        self.filters.append(lambda r: r.get(col) == value)
        return self

    def neq(self, col, value):
        self.filters.append(lambda r: r.get(col) != value)
        return self

    def gt(self, col, value):
        self.filters.append(lambda r: r.get(col) is not None and r.get(col) > value)
        return self

    def gte(self, col, value):
        self.filters.append(lambda r: r.get(col) is not None and r.get(col) >= value)
        return self

    def lt(self, col, value):
        self.filters.append(lambda r: r.get(col) is not None and r.get(col) < value)
        return self

    def lte(self, col, value):
        self.filters.append(lambda r: r.get(col) is not None and r.get(col) <= value)
        return self

    def in_(self, col, values):
        values = list(values)
        self.filters.append(lambda r: r.get(col) in values)
        return self

    def limit(self, n):
        self._limit = n
        return self

    def order(self, col, desc=False):
        self._order = (col, desc)
        return self

    def _matches(self, row):
        return all(f(row) for f in self.filters)

    def execute(self):
        rows = self.store.tables.setdefault(self.table, [])
        self.store.calls.append((self.table, self.op))
        if self.table in self.store.fail_tables:
            raise RuntimeError(f"{self.table} unavailable")
        if (self.table, self.op) in self.store.fail_ops:
            raise RuntimeError(f"{self.op} on {self.table} failed")

        if self.op == "select":
            found = [dict(r) for r in rows if self._matches(r)]
            if self._order:
                col, desc = self._order
                found.sort(key=lambda r: r.get(col) or "", reverse=desc)
            if self._limit is not None:
                found = found[: self._limit]
            return FakeResponse(found)

        if self.op == "insert":
            new = self.payload if isinstance(self.payload, list) else [self.payload]
            stored = [self.store.add(self.table, r) for r in new]
            return FakeResponse([dict(r) for r in stored])

        if self.op == "update":
            changed = []
            for r in rows:
                if self._matches(r):
                    r.update(self.payload)
                    changed.append(dict(r))
            return FakeResponse(changed)

        if self.op == "upsert":
            new = self.payload if isinstance(self.payload, list) else [self.payload]
            keys = [k.strip() for k in self.on_conflict.split(",") if k.strip()] or ["id"]
            out = []
            for item in new:
                existing = next(
                    (r for r in rows if all(r.get(k) == item.get(k) for k in keys)), None
                )
                if existing is not None:
                    existing.update(item)
                    out.append(dict(existing))
                else:
                    out.append(dict(self.store.add(self.table, item)))
            return FakeResponse(out)

        if self.op == "delete":
            kept = [r for r in rows if not self._matches(r)]
            removed = [r for r in rows if self._matches(r)]
            self.store.tables[self.table] = kept
            return FakeResponse(removed)

        raise AssertionError(f"unsupported op {self.op}")


class FakeRpc:
    def __init__(self, value):
        self.value = value

    def execute(self):
        return FakeResponse(self.value)


class FakeAdmin:
    def __init__(self, store):
        self.store = store
        self.invited = []
        self.deleted = []
        self.fail_delete = False

    def list_users(self):
        return [SimpleNamespace(**u) for u in self.store.users.values()]

    def invite_user_by_email(self, email, options=None):
        user_id = f"invited-{len(self.invited) + 1}"
        self.store.users[user_id] = {"id": user_id, "email": email}
        self.invited.append((email, options or {}))
        return SimpleNamespace(user=SimpleNamespace(id=user_id, email=email))

    def delete_user(self, user_id):
        if self.fail_delete:
            raise RuntimeError("auth service down")
        self.deleted.append(user_id)
        self.store.users.pop(user_id, None)


class FakeAuth:
    def __init__(self, store):
        self.store = store
        self.admin = FakeAdmin(store)

    def get_user(self, jwt):
        user_id = self.store.tokens.get(jwt)
        if not user_id:
            raise RuntimeError("invalid JWT")
        u = self.store.users[user_id]
        return SimpleNamespace(user=SimpleNamespace(id=u["id"], email=u["email"]))


class FakeSupabase:
    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.calls: list[tuple[str, str]] = []
        self.users: dict[str, dict] = {}
        self.tokens: dict[str, str] = {}
        self.rpc_values: dict[str, object] = {}
        self.rpc_calls: list[tuple[str, dict]] = []
        self.fail_tables: set[str] = set()
        self.fail_ops: set[tuple[str, str]] = set()
        self._ids = itertools.count(1)
        self.auth = FakeAuth(self)

    def add(self, table, row):
        row = dict(row)
        row.setdefault("id", f"{table}-{next(self._ids)}")
        self.tables.setdefault(table, []).append(row)
        return row

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params):
        self.rpc_calls.append((name, params))
        value = self.rpc_values.get(name)
        if callable(value):
            value = value(params)
        return FakeRpc(value)

    def rows(self, table):
        return self.tables.get(table, [])

    def add_user(self, user_id, email, token=None):
        self.users[user_id] = {"id": user_id, "email": email}
        if token:
            self.tokens[token] = user_id


@pytest.fixture
def fake_db(monkeypatch):
    store = FakeSupabase()
    monkeypatch.setattr(db_module, "_client", store)
    return store


@pytest.fixture
def user_token():
    return "user-jwt-token-0123456789abcdef"


@pytest.fixture
def auth_user(fake_db, user_token):
    fake_db.add_user("user-1", "ana@example.com", token=user_token)
    return {"id": "user-1", "email": "ana@example.com"}
