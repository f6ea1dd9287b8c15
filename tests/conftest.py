"""Shared fixtures: an in-memory stand-in for the Supabase client and a TestClient wired to it."""

from __future__ import annotations

import copy
import itertools
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from postgrest.exceptions import APIError

from core.billing.stripe_mirror import PaymentMirror


FUTURE = "2999-01-01T00:00:00+00:00"
PAST = "2000-01-01T00:00:00+00:00"

OWNER = {"token": "owner-token", "id": "user-owner", "email": "owner@example.com"}
MEMBER = {"token": "member-token", "id": "user-member", "email": "member@example.com"}
STRANGER = {"token": "stranger-token", "id": "user-stranger", "email": "stranger@example.com"}


def auth_header(user: dict) -> dict:
    return {"Authorization": f"Bearer {user['token']}"}


# ── Fake query builder ────────────────────────────────────────


class FakeResult:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Subset of the postgrest request builder used by the app."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.action = "select"
        self.payload = None
        self.filters = []
        self._order = None
        self._limit = None

    def select(self, columns: str = "*"):
        self.action = "select"
        return self

    def insert(self, payload):
        self.action = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.action = "update"
        self.payload = payload
        return self

    def delete(self):
        self.action = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and str(row[column]) >= str(value))
        return self

    def lte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and str(row[column]) <= str(value))
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def execute(self):
        self.db.calls.append((self.table_name, self.action))
        message = self.db.failures.get((self.table_name, self.action))
        if message:
            raise APIError({"message": message, "code": "XX000", "hint": None, "details": None})

        rows = self.db.tables.setdefault(self.table_name, [])

        if self.action == "insert":
            payloads = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = [self.db.new_row(self.table_name, payload) for payload in payloads]
            rows.extend(inserted)
            return FakeResult(copy.deepcopy(inserted))

        matched = [row for row in rows if all(check(row) for check in self.filters)]

        if self.action == "update":
            for row in matched:
                row.update(copy.deepcopy(self.payload))
            return FakeResult(copy.deepcopy(matched))

        if self.action == "delete":
            self.db.tables[self.table_name] = [row for row in rows if row not in matched]
            return FakeResult(copy.deepcopy(matched))

        if self._order:
            column, desc = self._order
            matched = sorted(matched, key=lambda row: str(row.get(column) or ""), reverse=desc)
        if self._limit is not None:
            matched = matched[: self._limit]
        return FakeResult(copy.deepcopy(matched))


class FakeAuth:
    def __init__(self):
        self.users = {}

    def add(self, user: dict):
        self.users[user["token"]] = SimpleNamespace(id=user["id"], email=user["email"])

    def get_user(self, token):
        return SimpleNamespace(user=self.users.get(token))


class FakeSupabase:
    """In-memory tables keyed by name. `fail(table, action)` makes the next matching call raise APIError."""

    def __init__(self):
        self.tables = {}
        self.failures = {}
        self.calls = []
        self.auth = FakeAuth()
        self._ids = itertools.count(1)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def new_row(self, table: str, payload: dict) -> dict:
        row = copy.deepcopy(payload)
        row.setdefault("id", f"{table}-{next(self._ids)}")
        row.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        return row

    def seed(self, table: str, **row) -> dict:
        row = self.new_row(table, row)
        self.tables.setdefault(table, []).append(row)
        return row

    def rows(self, table: str) -> list:
        return self.tables.get(table, [])

    def fail(self, table: str, action: str, message: str = "simulated failure"):
        self.failures[(table, action)] = message


# ── Fixtures ──────────────────────────────────────────────────


@pytest.fixture
def db():
    fake = FakeSupabase()
    for user in (OWNER, MEMBER, STRANGER):
        fake.auth.add(user)
    return fake


@pytest.fixture
def mirror():
    return MagicMock(spec=PaymentMirror)


@pytest.fixture
def client(db, monkeypatch):
    """TestClient whose routes talk to the fake datastore and have no Stripe configured."""
    import main

    for module in ("core.billing.router", "core.portal.router", "core.hub.router"):
        monkeypatch.setattr(f"{module}.get_supabase_admin", lambda: db)
    monkeypatch.setattr("core.auth.get_supabase", lambda: db)
    monkeypatch.setattr("core.billing.router.get_payment_mirror", lambda: None)
    monkeypatch.setattr("core.portal.router.get_payment_mirror", lambda: None)
    return TestClient(main.app)


@pytest.fixture
def client_with_mirror(client, mirror, monkeypatch):
    monkeypatch.setattr("core.billing.router.get_payment_mirror", lambda: mirror)
    monkeypatch.setattr("core.portal.router.get_payment_mirror", lambda: mirror)
    return client


@pytest.fixture
def acme(db):
    """A client owned by OWNER with one project, one billing period and an explicit viewer member."""
    client_row = db.seed("clients", id="client-acme", name="Acme", company_name="Acme Corp",
                         created_by=OWNER["id"], client_portal_enabled=True)
    project = db.seed("projects", id="project-acme", name="Acme Assistant",
                      client_id=client_row["id"], created_by=OWNER["id"])
    period = db.seed("billing_periods", id="period-jan", project_id=project["id"],
                     client_id=client_row["id"], created_by=OWNER["id"])
    db.seed("client_users", client_id=client_row["id"], user_id=MEMBER["id"], role="viewer")
    return SimpleNamespace(client=client_row, project=project, period=period)
