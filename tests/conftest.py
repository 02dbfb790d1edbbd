from contextlib import contextmanager

import pytest

from matlinks import auth


@pytest.fixture(autouse=True)
def _clean_login_state():
    auth.reset_login_state()
    yield
    auth.reset_login_state()


class ScriptedCursor:
    """Stand-in for a RealDictCursor: records statements and replays queued ``fetchone`` rows."""

    def __init__(self, rows=None):
        self.rows = list(rows or [])
        self.statements = []

    def execute(self, query, params=()):
        self.statements.append((" ".join(query.split()), params))

    def fetchone(self):
        return self.rows.pop(0) if self.rows else None

    def queries_containing(self, fragment):
        return [params for query, params in self.statements if fragment in query]


@pytest.fixture
def scripted_transaction():
    def _build(cursor):
        @contextmanager
        def _transaction():
            yield cursor

        return _transaction

    return _build


@pytest.fixture
def admin_user():
    return {"id": 1, "email": "admin@matlinks.local", "role": "admin", "active": True}


@pytest.fixture
def owner_user():
    return {"id": 2, "email": "owner@example.com", "role": "owner", "active": True}


class AuditRecorder:
    def __init__(self):
        self.events = []

    def __call__(self, user, action, resource_type, resource_id, details=None):
        self.events.append(
            {
                "actor": user["id"],
                "action": action,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "details": details,
            }
        )

    @property
    def actions(self):
        return [event["action"] for event in self.events]


@pytest.fixture
def audit_recorder():
    return AuditRecorder()
