"""
Conftest for unit tests with an in-memory Supabase client.

All tests in this directory are automatically marked as unit tests.
"""
import copy
import threading
import pytest
from fastapi.testclient import TestClient
from datetime import datetime, timezone
from uuid import uuid4
import sys
from pathlib import Path

# Add parent directory to path to import main
backend_path = Path(__file__).parent.parent.parent
sys.path.insert(0, str(backend_path))

from postgrest.exceptions import APIError

from main import app
from database import get_supabase
from errors import UNIQUE_VIOLATION


def pytest_collection_modifyitems(items):
    """Automatically mark all tests in this directory as unit tests."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)


# ============== In-memory Supabase ==============

class FakeResponse:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


class FakeQuery:
    """Records a PostgREST-style call chain and runs it against FakeSupabase on execute()."""

    def __init__(self, db, table_name):
        self.db = db
        self.table_name = table_name
        self.action = "select"
        self.payload = None
        self.count = None
        self.filters = []
        self.order_by = None
        self.row_range = None
        self.row_limit = None

    def select(self, *columns, count=None):
        self.action = "select"
        self.count = count
        return self

    def insert(self, rows):
        self.action = "insert"
        self.payload = rows
        return self

    def update(self, values):
        self.action = "update"
        self.payload = values
        return self

    def delete(self):
        self.action = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def is_(self, column, value):
        if value in (None, "null"):
            self.filters.append(lambda row: row.get(column) is None)
        else:
            self.filters.append(lambda row: row.get(column) is value)
        return self

    def lt(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row[column] < value)
        return self

    def in_(self, column, values):
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def range(self, start, end):
        self.row_range = (start, end)
        return self

    def limit(self, size):
        self.row_limit = size
        return self

    def matches(self, row):
        return all(f(row) for f in self.filters)

    def execute(self):
        return self.db.run(self)


class FakeSupabase:
    """
    Thread-safe in-memory stand-in for the Supabase client.

    Every execute() runs under one lock, so a filtered update behaves like a
    single conditional UPDATE statement. Unique indexes registered with
    ``unique_on`` reject conflicting inserts the way PostgREST does.
    """

    def __init__(self):
        self.tables = {}
        self.lock = threading.RLock()
        self.failures = []
        self.calls = []
        self.unique_keys = {}

    def unique_on(self, table, key):
        """Reject inserts whose ``key(row)`` matches an existing row; a None key is exempt."""
        self.unique_keys.setdefault(table, []).append(key)

    def _check_unique(self, table, new_rows):
        rows = self.rows(table)
        for key in self.unique_keys.get(table, []):
            taken = {key(row) for row in rows} - {None}
            for row in new_rows:
                value = key(row)
                if value is not None and value in taken:
                    raise APIError({
                        "code": UNIQUE_VIOLATION,
                        "message": f"duplicate key value violates unique constraint on {table}",
                    })
                taken.add(value)

    def table(self, name):
        return FakeQuery(self, name)

    def rows(self, name):
        return self.tables.setdefault(name, [])

    def seed(self, name, row):
        self.rows(name).append(copy.deepcopy(row))
        return row

    def fail_on(self, table, action, exc, times=1, when=None):
        """Raise ``exc`` on the next ``times`` matching calls."""
        self.failures.append({"table": table, "action": action, "exc": exc, "times": times, "when": when})

    def _maybe_fail(self, query):
        for failure in self.failures:
            if failure["times"] <= 0:
                continue
            if failure["table"] != query.table_name or failure["action"] != query.action:
                continue
            if failure["when"] is not None and not failure["when"](query):
                continue
            failure["times"] -= 1
            raise failure["exc"]

    def run(self, query):
        with self.lock:
            self.calls.append((query.table_name, query.action))
            self._maybe_fail(query)
            rows = self.rows(query.table_name)

            if query.action == "insert":
                new_rows = query.payload if isinstance(query.payload, list) else [query.payload]
                self._check_unique(query.table_name, new_rows)
                rows.extend(copy.deepcopy(new_rows))
                return FakeResponse(copy.deepcopy(new_rows))

            matched = [row for row in rows if query.matches(row)]

            if query.action == "update":
                for row in matched:
                    row.update(copy.deepcopy(query.payload))
                return FakeResponse(copy.deepcopy(matched))

            if query.action == "delete":
                self.tables[query.table_name] = [row for row in rows if not query.matches(row)]
                return FakeResponse(copy.deepcopy(matched))

            total = len(matched)
            if query.order_by:
                column, desc = query.order_by
                matched = sorted(matched, key=lambda row: row.get(column) or "", reverse=desc)
            if query.row_range:
                start, end = query.row_range
                matched = matched[start:end + 1]
            if query.row_limit is not None:
                matched = matched[:query.row_limit]

            return FakeResponse(copy.deepcopy(matched), total if query.count else None)

    # Convenience lookups for assertions
    def get(self, name, **filters):
        return [
            copy.deepcopy(row) for row in self.rows(name)
            if all(row.get(k) == v for k, v in filters.items())
        ]

    def one(self, name, **filters):
        found = self.get(name, **filters)
        return found[0] if found else None


@pytest.fixture
def fake_supabase():
    """In-memory Supabase with the unique indexes of the schema migration."""
    fake = FakeSupabase()
    fake.unique_on("inventory_card", lambda r: (r["user_id"], r["card_id"], r.get("condition"), r.get("collection_type")))
    fake.unique_on("trade_request", lambda r: (
        min(r["from_user_id"], r["to_user_id"]),
        max(r["from_user_id"], r["to_user_id"]),
        r.get("is_manual", False),
        r.get("target_card_id") or "",
    ) if r.get("status") == "pending" else None)
    fake.unique_on("trade_room_invite", lambda r: (
        (r["from_user_id"], r["to_user_id"]) if r.get("status") == "pending" else None
    ))
    fake.unique_on("trade_settlement", lambda r: r["trade_id"] if r.get("status") == "staged" else None)
    return fake


@pytest.fixture
def client(fake_supabase):
    """Create a test client for the FastAPI app backed by the in-memory Supabase."""
    app.dependency_overrides[get_supabase] = lambda: fake_supabase
    yield TestClient(app)
    app.dependency_overrides.clear()


# ============== Users ==============

@pytest.fixture
def sample_initiator_user_id():
    return "initiator_user_123"


@pytest.fixture
def sample_receiver_user_id():
    return "receiver_user_456"


@pytest.fixture
def sample_outsider_user_id():
    return "outsider_user_789"


@pytest.fixture
def seeded_users(fake_supabase, sample_initiator_user_id, sample_receiver_user_id, sample_outsider_user_id):
    """Seed three users; the initiator and receiver are friends."""
    for user_id, user_name in (
        (sample_initiator_user_id, "ash"),
        (sample_receiver_user_id, "misty"),
        (sample_outsider_user_id, "brock"),
    ):
        fake_supabase.seed("user", {"user_id": user_id, "user_name": user_name})

    fake_supabase.seed("user_friend", {"user_id": sample_initiator_user_id, "friend_id": sample_receiver_user_id})
    fake_supabase.seed("user_friend", {"user_id": sample_receiver_user_id, "friend_id": sample_initiator_user_id})

    return {
        "initiator": sample_initiator_user_id,
        "receiver": sample_receiver_user_id,
        "outsider": sample_outsider_user_id,
    }


@pytest.fixture
def seeded_catalog(fake_supabase):
    """Seed catalog cards."""
    cards = {
        "card_x": "Charizard",
        "card_y": "Blastoise",
        "card_p": "Pikachu",
        "card_q": "Bulbasaur",
    }
    for card_id, card_name in cards.items():
        fake_supabase.seed("card", {"card_id": card_id, "card_name": card_name})
    return cards


# ============== Ownership records ==============

@pytest.fixture
def make_inventory_card(fake_supabase):
    """Factory seeding an ownership record and returning it."""

    def _make(user_id, card_id, quantity=1, estimated_value=None, is_tradeable=True,
              condition="Near Mint", collection_type="collection"):
        now = datetime.now(timezone.utc).isoformat()
        return fake_supabase.seed("inventory_card", {
            "inventory_card_id": str(uuid4()),
            "user_id": user_id,
            "card_id": card_id,
            "condition": condition,
            "collection_type": collection_type,
            "quantity": quantity,
            "is_tradeable": is_tradeable,
            "estimated_value": estimated_value,
            "version": 0,
            "locked_by": None,
            "created_at": now,
            "last_updated": now,
        })

    return _make


# ============== Trades ==============

@pytest.fixture
def make_trade(fake_supabase, sample_initiator_user_id, sample_receiver_user_id):
    """Factory seeding a pending trade and returning it."""

    def _make(trade_kind="private", requested_card_id=None, origin_request_id=None, **overrides):
        trade = {
            "trade_id": str(uuid4()),
            "initiator_user_id": sample_initiator_user_id,
            "receiver_user_id": sample_receiver_user_id,
            "initiator_items": [],
            "receiver_items": [],
            "initiator_accepted": False,
            "receiver_accepted": False,
            "status": "pending",
            "trade_kind": trade_kind,
            "private_room_code": f"room{uuid4().hex[:6]}" if trade_kind == "private" else None,
            "origin_request_id": origin_request_id,
            "requested_card_id": requested_card_id,
            "version": 0,
            "settlement_started_at": None,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "completed_at": None,
        }
        trade.update(overrides)
        return fake_supabase.seed("trade", trade)

    return _make


@pytest.fixture
def sample_trade(seeded_users, make_trade):
    return make_trade()


@pytest.fixture
def offered_cards(seeded_users, make_inventory_card, sample_initiator_user_id, sample_receiver_user_id):
    """One card on each side with values inside the fairness window."""
    return {
        "initiator": make_inventory_card(sample_initiator_user_id, "card_x", quantity=2, estimated_value=100),
        "receiver": make_inventory_card(sample_receiver_user_id, "card_y", quantity=1, estimated_value=90),
    }
