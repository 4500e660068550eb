"""
Integration test fixtures for testing with real local Supabase database.

These fixtures connect to a local Supabase instance and perform real database operations.
Run `supabase start` before running integration tests.
All tests in this directory are automatically marked as integration tests.
"""
import pytest
import subprocess
import warnings
import os
from pathlib import Path
from dotenv import load_dotenv
from fastapi.testclient import TestClient
from supabase import create_client, Client
from uuid import uuid4

# Path to the project root (where supabase/ folder is located)
PROJECT_ROOT = Path(__file__).parent.parent.parent.parent


def pytest_collection_modifyitems(items):
    """Automatically mark all tests in this directory as integration tests."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def setup_test_environment():
    """Load .env.test at session start."""
    # .env.test is in the backend root
    env_test_path = Path(__file__).parent.parent.parent / ".env.test"
    load_dotenv(env_test_path, override=True)
    yield


@pytest.fixture(scope="session")
def supabase_client(setup_test_environment) -> Client:
    """Create a real Supabase client connected to local instance."""
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_KEY")

    if not url or not key:
        pytest.skip("SUPABASE_URL and SUPABASE_KEY must be set in .env.test")

    return create_client(url, key)


@pytest.fixture(scope="session")
def reset_database(setup_test_environment):
    """
    Reset the database before the test session.

    Note: This fixture is optional. If the supabase CLI is not available it is
    skipped; run `supabase db reset` manually before the integration tests.
    """
    try:
        result = subprocess.run(
            ["supabase", "db", "reset", "--no-seed"],
            cwd=str(PROJECT_ROOT),
            capture_output=True,
            text=True,
            timeout=60
        )

        if result.returncode != 0:
            # Database might already be in good state
            warnings.warn(f"Could not reset database: {result.stderr}")
    except FileNotFoundError:
        warnings.warn("supabase CLI not found. Skipping database reset.")
    except subprocess.TimeoutExpired:
        warnings.warn("Database reset timed out. Continuing anyway.")

    yield


@pytest.fixture(scope="session")
def integration_client(supabase_client, reset_database):
    """FastAPI TestClient wired to the local Supabase instance."""
    from main import app
    from database import get_supabase

    app.dependency_overrides[get_supabase] = lambda: supabase_client
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create_user(supabase_client, user_id):
    result = supabase_client.table("user").insert({
        "user_id": user_id,
        "user_name": f"test_{user_id}",
    }).execute()

    if not result.data:
        pytest.fail("Failed to create test user")

    return result.data[0]


@pytest.fixture
def test_user(supabase_client):
    """
    Create a test user in the database.
    Automatically cleaned up after the test; deleting the user cascades to
    their records, trades, requests and invites.
    """
    user = _create_user(supabase_client, f"test_user_{uuid4().hex[:8]}")
    yield user
    supabase_client.table("user").delete().eq("user_id", user["user_id"]).execute()


@pytest.fixture
def second_test_user(supabase_client, test_user):
    """A second test user who is friends with the first."""
    user = _create_user(supabase_client, f"test_user_2_{uuid4().hex[:8]}")

    supabase_client.table("user_friend").insert([
        {"user_id": test_user["user_id"], "friend_id": user["user_id"]},
        {"user_id": user["user_id"], "friend_id": test_user["user_id"]},
    ]).execute()

    yield user
    supabase_client.table("user").delete().eq("user_id", user["user_id"]).execute()


@pytest.fixture
def test_cards(supabase_client):
    """Catalog cards created for a single test."""
    suffix = uuid4().hex[:8]
    cards = [
        {"card_id": f"test_card_{suffix}_{i}", "card_name": f"Test Card {i}"}
        for i in range(3)
    ]

    supabase_client.table("card").insert(cards).execute()
    yield [c["card_id"] for c in cards]

    for card in cards:
        supabase_client.table("inventory_card").delete().eq("card_id", card["card_id"]).execute()
        supabase_client.table("card").delete().eq("card_id", card["card_id"]).execute()


@pytest.fixture
def trading_setup(supabase_client, test_user, second_test_user, test_cards):
    """
    Two friends with one tradeable record each.

    Returns a dict with:
    - initiator / receiver: user dicts
    - initiator_card / receiver_card: inventory_card records
    - card_ids: catalog card ids created for the test
    """
    initiator_card = supabase_client.table("inventory_card").insert({
        "user_id": test_user["user_id"],
        "card_id": test_cards[0],
        "quantity": 2,
        "is_tradeable": True,
        "estimated_value": 100,
    }).execute().data[0]

    receiver_card = supabase_client.table("inventory_card").insert({
        "user_id": second_test_user["user_id"],
        "card_id": test_cards[1],
        "quantity": 1,
        "is_tradeable": True,
        "estimated_value": 90,
    }).execute().data[0]

    yield {
        "initiator": test_user,
        "receiver": second_test_user,
        "initiator_card": initiator_card,
        "receiver_card": receiver_card,
        "card_ids": test_cards,
    }
