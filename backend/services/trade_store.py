# backend/services/trade_store.py
"""Row access for the ``trade`` table, shared by every service that opens or mutates trades."""
import logging
import secrets
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from supabase import Client

from errors import NotFound, TradeError
from models.trade import TradeKind, TradeStatus

logger = logging.getLogger(__name__)

ROOM_CODE_LENGTH = 10
ROOM_CODE_ATTEMPTS = 5


def fetch_trade(supabase: Client, trade_id: str) -> dict:
    result = supabase.table("trade").select("*").eq("trade_id", str(trade_id)).execute()

    if not result.data:
        raise NotFound("Trade not found", {"trade_id": str(trade_id)})

    return result.data[0]


def compare_and_set(supabase: Client, trade: dict, changes: dict) -> Optional[dict]:
    """
    Write ``changes`` only if the trade still has the version it was read at.

    Returns the updated row, or None when another writer got there first.
    """
    values = {**changes, "version": trade["version"] + 1}

    result = supabase.table("trade").update(values).eq(
        "trade_id", str(trade["trade_id"])
    ).eq("version", trade["version"]).execute()

    return result.data[0] if result.data else None


def generate_room_code(supabase: Client) -> str:
    for _ in range(ROOM_CODE_ATTEMPTS):
        code = secrets.token_urlsafe(ROOM_CODE_LENGTH)[:ROOM_CODE_LENGTH]
        taken = supabase.table("trade").select("trade_id").eq("private_room_code", code).execute()
        if not taken.data:
            return code

    raise TradeError("Could not generate a unique private room code")


def open_trade(
    supabase: Client,
    initiator_user_id: str,
    receiver_user_id: str,
    trade_kind: TradeKind = TradeKind.PRIVATE,
    origin_request_id: Optional[str] = None,
    requested_card_id: Optional[str] = None,
) -> dict:
    """Insert a new pending trade with empty item slots."""
    data = {
        "trade_id": str(uuid4()),
        "initiator_user_id": initiator_user_id,
        "receiver_user_id": receiver_user_id,
        "initiator_items": [],
        "receiver_items": [],
        "initiator_accepted": False,
        "receiver_accepted": False,
        "status": TradeStatus.PENDING.value,
        "trade_kind": trade_kind.value,
        "private_room_code": generate_room_code(supabase) if trade_kind is TradeKind.PRIVATE else None,
        "origin_request_id": str(origin_request_id) if origin_request_id else None,
        "requested_card_id": requested_card_id,
        "version": 0,
        "settlement_started_at": None,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "completed_at": None,
    }

    result = supabase.table("trade").insert(data).execute()

    if not result.data:
        raise TradeError("Failed to create trade")

    trade = result.data[0]
    logger.info("Opened %s trade %s between %s and %s",
                trade_kind.value, trade["trade_id"], initiator_user_id, receiver_user_id)
    return trade
