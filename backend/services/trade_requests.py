# backend/services/trade_requests.py
"""
Request negotiation: informal proposals that open a private trade room when accepted.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from postgrest.exceptions import APIError
from supabase import Client

from errors import DuplicatePending, Forbidden, InvalidState, NotFound, SelfTarget, TradeError, is_unique_violation
from models.events import NotificationData
from models.trade import TradeKind, TradeStatus
from models.trade_request import TradeRequestStatus
from services import notifier, trade_store, users
from settings import get_settings

logger = logging.getLogger(__name__)

PRIVATE_ROOM_DISPLAY_NAME = "Private trade room"


def fetch_request(supabase: Client, request_id: str) -> dict:
    result = supabase.table("trade_request").select("*").eq("request_id", str(request_id)).execute()

    if not result.data:
        raise NotFound("Trade request not found", {"request_id": str(request_id)})

    return result.data[0]


def _card_name(supabase: Client, card_id: str) -> Optional[str]:
    result = supabase.table("card").select("card_name").eq("card_id", card_id).execute()
    return result.data[0]["card_name"] if result.data else None


def _pending_exists(
    supabase: Client,
    user_id: str,
    other_user_id: str,
    target_card_id: Optional[str],
    is_manual: bool,
) -> bool:
    """Whether a pending request of the same kind exists between the pair, in either direction."""
    for from_id, to_id in ((user_id, other_user_id), (other_user_id, user_id)):
        query = supabase.table("trade_request").select("request_id").eq(
            "status", TradeRequestStatus.PENDING.value
        ).eq("from_user_id", from_id).eq("to_user_id", to_id).eq("is_manual", is_manual)

        if not is_manual:
            query = query.eq("target_card_id", target_card_id)

        if query.execute().data:
            return True

    return False


def create_request(
    supabase: Client,
    from_user_id: str,
    to_identifier: str,
    target_card_id: Optional[str] = None,
    note: str = "",
    is_manual: bool = False,
    display_name: Optional[str] = None,
) -> dict:
    """Propose a trade for a card (or an item-less private room) to another user."""
    sender = users.require_user(supabase, from_user_id, "Current user")
    target = users.resolve_user(supabase, to_identifier)

    if target["user_id"] == sender["user_id"]:
        raise SelfTarget("You cannot send a trade request to yourself")

    if is_manual:
        target_card_id = None
    elif not target_card_id:
        raise TradeError("target_card_id is required for card requests")

    duplicate = DuplicatePending(
        "A private room request between these users is already pending"
        if is_manual else
        "A request for this card between these users is already pending",
        {"from_user_id": sender["user_id"], "to_user_id": target["user_id"],
         "target_card_id": target_card_id},
    )

    if _pending_exists(supabase, sender["user_id"], target["user_id"], target_card_id, is_manual):
        raise duplicate

    if is_manual:
        display_name = display_name or PRIVATE_ROOM_DISPLAY_NAME
    else:
        display_name = display_name or _card_name(supabase, target_card_id) or ""

    data = {
        "request_id": str(uuid4()),
        "from_user_id": sender["user_id"],
        "to_user_id": target["user_id"],
        "target_card_id": target_card_id,
        "display_name": display_name,
        "note": note,
        "status": TradeRequestStatus.PENDING.value,
        "trade_id": None,
        "is_manual": is_manual,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "finished_at": None,
    }

    try:
        result = supabase.table("trade_request").insert(data).execute()
    except APIError as exc:
        # A concurrent request for the same pair and card won the unique index
        if is_unique_violation(exc):
            raise duplicate from exc
        raise

    if not result.data:
        raise TradeError("Failed to create trade request")

    request = result.data[0]

    sender_name = users.display_name(sender)
    notifier.create_notification(
        supabase,
        target["user_id"],
        "Private trade room invitation" if is_manual else "New trade request",
        f"{sender_name} wants to open a private trade room with you."
        if is_manual else
        f"{sender_name} wants to trade for {display_name or 'a card'}.",
        NotificationData(type="tradeRequest", request_id=request["request_id"]),
    )

    return request


def _transition(supabase: Client, request: dict, changes: dict) -> dict:
    """Move a pending request to a terminal status; fails if someone else moved it first."""
    result = supabase.table("trade_request").update(changes).eq(
        "request_id", request["request_id"]
    ).eq("status", TradeRequestStatus.PENDING.value).execute()

    if not result.data:
        raise InvalidState("Trade request is no longer pending")

    return result.data[0]


def _require_pending(request: dict) -> None:
    if request["status"] != TradeRequestStatus.PENDING.value:
        raise InvalidState("Trade request is no longer pending", {"status": request["status"]})


def accept_request(supabase: Client, request_id: str, acting_user_id: str) -> tuple[dict, dict]:
    """Accept a request addressed to the acting user; returns (request, trade)."""
    request = fetch_request(supabase, request_id)

    if request["to_user_id"] != acting_user_id:
        raise Forbidden("You cannot accept this trade request")
    _require_pending(request)

    request = _transition(supabase, request, {"status": TradeRequestStatus.ACCEPTED.value})

    try:
        trade = trade_store.open_trade(
            supabase,
            request["from_user_id"],
            request["to_user_id"],
            TradeKind.PRIVATE,
            origin_request_id=request["request_id"],
            requested_card_id=request.get("target_card_id"),
        )
    except Exception:
        logger.exception("Could not open a trade for request %s, returning it to pending", request_id)
        supabase.table("trade_request").update({"status": TradeRequestStatus.PENDING.value}).eq(
            "request_id", request["request_id"]
        ).execute()
        raise

    result = supabase.table("trade_request").update({"trade_id": trade["trade_id"]}).eq(
        "request_id", request["request_id"]
    ).execute()
    if result.data:
        request = result.data[0]

    accepter = users.get_user(supabase, acting_user_id)
    notifier.create_notification(
        supabase,
        request["from_user_id"],
        "Trade request accepted",
        f"{users.display_name(accepter)} accepted your request for "
        f"{request.get('display_name') or 'a card'}.",
        NotificationData(
            type="tradeAccepted",
            trade_id=trade["trade_id"],
            request_id=request["request_id"],
            private_room_code=trade.get("private_room_code"),
        ),
    )

    return request, trade


def reject_request(supabase: Client, request_id: str, acting_user_id: str) -> dict:
    request = fetch_request(supabase, request_id)

    if request["to_user_id"] != acting_user_id:
        raise Forbidden("You cannot reject this trade request")
    _require_pending(request)

    request = _transition(supabase, request, {
        "status": TradeRequestStatus.REJECTED.value,
        "finished_at": datetime.now(timezone.utc).isoformat(),
    })

    rejecter = users.get_user(supabase, acting_user_id)
    notifier.create_notification(
        supabase,
        request["from_user_id"],
        "Trade request rejected",
        f"{users.display_name(rejecter)} rejected your trade request.",
        NotificationData(type="tradeRejected", request_id=request["request_id"]),
    )

    return request


def cancel_request(supabase: Client, request_id: str, acting_user_id: str) -> dict:
    request = fetch_request(supabase, request_id)

    if request["from_user_id"] != acting_user_id:
        raise Forbidden("You cannot cancel this trade request")
    _require_pending(request)

    return _transition(supabase, request, {
        "status": TradeRequestStatus.CANCELLED.value,
        "finished_at": datetime.now(timezone.utc).isoformat(),
    })


def list_requests(supabase: Client, user_id: str, acting_user_id: str, direction: str) -> list[dict]:
    """Requests received by (``direction='received'``) or sent by a user, newest first."""
    if user_id != acting_user_id:
        raise Forbidden("You cannot view another user's trade requests")

    column = "to_user_id" if direction == "received" else "from_user_id"
    result = supabase.table("trade_request").select("*").eq(column, user_id).order(
        "created_at", desc=True
    ).execute()

    return result.data


def cleanup_finished_requests(
    supabase: Client,
    acting_user_id: str,
    retention_days: int,
    dry_run: bool = False,
) -> int:
    """Delete requests that reached a terminal status more than ``retention_days`` ago. Admins only."""
    if acting_user_id not in get_settings().admin_user_ids:
        raise Forbidden("Only administrators can purge trade requests")

    cutoff = (datetime.now(timezone.utc) - timedelta(days=retention_days)).isoformat()

    result = supabase.table("trade_request").select("request_id").lt("finished_at", cutoff).execute()
    request_ids = [r["request_id"] for r in result.data]

    if not dry_run:
        for request_id in request_ids:
            supabase.table("trade_request").delete().eq("request_id", request_id).execute()

    logger.info("Finished request cleanup by %s: %d request(s)%s",
                acting_user_id, len(request_ids), " (dry run)" if dry_run else "")
    return len(request_ids)


def on_trade_terminal(supabase: Client, trade: dict) -> None:
    """Drop the originating request once its trade completed or was rejected."""
    request_id = trade.get("origin_request_id")
    if not request_id or trade["status"] not in (TradeStatus.COMPLETED.value, TradeStatus.REJECTED.value):
        return

    try:
        supabase.table("trade_request").delete().eq("request_id", str(request_id)).execute()
    except Exception:
        logger.warning("Failed to remove request %s for trade %s",
                       request_id, trade["trade_id"], exc_info=True)
