# backend/services/room_invites.py
"""
Friend room invites.

Accepting an invite opens a private trade; the invite then follows that
trade's terminal state through ``on_trade_terminal``.
"""
import logging
from datetime import datetime, timezone
from uuid import uuid4

from postgrest.exceptions import APIError
from supabase import Client

from errors import (
    DuplicatePending, Forbidden, InvalidState, NotFound, NotFriends, SelfTarget, TradeError, is_unique_violation,
)
from models.room_invite import RoomInviteStatus
from models.trade import TradeKind, TradeStatus
from services import trade_store, users

logger = logging.getLogger(__name__)

# Invite status a linked trade's terminal status forces
CASCADE_STATUS = {
    TradeStatus.COMPLETED.value: RoomInviteStatus.COMPLETED,
    TradeStatus.CANCELLED.value: RoomInviteStatus.CANCELLED,
    TradeStatus.REJECTED.value: RoomInviteStatus.CANCELLED,
}


def fetch_invite(supabase: Client, invite_id: str) -> dict:
    result = supabase.table("trade_room_invite").select("*").eq("invite_id", str(invite_id)).execute()

    if not result.data:
        raise NotFound("Invite not found", {"invite_id": str(invite_id)})

    return result.data[0]


def _pending_exists(supabase: Client, from_user_id: str, to_user_id: str) -> bool:
    result = supabase.table("trade_room_invite").select("invite_id").eq(
        "from_user_id", from_user_id
    ).eq("to_user_id", to_user_id).eq("status", RoomInviteStatus.PENDING.value).execute()
    return bool(result.data)


def create_invite(supabase: Client, from_user_id: str, friend_id: str) -> dict:
    me = users.require_user(supabase, from_user_id, "Current user")
    friend = users.require_user(supabase, friend_id, "Friend")

    if friend["user_id"] == me["user_id"]:
        raise SelfTarget("You cannot invite yourself")

    if not users.are_friends(supabase, me["user_id"], friend["user_id"]):
        raise NotFriends("You can only invite users who are your friends")

    if _pending_exists(supabase, me["user_id"], friend["user_id"]):
        raise DuplicatePending("You already have a pending invite to this friend")

    data = {
        "invite_id": str(uuid4()),
        "from_user_id": me["user_id"],
        "to_user_id": friend["user_id"],
        "status": RoomInviteStatus.PENDING.value,
        "trade_id": None,
        "private_room_code": None,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "completed_at": None,
    }

    try:
        result = supabase.table("trade_room_invite").insert(data).execute()
    except APIError as exc:
        if is_unique_violation(exc):
            raise DuplicatePending("You already have a pending invite to this friend") from exc
        raise

    if not result.data:
        raise TradeError("Failed to create invite")

    return result.data[0]


def _transition(supabase: Client, invite: dict, changes: dict) -> dict:
    result = supabase.table("trade_room_invite").update(changes).eq(
        "invite_id", invite["invite_id"]
    ).eq("status", RoomInviteStatus.PENDING.value).execute()

    if not result.data:
        raise InvalidState("Invite is no longer pending")

    return result.data[0]


def _load_pending(supabase: Client, invite_id: str, acting_user_id: str, party: str, action: str) -> dict:
    invite = fetch_invite(supabase, invite_id)

    if invite[party] != acting_user_id:
        raise Forbidden(f"You cannot {action} this invite")
    if invite["status"] != RoomInviteStatus.PENDING.value:
        raise InvalidState("Invite is no longer pending", {"status": invite["status"]})

    return invite


def accept_invite(supabase: Client, invite_id: str, acting_user_id: str) -> dict:
    """Accept an invite and open the private trade room it stands for."""
    invite = _load_pending(supabase, invite_id, acting_user_id, "to_user_id", "accept")

    invite = _transition(supabase, invite, {"status": RoomInviteStatus.ACCEPTED.value})

    try:
        trade = trade_store.open_trade(
            supabase, invite["from_user_id"], invite["to_user_id"], TradeKind.PRIVATE
        )
    except Exception:
        logger.exception("Could not open a trade for invite %s, returning it to pending", invite_id)
        supabase.table("trade_room_invite").update({"status": RoomInviteStatus.PENDING.value}).eq(
            "invite_id", invite["invite_id"]
        ).execute()
        raise

    result = supabase.table("trade_room_invite").update({
        "trade_id": trade["trade_id"],
        "private_room_code": trade["private_room_code"],
    }).eq("invite_id", invite["invite_id"]).execute()

    return result.data[0] if result.data else {
        **invite,
        "trade_id": trade["trade_id"],
        "private_room_code": trade["private_room_code"],
    }


def reject_invite(supabase: Client, invite_id: str, acting_user_id: str) -> dict:
    invite = _load_pending(supabase, invite_id, acting_user_id, "to_user_id", "reject")
    return _transition(supabase, invite, {
        "status": RoomInviteStatus.REJECTED.value,
        "completed_at": datetime.now(timezone.utc).isoformat(),
    })


def cancel_invite(supabase: Client, invite_id: str, acting_user_id: str) -> dict:
    invite = _load_pending(supabase, invite_id, acting_user_id, "from_user_id", "cancel")
    return _transition(supabase, invite, {
        "status": RoomInviteStatus.CANCELLED.value,
        "completed_at": datetime.now(timezone.utc).isoformat(),
    })


def list_invites(supabase: Client, acting_user_id: str) -> tuple[list[dict], list[dict]]:
    """(received, sent) invites of the acting user, newest first."""
    received = supabase.table("trade_room_invite").select("*").eq(
        "to_user_id", acting_user_id
    ).order("created_at", desc=True).execute()
    sent = supabase.table("trade_room_invite").select("*").eq(
        "from_user_id", acting_user_id
    ).order("created_at", desc=True).execute()

    return received.data, sent.data


def on_trade_terminal(supabase: Client, trade: dict) -> None:
    """Force invites linked to a finished trade into the matching final status."""
    status = CASCADE_STATUS.get(trade["status"])
    if status is None:
        return

    try:
        supabase.table("trade_room_invite").update({
            "status": status.value,
            "completed_at": datetime.now(timezone.utc).isoformat(),
        }).eq("trade_id", str(trade["trade_id"])).execute()
    except Exception:
        logger.warning("Failed to move invites of trade %s to %s",
                       trade["trade_id"], status.value, exc_info=True)
