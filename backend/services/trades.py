# backend/services/trades.py
"""
Trade state machine.

Each party confirms its side with the ownership record it offers. The
confirmation that sets the second accepted flag wins the right to settle:
every trade write is a compare-and-set on ``version``, so two confirmations
racing on the same trade cannot both observe the other side as unaccepted.
A pending trade with both flags set is *settling* and cannot be cancelled.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from supabase import Client

from errors import (
    AlreadyAccepted,
    Forbidden,
    InvalidState,
    NotFound,
    OwnershipViolation,
    RequestedItemMismatch,
    SelfTarget,
    SettlementFailed,
    TradeError,
    ValueDifferenceTooHigh,
)
from models.events import TradeCompletedEvent, TradeRejectedEvent, TradeSideAcceptedEvent
from models.trade import ConfirmOutcome, TradeKind, TradeSide, TradeStatus
from services import inventory, notifier, room_invites, settlement, trade_requests, trade_store, users
from settings import get_settings

logger = logging.getLogger(__name__)


# ============== Lookups ==============

def get_trade(supabase: Client, trade_id: str) -> dict:
    return trade_store.fetch_trade(supabase, trade_id)


def get_trade_by_room_code(supabase: Client, room_code: str) -> dict:
    result = supabase.table("trade").select("*").eq("private_room_code", room_code).execute()

    if not result.data:
        raise NotFound("Trade room not found", {"private_room_code": room_code})

    return result.data[0]


def list_trades(
    supabase: Client,
    status: Optional[TradeStatus] = None,
    trade_kind: Optional[TradeKind] = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[dict], int]:
    query = supabase.table("trade").select("*", count="exact")

    if status:
        query = query.eq("status", status.value)
    if trade_kind:
        query = query.eq("trade_kind", trade_kind.value)

    start = (page - 1) * page_size
    result = query.order("created_at", desc=True).range(start, start + page_size - 1).execute()

    return result.data, result.count or 0


def create_trade(
    supabase: Client,
    initiator_user_id: str,
    receiver_identifier: str,
    trade_kind: TradeKind = TradeKind.PRIVATE,
    requested_card_id: Optional[str] = None,
) -> dict:
    """Open a trade directly with another user."""
    initiator = users.require_user(supabase, initiator_user_id, "Current user")
    receiver = users.resolve_user(supabase, receiver_identifier)

    if receiver["user_id"] == initiator["user_id"]:
        raise SelfTarget("You cannot open a trade with yourself")

    return trade_store.open_trade(
        supabase,
        initiator["user_id"],
        receiver["user_id"],
        trade_kind,
        requested_card_id=requested_card_id,
    )


# ============== Helpers ==============

def side_of(trade: dict, user_id: str) -> TradeSide:
    if trade["initiator_user_id"] == user_id:
        return TradeSide.INITIATOR
    if trade["receiver_user_id"] == user_id:
        return TradeSide.RECEIVER
    raise Forbidden("You are not a party to this trade")


def offered_record_id(trade: dict, side: TradeSide) -> Optional[str]:
    items = trade.get(side.items_field) or []
    return str(items[0]["inventory_card_id"]) if items else None


def is_settling(trade: dict) -> bool:
    return (
        trade["status"] == TradeStatus.PENDING.value
        and bool(trade["initiator_accepted"])
        and bool(trade["receiver_accepted"])
    )


def value_difference_ratio(a, b) -> Optional[float]:
    """|a - b| / max(a, b), or None when either value is unknown or both are zero."""
    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (a, b)):
        return None

    high = max(a, b)
    if high <= 0:
        return None

    return abs(a - b) / high


def check_settlement_guards(supabase: Client, trade: dict) -> tuple[dict, dict]:
    """Validate a settling trade; returns the (initiator, receiver) ownership records."""
    records = {}
    for side in TradeSide:
        record_id = offered_record_id(trade, side)
        if record_id is None:
            raise InvalidState("Both parties must offer a card before the trade can complete")

        record = inventory.get_card_record(supabase, record_id)
        if record is None or record["user_id"] != trade[side.user_field]:
            raise OwnershipViolation(
                f"The {side.value}'s card does not belong to the {side.value}",
                {"side": side.value, "inventory_card_id": record_id},
            )
        records[side] = record

    initiator_record = records[TradeSide.INITIATOR]
    receiver_record = records[TradeSide.RECEIVER]

    a = initiator_record.get("estimated_value")
    b = receiver_record.get("estimated_value")
    ratio = value_difference_ratio(a, b)
    if ratio is not None and ratio > get_settings().trade_max_value_diff:
        raise ValueDifferenceTooHigh(
            "The value difference between the offered cards is too high",
            {"initiator_value": a, "receiver_value": b, "diff_ratio": ratio},
        )

    requested = trade.get("requested_card_id")
    if requested and requested not in (initiator_record["card_id"], receiver_record["card_id"]):
        raise RequestedItemMismatch(
            "Neither offered card is the requested card",
            {
                "requested_card_id": requested,
                "initiator_card_id": initiator_record["card_id"],
                "receiver_card_id": receiver_record["card_id"],
            },
        )

    return initiator_record, receiver_record


def _release_claim(supabase: Client, trade: dict) -> dict:
    """Reset both accepted flags so either party can fix its offer and confirm again."""
    released = trade_store.compare_and_set(supabase, trade, {
        "initiator_accepted": False,
        "receiver_accepted": False,
        "settlement_started_at": None,
    })
    if released is None:
        logger.warning("Could not release settlement claim on trade %s, it changed concurrently",
                       trade["trade_id"])
        return trade_store.fetch_trade(supabase, trade["trade_id"])

    return released


def _after_terminal(supabase: Client, trade: dict) -> None:
    """Signal linked entities and the room; failures here never undo the transition."""
    trade_requests.on_trade_terminal(supabase, trade)
    room_invites.on_trade_terminal(supabase, trade)

    if trade["status"] == TradeStatus.COMPLETED.value:
        event = TradeCompletedEvent(trade_id=trade["trade_id"], room_code=trade.get("private_room_code"))
    else:
        event = TradeRejectedEvent(
            trade_id=trade["trade_id"],
            room_code=trade.get("private_room_code"),
            status=trade["status"],
        )
    notifier.broadcast_trade(supabase, trade, event)


def _complete(supabase: Client, trade: dict) -> dict:
    now = datetime.now(timezone.utc).isoformat()

    for _ in range(get_settings().trade_cas_max_retries):
        completed = trade_store.compare_and_set(supabase, trade, {
            "status": TradeStatus.COMPLETED.value,
            "completed_at": now,
            "settlement_started_at": None,
        })
        if completed is not None:
            return completed

        trade = trade_store.fetch_trade(supabase, trade["trade_id"])
        if trade["status"] == TradeStatus.COMPLETED.value:
            return trade
        if trade["status"] != TradeStatus.PENDING.value:
            break

    raise InvalidState("Trade changed while completing; resume the settlement")


def _finish_settlement(supabase: Client, trade: dict, settlement_record: dict) -> dict:
    completed = _complete(supabase, trade)
    settlement.mark_applied(supabase, settlement_record)
    logger.info("Trade %s completed", completed["trade_id"])
    _after_terminal(supabase, completed)
    return completed


def _settle(supabase: Client, trade: dict) -> dict:
    """Run the guards and the transfer for a trade this caller has claimed."""
    try:
        initiator_record, receiver_record = check_settlement_guards(supabase, trade)
    except TradeError as exc:
        logger.info("Trade %s failed settlement guard %s", trade["trade_id"], exc.code)
        _release_claim(supabase, trade)
        raise

    moves = [
        (initiator_record, trade["receiver_user_id"]),
        (receiver_record, trade["initiator_user_id"]),
    ]

    try:
        settlement_record = settlement.execute(supabase, trade, moves)
    except SettlementFailed as exc:
        if exc.details.get("rolled_back"):
            _release_claim(supabase, trade)
        raise

    return _finish_settlement(supabase, trade, settlement_record)


# ============== Transitions ==============

def confirm_side(
    supabase: Client,
    trade_id: str,
    acting_user_id: str,
    inventory_card_id: str,
) -> tuple[ConfirmOutcome, dict]:
    """
    Offer ``inventory_card_id`` on the acting user's side and accept the trade.

    Returns WAITING_ON_OTHER_PARTY until both sides accepted; the confirmation
    that completes the pair runs the settlement and returns COMPLETED.
    """
    inventory_card_id = str(inventory_card_id)
    lost_race = False

    for _ in range(get_settings().trade_cas_max_retries):
        trade = trade_store.fetch_trade(supabase, trade_id)
        side = side_of(trade, acting_user_id)

        if trade["status"] != TradeStatus.PENDING.value:
            if lost_race and trade["status"] == TradeStatus.COMPLETED.value:
                return ConfirmOutcome.COMPLETED, trade
            raise InvalidState("Trade is no longer pending", {"status": trade["status"]})

        if trade[side.accepted_field]:
            raise AlreadyAccepted("You have already accepted this trade")

        record = inventory.get_card_record(supabase, inventory_card_id)
        if record is None:
            raise NotFound("Card not found in inventory", {"inventory_card_id": inventory_card_id})
        if record["user_id"] != acting_user_id:
            raise OwnershipViolation(
                "You can only offer cards you own",
                {"side": side.value, "inventory_card_id": inventory_card_id},
            )

        other_accepted = bool(trade[side.other.accepted_field])
        changes = {
            side.items_field: [{"inventory_card_id": inventory_card_id}],
            side.accepted_field: True,
        }
        if other_accepted:
            changes["settlement_started_at"] = datetime.now(timezone.utc).isoformat()

        claimed = trade_store.compare_and_set(supabase, trade, changes)
        if claimed is None:
            logger.debug("Lost version race on trade %s, re-reading", trade_id)
            lost_race = True
            continue

        if not other_accepted:
            notifier.broadcast_trade(supabase, claimed, TradeSideAcceptedEvent(
                trade_id=claimed["trade_id"],
                room_code=claimed.get("private_room_code"),
                side=side,
            ))
            return ConfirmOutcome.WAITING_ON_OTHER_PARTY, claimed

        return ConfirmOutcome.COMPLETED, _settle(supabase, claimed)

    raise InvalidState("Trade is being modified concurrently, try again")


def set_status(supabase: Client, trade_id: str, acting_user_id: str, new_status: TradeStatus) -> dict:
    """Cancel or reject a pending trade outside the confirmation flow."""
    if new_status not in (TradeStatus.CANCELLED, TradeStatus.REJECTED):
        raise InvalidState("A trade can only be set to cancelled or rejected",
                           {"status": new_status.value})

    for _ in range(get_settings().trade_cas_max_retries):
        trade = trade_store.fetch_trade(supabase, trade_id)
        side_of(trade, acting_user_id)

        if trade["status"] != TradeStatus.PENDING.value:
            raise InvalidState("Trade is no longer pending", {"status": trade["status"]})
        if is_settling(trade):
            raise InvalidState("Trade is being settled")

        updated = trade_store.compare_and_set(supabase, trade, {"status": new_status.value})
        if updated is not None:
            break
    else:
        raise InvalidState("Trade is being modified concurrently, try again")

    logger.info("Trade %s set to %s by %s", trade_id, new_status.value, acting_user_id)
    _after_terminal(supabase, updated)
    return updated


def resume_settlement(supabase: Client, trade_id: str, acting_user_id: str) -> dict:
    """
    Recover a trade whose settlement was interrupted.

    A staged transfer is rolled forward; a claim that never staged anything
    is released so both parties can confirm again.
    """
    trade = trade_store.fetch_trade(supabase, trade_id)
    side_of(trade, acting_user_id)

    staged = settlement.find_staged(supabase, trade["trade_id"])

    if trade["status"] == TradeStatus.COMPLETED.value:
        if staged:
            settlement.mark_applied(supabase, staged)
        return trade

    if not is_settling(trade):
        raise InvalidState("Trade has no settlement in progress")

    started = trade.get("settlement_started_at")
    stale_after = timedelta(seconds=get_settings().settlement_stale_after_seconds)
    if started and datetime.fromisoformat(started) > datetime.now(timezone.utc) - stale_after:
        raise InvalidState("Settlement is still running", {"settlement_started_at": started})

    if staged is None:
        logger.info("Releasing settlement claim on trade %s with nothing staged", trade_id)
        return _release_claim(supabase, trade)

    logger.info("Rolling settlement %s forward for trade %s", staged["settlement_id"], trade_id)
    try:
        settlement.roll_forward(supabase, staged)
    except SettlementFailed as exc:
        if exc.details.get("rolled_back"):
            _release_claim(supabase, trade)
        raise

    return _finish_settlement(supabase, trade, staged)
