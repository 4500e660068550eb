# backend/services/settlement.py
"""
Write-ahead journal for the inventory transfer of a trade.

The planned ops are stored as a ``staged`` settlement before any ownership
record is touched. Rolling it forward first claims every existing record the
ops write to and stamps ``claimed_at``; from then on those records are held
by this settlement alone. Applying is retried on storage errors; when it
cannot be finished the applied prefix is reverted and the settlement is
marked ``rolled_back``. A settlement left ``staged`` (process died
mid-transfer) is rolled forward again by ``roll_forward``. Holds are released
once the settlement is marked ``applied`` or ``rolled_back``.
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import httpx
from postgrest.exceptions import APIError
from supabase import Client
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from errors import SettlementConflict, SettlementFailed
from models.inventory import TransferOp
from models.trade import SettlementStatus
from services import inventory
from settings import get_settings

logger = logging.getLogger(__name__)

STORAGE_ERRORS = (APIError, httpx.HTTPError)


def _retrying() -> Retrying:
    return Retrying(
        retry=retry_if_exception_type(STORAGE_ERRORS),
        stop=stop_after_attempt(get_settings().settlement_max_attempts),
        wait=wait_exponential(multiplier=0.05, max=1),
        reraise=True,
    )


def _operations(settlement: dict) -> list[TransferOp]:
    return [TransferOp.model_validate(op) for op in settlement["operations"]]


def fetch_settlement(supabase: Client, settlement_id: str) -> Optional[dict]:
    result = supabase.table("trade_settlement").select("*").eq(
        "settlement_id", str(settlement_id)
    ).execute()
    return result.data[0] if result.data else None


def find_staged(supabase: Client, trade_id: str) -> Optional[dict]:
    result = supabase.table("trade_settlement").select("*").eq(
        "trade_id", str(trade_id)
    ).eq("status", SettlementStatus.STAGED.value).execute()
    return result.data[0] if result.data else None


def _mark(supabase: Client, settlement: dict, status: SettlementStatus) -> None:
    supabase.table("trade_settlement").update({
        "status": status.value,
        "finished_at": datetime.now(timezone.utc).isoformat(),
    }).eq("settlement_id", settlement["settlement_id"]).execute()


def release(supabase: Client, settlement: dict) -> None:
    """Drop the holds of a finished settlement; a hold left behind is taken over later."""
    try:
        inventory.release(supabase, settlement["settlement_id"])
    except Exception:
        logger.warning("Failed to release records held by settlement %s",
                       settlement["settlement_id"], exc_info=True)


def mark_applied(supabase: Client, settlement: dict) -> None:
    try:
        _mark(supabase, settlement, SettlementStatus.APPLIED)
    except Exception:
        # The ownership records and the trade are already final
        logger.warning("Failed to mark settlement %s applied",
                       settlement["settlement_id"], exc_info=True)
        return

    release(supabase, settlement)


def stage(supabase: Client, trade: dict, moves: list[tuple[dict, str]]) -> dict:
    """Plan the transfer for ``moves`` and persist it before anything is written."""
    ops = inventory.plan_transfers(supabase, moves)

    data = {
        "settlement_id": str(uuid4()),
        "trade_id": str(trade["trade_id"]),
        "status": SettlementStatus.STAGED.value,
        "operations": [op.model_dump(mode="json") for op in ops],
        "created_at": datetime.now(timezone.utc).isoformat(),
        "claimed_at": None,
        "finished_at": None,
    }

    result = supabase.table("trade_settlement").insert(data).execute()

    if not result.data:
        raise SettlementFailed("Failed to stage settlement", {"rolled_back": True})

    return result.data[0]


def _hold_is_stale(supabase: Client, holder_id: str) -> bool:
    """A hold is stale once its settlement is no longer staged."""
    holder = fetch_settlement(supabase, holder_id)
    return holder is None or holder["status"] != SettlementStatus.STAGED.value


def _claim(supabase: Client, settlement: dict, ops: list[TransferOp]) -> None:
    settlement_id = settlement["settlement_id"]

    for record_id, version in inventory.claimed_versions(ops).items():
        inventory.claim(
            supabase, record_id, version, settlement_id,
            lambda holder_id: _hold_is_stale(supabase, holder_id),
        )

    supabase.table("trade_settlement").update({
        "claimed_at": datetime.now(timezone.utc).isoformat(),
    }).eq("settlement_id", settlement_id).execute()


def _abandon(supabase: Client, settlement: dict) -> bool:
    """Give up a settlement that has not written any op yet."""
    try:
        _mark(supabase, settlement, SettlementStatus.ROLLED_BACK)
    except STORAGE_ERRORS:
        logger.exception("Could not abandon settlement %s, leaving it staged for recovery",
                         settlement["settlement_id"])
        return False

    release(supabase, settlement)
    return True


def _rollback(supabase: Client, settlement: dict, ops: list[TransferOp]) -> bool:
    """Revert every op in reverse order; True when the records are back to their planned state."""
    try:
        for attempt in _retrying():
            with attempt:
                for op in reversed(ops):
                    inventory.revert_op(supabase, op, settlement["settlement_id"])
        _mark(supabase, settlement, SettlementStatus.ROLLED_BACK)
    except (SettlementConflict, *STORAGE_ERRORS):
        logger.exception("Rollback of settlement %s failed, leaving it staged for recovery",
                         settlement["settlement_id"])
        return False

    release(supabase, settlement)
    logger.error("Settlement %s for trade %s rolled back",
                 settlement["settlement_id"], settlement["trade_id"])
    return True


def roll_forward(supabase: Client, settlement: dict) -> dict:
    """
    Claim and apply a staged settlement; on failure revert it and raise SettlementFailed.

    ``settlement`` must be the stored row as last read, since ``claimed_at``
    decides whether the claim step already ran.
    """
    settlement_id = settlement["settlement_id"]
    ops = _operations(settlement)

    if settlement.get("claimed_at") is None:
        try:
            for attempt in _retrying():
                with attempt:
                    _claim(supabase, settlement, ops)
        except (SettlementConflict, *STORAGE_ERRORS) as exc:
            logger.warning("Settlement %s could not claim its records: %s", settlement_id, exc)
            rolled_back = _abandon(supabase, settlement)
            raise SettlementFailed(
                "The cards changed before they could be transferred; no cards were moved"
                if rolled_back else
                "The card transfer could not be started and is pending recovery",
                {"settlement_id": settlement_id, "rolled_back": rolled_back},
            ) from exc

    try:
        for attempt in _retrying():
            with attempt:
                for op in ops:
                    inventory.apply_op(supabase, op, settlement_id)
    except (SettlementConflict, *STORAGE_ERRORS) as exc:
        logger.error("Applying settlement %s failed: %s", settlement_id, exc)
        rolled_back = _rollback(supabase, settlement, ops)
        raise SettlementFailed(
            "The card transfer could not be completed; no cards were moved"
            if rolled_back else
            "The card transfer could not be completed and is pending recovery",
            {"settlement_id": settlement_id, "rolled_back": rolled_back},
        ) from exc

    return settlement


def execute(supabase: Client, trade: dict, moves: list[tuple[dict, str]]) -> dict:
    """Stage and apply the transfer for a trade."""
    try:
        settlement = stage(supabase, trade, moves)
    except (SettlementConflict, *STORAGE_ERRORS) as exc:
        logger.error("Staging settlement for trade %s failed: %s", trade["trade_id"], exc)
        raise SettlementFailed(
            "The card transfer could not be prepared; no cards were moved",
            {"rolled_back": True},
        ) from exc

    logger.info("Staged settlement %s for trade %s (%d ops)",
                settlement["settlement_id"], trade["trade_id"], len(settlement["operations"]))
    return roll_forward(supabase, settlement)
