# backend/services/inventory.py
"""
Ownership records and the single-unit transfer between users.

A transfer is planned as a list of ``TransferOp`` writes against snapshots of
the records involved. Before any op runs, the settlement claims every existing
record it touches by setting ``locked_by`` on it, conditional on the
``version`` it was planned against. Ops and reverts only write records held
by their own settlement, so replaying them after a partial failure is safe
and a second settlement planned against the same records fails its claim
instead of duplicating or dropping a copy.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from postgrest.exceptions import APIError
from supabase import Client

from errors import SettlementConflict, is_unique_violation
from models.inventory import CollectionType, CardCondition, TransferOp, TransferOpKind

logger = logging.getLogger(__name__)


def get_card_record(supabase: Client, inventory_card_id: str) -> Optional[dict]:
    result = supabase.table("inventory_card").select("*").eq(
        "inventory_card_id", str(inventory_card_id)
    ).execute()
    return result.data[0] if result.data else None


def list_user_cards(supabase: Client, user_id: str, is_tradeable: Optional[bool] = None) -> list[dict]:
    query = supabase.table("inventory_card").select("*").eq("user_id", user_id)

    if is_tradeable is not None:
        query = query.eq("is_tradeable", is_tradeable)

    return query.execute().data


def _matching_records(supabase: Client, user_id: str, source: dict) -> list[dict]:
    """Records of ``user_id`` that a copy of ``source`` would stack onto."""
    result = supabase.table("inventory_card").select("*").eq(
        "user_id", user_id
    ).eq("card_id", source["card_id"]).eq(
        "condition", source.get("condition") or CardCondition.NEAR_MINT.value
    ).eq(
        "collection_type", source.get("collection_type") or CollectionType.COLLECTION.value
    ).execute()
    return result.data


def plan_transfers(supabase: Client, moves: list[tuple[dict, str]]) -> list[TransferOp]:
    """
    Plan moving one unit of each source record to its target user.

    Moves are planned in order against a working copy of every record they
    touch, so two moves hitting the same record (both parties offering the
    same card) produce consecutive ops with consistent snapshots.
    """
    now = datetime.now(timezone.utc).isoformat()
    working: dict[str, Optional[dict]] = {}
    ops: list[TransferOp] = []

    def current(record: dict) -> Optional[dict]:
        return working.get(record["inventory_card_id"], record)

    for source, target_user_id in moves:
        source = current(source)
        if source is None or source["quantity"] < 1:
            raise SettlementConflict("Source record has no copies left to transfer")

        # Credit the target first
        candidates = [current(r) for r in _matching_records(supabase, target_user_id, source)]
        candidates += [
            r for r in working.values()
            if r is not None
            and r["user_id"] == target_user_id
            and r["card_id"] == source["card_id"]
            and r.get("condition") == source.get("condition")
            and r.get("collection_type") == source.get("collection_type")
            and r not in candidates
        ]
        existing = next((r for r in candidates if r is not None), None)

        if existing is not None:
            after = {
                **existing,
                "quantity": existing["quantity"] + 1,
                "is_tradeable": False,
                "version": existing["version"] + 1,
                "last_updated": now,
            }
            ops.append(TransferOp(
                kind=TransferOpKind.INCREMENT,
                inventory_card_id=existing["inventory_card_id"],
                before=existing,
                after=after,
            ))
        else:
            after = {
                "inventory_card_id": str(uuid4()),
                "user_id": target_user_id,
                "card_id": source["card_id"],
                "condition": source.get("condition") or CardCondition.NEAR_MINT.value,
                "collection_type": source.get("collection_type") or CollectionType.COLLECTION.value,
                "quantity": 1,
                "is_tradeable": False,
                "estimated_value": source.get("estimated_value"),
                "version": 0,
                "created_at": now,
                "last_updated": now,
            }
            ops.append(TransferOp(
                kind=TransferOpKind.CREATE,
                inventory_card_id=after["inventory_card_id"],
                after=after,
            ))
        working[after["inventory_card_id"]] = after

        # Then debit the source
        if source["quantity"] > 1:
            remaining = {
                **source,
                "quantity": source["quantity"] - 1,
                "is_tradeable": False,
                "version": source["version"] + 1,
                "last_updated": now,
            }
            ops.append(TransferOp(
                kind=TransferOpKind.DECREMENT,
                inventory_card_id=source["inventory_card_id"],
                before=source,
                after=remaining,
            ))
        else:
            remaining = None
            ops.append(TransferOp(
                kind=TransferOpKind.DELETE,
                inventory_card_id=source["inventory_card_id"],
                before=source,
            ))
        working[source["inventory_card_id"]] = remaining

    return ops


def claimed_versions(ops: list[TransferOp]) -> dict[str, int]:
    """Existing records the ops write to, with the version each was planned against."""
    created = {op.inventory_card_id for op in ops if op.kind is TransferOpKind.CREATE}
    versions: dict[str, int] = {}
    for op in ops:
        if op.inventory_card_id not in created:
            versions.setdefault(op.inventory_card_id, op.before["version"])
    return versions


def claim(
    supabase: Client,
    record_id: str,
    expected_version: int,
    settlement_id: str,
    is_stale: Callable[[str], bool],
) -> None:
    """
    Hold ``record_id`` for ``settlement_id`` until it is released.

    The record must still be at ``expected_version``. A hold left behind by a
    settlement that already finished (``is_stale``) is taken over; any other
    hold is a conflict.
    """
    stored = get_card_record(supabase, record_id)
    if stored is None:
        raise SettlementConflict(f"Ownership record {record_id} disappeared")

    holder = stored.get("locked_by")
    if holder == settlement_id:
        return
    if holder is not None and not is_stale(holder):
        raise SettlementConflict(f"Ownership record {record_id} is held by settlement {holder}")
    if stored["version"] != expected_version:
        raise SettlementConflict(f"Ownership record {record_id} changed since it was planned")

    query = supabase.table("inventory_card").update({"locked_by": settlement_id}).eq(
        "inventory_card_id", record_id
    ).eq("version", expected_version)
    query = query.eq("locked_by", holder) if holder is not None else query.is_("locked_by", "null")

    if not query.execute().data:
        raise SettlementConflict(f"Ownership record {record_id} changed while claiming")


def release(supabase: Client, settlement_id: str) -> None:
    supabase.table("inventory_card").update({"locked_by": None}).eq(
        "locked_by", settlement_id
    ).execute()


def _write_values(record: dict) -> dict:
    return {
        "quantity": record["quantity"],
        "is_tradeable": record["is_tradeable"],
        "version": record["version"],
        "last_updated": record.get("last_updated"),
    }


def _held(supabase: Client, record_id: str, settlement_id: str) -> Optional[dict]:
    """The stored record, which must be held by ``settlement_id`` when present."""
    stored = get_card_record(supabase, record_id)
    if stored is not None and stored.get("locked_by") != settlement_id:
        raise SettlementConflict(f"Ownership record {record_id} is not held by settlement {settlement_id}")
    return stored


def _insert(supabase: Client, record: dict, settlement_id: str) -> None:
    try:
        supabase.table("inventory_card").insert({**record, "locked_by": settlement_id}).execute()
    except APIError as exc:
        if is_unique_violation(exc):
            raise SettlementConflict(
                f"A record for {record['user_id']} / {record['card_id']} appeared since it was planned"
            ) from exc
        raise


def _delete(supabase: Client, record_id: str, settlement_id: str) -> None:
    result = supabase.table("inventory_card").delete().eq(
        "inventory_card_id", record_id
    ).eq("locked_by", settlement_id).execute()
    if not result.data:
        raise SettlementConflict(f"Ownership record {record_id} changed while deleting")


def _update(supabase: Client, record_id: str, values: dict, from_version: int, settlement_id: str) -> None:
    result = supabase.table("inventory_card").update(_write_values(values)).eq(
        "inventory_card_id", record_id
    ).eq("locked_by", settlement_id).eq("version", from_version).execute()
    if not result.data:
        raise SettlementConflict(f"Ownership record {record_id} changed while updating")


def apply_op(supabase: Client, op: TransferOp, settlement_id: str) -> None:
    """
    Apply one op of a settlement that holds every record it touches.

    Only the holder writes a held record, so a record already at or past the
    op's target version, or a deleted one, is this settlement's own earlier
    write and the op is skipped.
    """
    record_id = op.inventory_card_id
    stored = _held(supabase, record_id, settlement_id)

    if op.kind is TransferOpKind.CREATE:
        if stored is None:
            _insert(supabase, op.after, settlement_id)
        return

    if op.kind is TransferOpKind.DELETE:
        if stored is None:
            return
        if stored["version"] != op.before["version"]:
            raise SettlementConflict(f"Ownership record {record_id} changed since it was planned")
        _delete(supabase, record_id, settlement_id)
        return

    if stored is None:
        raise SettlementConflict(f"Ownership record {record_id} disappeared")
    if stored["version"] >= op.after["version"]:
        return
    if stored["version"] != op.before["version"]:
        raise SettlementConflict(f"Ownership record {record_id} changed since it was planned")
    _update(supabase, record_id, op.after, op.before["version"], settlement_id)


def revert_op(supabase: Client, op: TransferOp, settlement_id: str) -> None:
    """Undo ``op`` if it was applied; records must still be held by ``settlement_id``."""
    record_id = op.inventory_card_id
    stored = _held(supabase, record_id, settlement_id)

    if op.kind is TransferOpKind.CREATE:
        if stored is not None:
            _delete(supabase, record_id, settlement_id)
        return

    if op.kind is TransferOpKind.DELETE:
        # A held record only goes missing through this op
        if stored is None:
            _insert(supabase, op.before, settlement_id)
        return

    if stored is None:
        raise SettlementConflict(f"Ownership record {record_id} disappeared")
    if stored["version"] <= op.before["version"]:
        return
    if stored["version"] != op.after["version"]:
        raise SettlementConflict(f"Ownership record {record_id} changed after transfer")
    _update(supabase, record_id, op.before, op.after["version"], settlement_id)
