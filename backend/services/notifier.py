# backend/services/notifier.py
"""
Best-effort fan-out of notifications and trade events.

Events are appended to the ``trade_event`` outbox, which clients follow via
Supabase Realtime. Delivery problems are logged and never fail the operation
that triggered them.
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from supabase import Client

from models.events import (
    NotificationData,
    NotificationEvent,
    TradeEvent,
    TradeEventRecord,
)

logger = logging.getLogger(__name__)


def _append(supabase: Client, record: TradeEventRecord) -> bool:
    data = record.model_dump(mode="json")
    data["event_id"] = str(uuid4())
    data["created_at"] = datetime.now(timezone.utc).isoformat()

    try:
        supabase.table("trade_event").insert(data).execute()
    except Exception:
        logger.warning(
            "Failed to publish %s event (user=%s room=%s)",
            record.event_name, record.target_user_id, record.room_code,
            exc_info=True,
        )
        return False

    return True


def emit(supabase: Client, user_id: str, event: TradeEvent) -> bool:
    """Send an event to a single user's channel."""
    return _append(supabase, TradeEventRecord(
        target_user_id=user_id,
        event_name=event.event,
        payload=event.model_dump(mode="json"),
    ))


def emit_to_room(supabase: Client, room_code: str, event: TradeEvent) -> bool:
    """Broadcast an event to everyone in a private trade room."""
    return _append(supabase, TradeEventRecord(
        room_code=room_code,
        event_name=event.event,
        payload=event.model_dump(mode="json"),
    ))


def broadcast_trade(supabase: Client, trade: dict, event: TradeEvent) -> None:
    """Send a trade event to its room, or to both parties when it has none."""
    if trade.get("private_room_code"):
        emit_to_room(supabase, trade["private_room_code"], event)
        return

    for user_id in (trade["initiator_user_id"], trade["receiver_user_id"]):
        emit(supabase, user_id, event)


def create_notification(
    supabase: Client,
    user_id: str,
    title: str,
    message: str,
    data: Optional[NotificationData] = None,
) -> Optional[dict]:
    """Persist a notification and push it to the user; returns the stored record."""
    record = {
        "notification_id": str(uuid4()),
        "user_id": user_id,
        "title": title,
        "message": message,
        "data": data.model_dump(mode="json") if data else None,
        "is_read": False,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }

    try:
        result = supabase.table("notification").insert(record).execute()
    except Exception:
        logger.warning("Failed to store notification for user %s", user_id, exc_info=True)
        return None

    stored = result.data[0] if result.data else record
    emit(supabase, user_id, NotificationEvent(**stored))
    return stored
