# backend/models/events.py
"""
Events fanned out to users and trade rooms.

The set is closed: every event has a literal ``event`` tag and a fixed
payload schema, and ``TradeEvent`` is the discriminated union of them.
"""
from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, Field
from typing import Annotated, Any, Literal, Optional, Union

from models.trade import TradeSide


class NotificationData(BaseModel):
    """Structured data attached to a notification."""
    type: str
    trade_id: Optional[UUID] = None
    request_id: Optional[UUID] = None
    private_room_code: Optional[str] = None


class NotificationEvent(BaseModel):
    event: Literal["notification"] = "notification"
    notification_id: Optional[UUID] = None
    user_id: str
    title: str
    message: str
    data: Optional[NotificationData] = None
    created_at: Optional[datetime] = None


class TradeSideAcceptedEvent(BaseModel):
    event: Literal["tradeSideAccepted"] = "tradeSideAccepted"
    trade_id: UUID
    room_code: Optional[str] = None
    side: TradeSide


class TradeCompletedEvent(BaseModel):
    event: Literal["tradeCompleted"] = "tradeCompleted"
    trade_id: UUID
    room_code: Optional[str] = None


class TradeRejectedEvent(BaseModel):
    """Sent for both rejected and cancelled trades."""
    event: Literal["tradeRejected"] = "tradeRejected"
    trade_id: UUID
    room_code: Optional[str] = None
    status: str


TradeEvent = Annotated[
    Union[NotificationEvent, TradeSideAcceptedEvent, TradeCompletedEvent, TradeRejectedEvent],
    Field(discriminator="event"),
]


class TradeEventRecord(BaseModel):
    """Row of the event outbox."""
    target_user_id: Optional[str] = None
    room_code: Optional[str] = None
    event_name: str
    payload: dict[str, Any]
