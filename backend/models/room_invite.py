# backend/models/room_invite.py
from datetime import datetime
from enum import Enum
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional


class RoomInviteStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class RoomInviteCreate(BaseModel):
    """Schema for inviting a friend to a private trade room."""
    friend_id: str = Field(min_length=1)


class RoomInviteResponse(BaseModel):
    invite_id: UUID
    from_user_id: str
    to_user_id: str
    status: RoomInviteStatus
    trade_id: Optional[UUID] = None
    private_room_code: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RoomInviteListResponse(BaseModel):
    received: list[RoomInviteResponse] = []
    sent: list[RoomInviteResponse] = []
