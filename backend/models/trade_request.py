# backend/models/trade_request.py
from datetime import datetime
from enum import Enum
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, model_validator
from typing import Optional


class TradeRequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# ============== Create Schemas ==============

class TradeRequestCreate(BaseModel):
    """Schema for proposing a trade to another user."""
    to_identifier: str = Field(min_length=1, description="User ID or user name of the target")
    target_card_id: Optional[str] = Field(
        default=None,
        description="Catalog card the sender wants; omitted for a private room request"
    )
    display_name: Optional[str] = Field(default=None, max_length=200)
    note: str = Field(default="", max_length=500)
    is_manual: bool = Field(default=False, description="Item-less private room request")

    @model_validator(mode="after")
    def check_target(self):
        if not self.is_manual and not self.target_card_id:
            raise ValueError("target_card_id is required unless is_manual is set")
        if self.is_manual:
            self.target_card_id = None
        return self


# ============== Response Schemas ==============

class TradeRequestResponse(BaseModel):
    request_id: UUID
    from_user_id: str
    to_user_id: str
    target_card_id: Optional[str] = None
    display_name: str = ""
    note: str = ""
    status: TradeRequestStatus
    trade_id: Optional[UUID] = None
    is_manual: bool = False
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TradeRequestAcceptResponse(BaseModel):
    """Accepted request together with the room it opened."""
    request: TradeRequestResponse
    trade_id: UUID
    private_room_code: Optional[str] = None


class TradeRequestListResponse(BaseModel):
    requests: list[TradeRequestResponse]


# ============== Admin Schemas ==============

class TradeRequestCleanupResponse(BaseModel):
    """Response from the finished-request cleanup operation."""
    requests_deleted: int = Field(description="Number of finished requests removed")
    dry_run: bool = Field(description="Whether this was a preview (no actual deletions)")
    retention_days: int = Field(description="Requests finished before this many days ago were removed")
