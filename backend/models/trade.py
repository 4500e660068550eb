# backend/models/trade.py
from datetime import datetime
from enum import Enum
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional


# ============== Enums ==============

class TradeStatus(str, Enum):
    """Trade lifecycle states."""
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class TradeKind(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class TradeSide(str, Enum):
    INITIATOR = "initiator"
    RECEIVER = "receiver"

    @property
    def other(self) -> "TradeSide":
        return TradeSide.RECEIVER if self is TradeSide.INITIATOR else TradeSide.INITIATOR

    @property
    def user_field(self) -> str:
        return f"{self.value}_user_id"

    @property
    def items_field(self) -> str:
        return f"{self.value}_items"

    @property
    def accepted_field(self) -> str:
        return f"{self.value}_accepted"


class ConfirmOutcome(str, Enum):
    """Result of a confirm call that did not fail."""
    WAITING_ON_OTHER_PARTY = "waiting_on_other_party"
    COMPLETED = "completed"


class SettlementStatus(str, Enum):
    """States of the write-ahead settlement record."""
    STAGED = "staged"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"


# ============== Base Schemas ==============

class TradeItemSlot(BaseModel):
    """An ownership record offered on one side of a trade."""
    inventory_card_id: UUID


# ============== Create Schemas ==============

class TradeCreate(BaseModel):
    """Schema for opening a trade directly, without a request."""
    receiver_identifier: str = Field(
        min_length=1,
        description="User ID or user name of the other party"
    )
    trade_kind: TradeKind = Field(default=TradeKind.PRIVATE)
    requested_card_id: Optional[str] = Field(
        default=None,
        description="Catalog card one of the offered records must match"
    )


# ============== Action Schemas ==============

class TradeConfirm(BaseModel):
    """Schema for confirming one side of a trade with the offered record."""
    inventory_card_id: UUID = Field(description="Ownership record the acting user offers")


class TradeStatusUpdate(BaseModel):
    """Administrative transition out of pending."""
    status: TradeStatus = Field(description="Either cancelled or rejected")


# ============== Response Schemas ==============

class TradeResponse(BaseModel):
    """Full trade response."""
    trade_id: UUID
    initiator_user_id: str
    receiver_user_id: str
    initiator_items: list[TradeItemSlot] = []
    receiver_items: list[TradeItemSlot] = []
    initiator_accepted: bool = False
    receiver_accepted: bool = False
    status: TradeStatus
    trade_kind: TradeKind
    private_room_code: Optional[str] = None
    origin_request_id: Optional[UUID] = None
    requested_card_id: Optional[str] = None
    version: int = 0
    settlement_started_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TradeConfirmResponse(BaseModel):
    """Outcome of confirming one side."""
    outcome: ConfirmOutcome
    trade: TradeResponse


class TradeListResponse(BaseModel):
    """Paginated list of trades."""
    trades: list[TradeResponse]
    total: int
    page: int
    page_size: int

