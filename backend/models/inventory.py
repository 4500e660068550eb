# backend/models/inventory.py
from datetime import datetime
from enum import Enum
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Any


# ============== Enums ==============

class CardCondition(str, Enum):
    MINT = "Mint"
    NEAR_MINT = "Near Mint"
    EXCELLENT = "Excellent"
    GOOD = "Good"
    POOR = "Poor"


class CollectionType(str, Enum):
    """Collection bucket an ownership record lives in."""
    COLLECTION = "collection"
    WISHLIST = "wishlist"


class TransferOpKind(str, Enum):
    """Write operations a settlement performs on ownership records."""
    DECREMENT = "decrement"
    DELETE = "delete"
    INCREMENT = "increment"
    CREATE = "create"


# ============== Base Schemas ==============

class InventoryCardBase(BaseModel):
    """Base schema for an ownership record."""
    card_id: str
    condition: CardCondition = CardCondition.NEAR_MINT
    collection_type: CollectionType = CollectionType.COLLECTION
    quantity: int = Field(default=1, ge=0, description="Number of copies owned")
    is_tradeable: bool = Field(default=False, description="Whether the record is offered for trade")
    estimated_value: Optional[float] = Field(default=None, ge=0, description="Estimated value of one copy")


# ============== Response Schemas ==============

class InventoryCardResponse(InventoryCardBase):
    """Ownership record as stored."""
    inventory_card_id: UUID
    user_id: str
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UserCardsResponse(BaseModel):
    """All ownership records of one user."""
    user_id: str
    cards: list[InventoryCardResponse] = []
    total_cards: int = Field(default=0, description="Sum of all card quantities")


# ============== Transfer Schemas ==============

class TransferOp(BaseModel):
    """
    One conditional write against an ownership record.

    ``before`` is the record as it was when the transfer was planned (None for
    a record that does not exist yet) and ``after`` is the record once the
    write lands (None when the record is deleted). Applying and reverting both
    compare the stored row against one side and write the other, so either
    direction can be replayed safely.
    """
    kind: TransferOpKind
    inventory_card_id: str
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
