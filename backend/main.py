from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from supabase import Client

from database import get_supabase
from errors import NotFound, TradeError
from logging_setup import setup_logging
from models.inventory import InventoryCardResponse, UserCardsResponse
from models.room_invite import RoomInviteCreate, RoomInviteListResponse, RoomInviteResponse
from models.trade import (
    TradeConfirm,
    TradeConfirmResponse,
    TradeCreate,
    TradeKind,
    TradeListResponse,
    TradeResponse,
    TradeStatus,
    TradeStatusUpdate,
)
from models.trade_request import (
    TradeRequestAcceptResponse,
    TradeRequestCleanupResponse,
    TradeRequestCreate,
    TradeRequestListResponse,
    TradeRequestResponse,
)
from services import inventory, room_invites, trade_requests, trades
from settings import get_settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    yield


app = FastAPI(title="Card Swap API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TradeError)
async def trade_error_handler(request: Request, exc: TradeError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/")
def read_root():
    return {"message": "Card Swap API"}

@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Inventory Endpoints ==============

@app.get("/users/{user_id}/cards", response_model=UserCardsResponse)
def get_user_cards(
    user_id: str,
    is_tradeable: Optional[bool] = Query(None),
    supabase: Client = Depends(get_supabase),
):
    """Get all ownership records of a user."""
    cards = inventory.list_user_cards(supabase, user_id, is_tradeable)

    return {
        "user_id": user_id,
        "cards": cards,
        "total_cards": sum(card["quantity"] for card in cards),
    }


@app.get("/inventory-cards/{inventory_card_id}", response_model=InventoryCardResponse)
def get_inventory_card(inventory_card_id: UUID, supabase: Client = Depends(get_supabase)):
    """Get a single ownership record."""
    record = inventory.get_card_record(supabase, str(inventory_card_id))

    if record is None:
        raise NotFound("Card not found in inventory")

    return record


# ============== Trade Request Endpoints ==============

@app.post("/trade-requests", response_model=TradeRequestResponse, status_code=201)
def create_trade_request(
    payload: TradeRequestCreate,
    x_user_id: str = Header(...),
    supabase: Client = Depends(get_supabase),
):
    """Send a trade request for a card, or a private room request."""
    return trade_requests.create_request(
        supabase,
        x_user_id,
        payload.to_identifier,
        target_card_id=payload.target_card_id,
        note=payload.note,
        is_manual=payload.is_manual,
        display_name=payload.display_name,
    )


@app.get("/trade-requests/received/{user_id}", response_model=TradeRequestListResponse)
def get_received_requests(user_id: str, x_user_id: str = Header(...), supabase: Client = Depends(get_supabase)):
    """Requests addressed to the acting user."""
    return {"requests": trade_requests.list_requests(supabase, user_id, x_user_id, "received")}


@app.get("/trade-requests/sent/{user_id}", response_model=TradeRequestListResponse)
def get_sent_requests(user_id: str, x_user_id: str = Header(...), supabase: Client = Depends(get_supabase)):
    """Requests sent by the acting user."""
    return {"requests": trade_requests.list_requests(supabase, user_id, x_user_id, "sent")}


@app.post("/trade-requests/cleanup", response_model=TradeRequestCleanupResponse)
def cleanup_trade_requests(
    retention_days: Optional[int] = Query(None, ge=0),
    dry_run: bool = Query(False),
    x_user_id: str = Header(...),
    supabase: Client = Depends(get_supabase),
):
    """Remove finished requests older than the retention window (ADMIN_USER_IDS only)."""
    if retention_days is None:
        retention_days = get_settings().request_retention_days

    deleted = trade_requests.cleanup_finished_requests(supabase, x_user_id, retention_days, dry_run)

    return {"requests_deleted": deleted, "dry_run": dry_run, "retention_days": retention_days}


@app.post("/trade-requests/{request_id}/accept", response_model=TradeRequestAcceptResponse)
def accept_trade_request(request_id: UUID, x_user_id: str = Header(...), supabase: Client = Depends(get_supabase)):
    """Accept a request and open its private trade room."""
    request, trade = trade_requests.accept_request(supabase, str(request_id), x_user_id)

    return {
        "request": request,
        "trade_id": trade["trade_id"],
        "private_room_code": trade.get("private_room_code"),
    }


@app.post("/trade-requests/{request_id}/reject", response_model=TradeRequestResponse)
def reject_trade_request(request_id: UUID, x_user_id: str = Header(...), supabase: Client = Depends(get_supabase)):
    return trade_requests.reject_request(supabase, str(request_id), x_user_id)


@app.delete("/trade-requests/{request_id}/cancel", response_model=TradeRequestResponse)
def cancel_trade_request(request_id: UUID, x_user_id: str = Header(...), supabase: Client = Depends(get_supabase)):
    return trade_requests.cancel_request(supabase, str(request_id), x_user_id)


# ============== Trade Endpoints ==============

@app.post("/trades", response_model=TradeResponse, status_code=201)
def create_trade(payload: TradeCreate, x_user_id: str = Header(...), supabase: Client = Depends(get_supabase)):
    """Open a trade directly with another user."""
    return trades.create_trade(
        supabase,
        x_user_id,
        payload.receiver_identifier,
        payload.trade_kind,
        payload.requested_card_id,
    )


@app.get("/trades", response_model=TradeListResponse)
def list_trades(
    status: Optional[TradeStatus] = Query(None),
    trade_kind: Optional[TradeKind] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    supabase: Client = Depends(get_supabase),
):
    """List trades, newest first."""
    rows, total = trades.list_trades(supabase, status, trade_kind, page, page_size)

    return {"trades": rows, "total": total, "page": page, "page_size": page_size}


@app.get("/trades/room/{room_code}", response_model=TradeResponse)
def get_trade_by_room(room_code: str, supabase: Client = Depends(get_supabase)):
    return trades.get_trade_by_room_code(supabase, room_code)


@app.get("/trades/{trade_id}", response_model=TradeResponse)
def get_trade(trade_id: UUID, supabase: Client = Depends(get_supabase)):
    return trades.get_trade(supabase, str(trade_id))


@app.post("/trades/{trade_id}/confirm", response_model=TradeConfirmResponse)
def confirm_trade(
    trade_id: UUID,
    payload: TradeConfirm,
    x_user_id: str = Header(...),
    supabase: Client = Depends(get_supabase),
):
    """Offer a card on the acting user's side and accept the trade."""
    outcome, trade = trades.confirm_side(supabase, str(trade_id), x_user_id, str(payload.inventory_card_id))

    return {"outcome": outcome, "trade": trade}


@app.patch("/trades/{trade_id}/status", response_model=TradeResponse)
def update_trade_status(
    trade_id: UUID,
    payload: TradeStatusUpdate,
    x_user_id: str = Header(...),
    supabase: Client = Depends(get_supabase),
):
    """Cancel or reject a pending trade."""
    return trades.set_status(supabase, str(trade_id), x_user_id, payload.status)


@app.post("/trades/{trade_id}/settlement/resume", response_model=TradeResponse)
def resume_trade_settlement(trade_id: UUID, x_user_id: str = Header(...), supabase: Client = Depends(get_supabase)):
    """Finish or release a settlement that was interrupted."""
    return trades.resume_settlement(supabase, str(trade_id), x_user_id)


# ============== Trade Room Invite Endpoints ==============

@app.post("/trade-rooms/invites", response_model=RoomInviteResponse, status_code=201)
def create_room_invite(
    payload: RoomInviteCreate,
    x_user_id: str = Header(...),
    supabase: Client = Depends(get_supabase),
):
    """Invite a friend to a private trade room."""
    return room_invites.create_invite(supabase, x_user_id, payload.friend_id)


@app.get("/trade-rooms/invites", response_model=RoomInviteListResponse)
def get_room_invites(x_user_id: str = Header(...), supabase: Client = Depends(get_supabase)):
    received, sent = room_invites.list_invites(supabase, x_user_id)
    return {"received": received, "sent": sent}


@app.post("/trade-rooms/invites/{invite_id}/accept", response_model=RoomInviteResponse)
def accept_room_invite(invite_id: UUID, x_user_id: str = Header(...), supabase: Client = Depends(get_supabase)):
    """Accept an invite; the response carries the private room code."""
    return room_invites.accept_invite(supabase, str(invite_id), x_user_id)


@app.post("/trade-rooms/invites/{invite_id}/reject", response_model=RoomInviteResponse)
def reject_room_invite(invite_id: UUID, x_user_id: str = Header(...), supabase: Client = Depends(get_supabase)):
    return room_invites.reject_invite(supabase, str(invite_id), x_user_id)


@app.post("/trade-rooms/invites/{invite_id}/cancel", response_model=RoomInviteResponse)
def cancel_room_invite(invite_id: UUID, x_user_id: str = Header(...), supabase: Client = Depends(get_supabase)):
    return room_invites.cancel_invite(supabase, str(invite_id), x_user_id)
