"""Purchase API routes"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path
from sqlalchemy.orm import Session

from ticketgate.db.session import get_db
from ticketgate.models.base import MAX_TICKET_ID
from ticketgate.models.purchase import PURCHASE_STATUSES
from ticketgate.services.purchase_service import (
    get_purchase_by_ticket,
    get_purchase_by_tx,
    get_purchase_stats,
    get_seller_sales,
    get_user_purchases,
)

router = APIRouter(prefix="/api/purchases", tags=["purchases"])


def _check_status(status: Optional[str]):
    if status and status not in PURCHASE_STATUSES:
        raise HTTPException(400, f"Invalid status. Must be one of: {', '.join(PURCHASE_STATUSES)}")


@router.get("")
def list_purchases(
    buyer: Optional[str] = None,
    seller: Optional[str] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Purchases by buyer, or sales by seller"""
    _check_status(status)
    if buyer:
        return {"purchases": get_user_purchases(buyer, db, status)}
    if seller:
        return {"purchases": get_seller_sales(seller, db, status)}
    raise HTTPException(400, "Either buyer or seller is required")


@router.get("/stats")
def purchase_stats(wallet: str, as_seller: bool = False, db: Session = Depends(get_db)):
    """Purchase counts and totals per status for a wallet"""
    return {"wallet": wallet.lower(), "as_seller": as_seller, "stats": get_purchase_stats(wallet, db, as_seller)}


@router.get("/tx/{tx_hash}")
def purchase_by_tx(tx_hash: str, db: Session = Depends(get_db)):
    """Look up a purchase by its transaction hash"""
    purchase = get_purchase_by_tx(tx_hash, db)
    if not purchase:
        raise HTTPException(404, "Purchase not found")
    return purchase


@router.get("/ticket/{ticket_id}")
def purchase_by_ticket(ticket_id: int = Path(..., ge=0, le=MAX_TICKET_ID), db: Session = Depends(get_db)):
    """Current purchase record of a ticket (ticket verification)"""
    purchase = get_purchase_by_ticket(ticket_id, db)
    if not purchase:
        raise HTTPException(404, "Purchase not found")
    return purchase


@router.get("/by-wallet/{wallet}/ticket/{ticket_id}")
def purchase_by_wallet_and_ticket(
    wallet: str,
    ticket_id: int = Path(..., ge=0, le=MAX_TICKET_ID),
    db: Session = Depends(get_db)
):
    """Purchase of a ticket by a specific wallet"""
    purchase = get_purchase_by_ticket(ticket_id, db, buyer=wallet)
    if not purchase:
        raise HTTPException(404, "Purchase not found for this wallet and ticket")
    return purchase
