"""Ticket event listing API routes"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy.orm import Session

from ticketgate.db.session import get_db
from ticketgate.models.base import MAX_TICKET_ID
from ticketgate.services.purchase_service import get_event, list_events

router = APIRouter(prefix="/api/events", tags=["events"])


@router.get("")
def get_events(
    status: Optional[str] = None,
    available: bool = False,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Indexed ticket listings"""
    return {"events": list_events(db, status=status, available_only=available, limit=limit)}


@router.get("/{ticket_id}")
def get_event_by_ticket(ticket_id: int = Path(..., ge=0, le=MAX_TICKET_ID), db: Session = Depends(get_db)):
    event = get_event(ticket_id, db)
    if not event:
        raise HTTPException(404, "Event not found")
    return event
