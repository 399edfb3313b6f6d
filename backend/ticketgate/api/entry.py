"""Entry admission API routes"""
from fastapi import APIRouter, Depends, Path, Request
from sqlalchemy.orm import Session

from ticketgate.core.security import get_client_ip, require_gatekeeper
from ticketgate.db.session import get_db
from ticketgate.models.base import MAX_TICKET_ID
from ticketgate.schemas.entry import EntryLogResponse, ScanRequestBody, ScanResponse, TicketEntryHistory
from ticketgate.services.entry_service import (
    ScanRequest,
    evaluate_scan,
    get_event_entry_stats,
    get_event_guests,
    get_ticket_entry_history,
    is_ticket_used,
)

router = APIRouter(prefix="/api/entry", tags=["entry"])


@router.post("/scan", response_model=ScanResponse)
def scan_ticket(
    body: ScanRequestBody,
    request: Request,
    gatekeeper_id: str = Depends(require_gatekeeper),
    db: Session = Depends(get_db)
):
    """Decide whether a scanned ticket may enter; always 200 with the decision"""
    result = evaluate_scan(db, ScanRequest(
        ticket_id=body.ticket_id,
        holder_address=body.holder_address,
        event_name=body.event_name,
        timestamp_ms=body.timestamp,
        token=body.token,
        gatekeeper_address=gatekeeper_id,
        location=body.location.model_dump(exclude_none=True) if body.location else None,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    ))
    return ScanResponse(
        decision=result.decision,
        reason=result.reason,
        retryable=result.retryable,
        scan_time=result.scan_time,
        conflicting_prior_record=result.conflicting_prior_record,
    )


@router.get("/tickets/{ticket_id}", response_model=TicketEntryHistory)
def ticket_history(ticket_id: int = Path(..., ge=0, le=MAX_TICKET_ID), db: Session = Depends(get_db)):
    """Entry history for a ticket"""
    return TicketEntryHistory(
        ticket_id=ticket_id,
        used=is_ticket_used(db, ticket_id),
        entries=[EntryLogResponse.model_validate(e) for e in get_ticket_entry_history(db, ticket_id)],
    )


@router.get("/events/{event_name}/guests")
def event_guests(event_name: str, db: Session = Depends(get_db)):
    """Guests admitted to an event"""
    guests = get_event_guests(db, event_name)
    return {
        "event_name": event_name,
        "count": len(guests),
        "guests": [
            {
                "ticket_id": g.ticket_id,
                "holder_address": g.holder_address,
                "scan_time": g.scan_time,
                "gatekeeper_address": g.gatekeeper_address,
            }
            for g in guests
        ],
    }


@router.get("/events/{event_name}/stats")
def event_stats(event_name: str, db: Session = Depends(get_db)):
    """Scan attempt counts per result for an event"""
    return {"event_name": event_name, "stats": get_event_entry_stats(db, event_name)}
