"""Pydantic schemas for entry admission"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ticketgate.models.base import MAX_TICKET_ID


class GateLocation(BaseModel):
    """Where the scan happened"""
    gate: Optional[str] = None
    coordinates: Optional[Dict[str, float]] = None


class ScanRequestBody(BaseModel):
    """Entry scan request as sent by the gatekeeper scanner"""
    ticket_id: int = Field(..., ge=0, le=MAX_TICKET_ID)
    holder_address: Optional[str] = None
    event_name: Optional[str] = None
    timestamp: Optional[int] = Field(None, description="Credential generation time (epoch milliseconds)")
    token: Optional[str] = Field(None, description="Signed freshness token from the holder's QR code")
    location: Optional[GateLocation] = None

    @field_validator("holder_address")
    @classmethod
    def normalize_address(cls, v):
        return v.strip().lower() if v else v


class PriorRecord(BaseModel):
    id: int
    scan_time: datetime
    gatekeeper_address: Optional[str] = None
    holder_address: Optional[str] = None


class ScanResponse(BaseModel):
    decision: str
    reason: str
    retryable: bool = False
    scan_time: Optional[datetime] = None
    conflicting_prior_record: Optional[PriorRecord] = None


class EntryLogResponse(BaseModel):
    id: int
    ticket_id: int
    holder_address: Optional[str] = None
    event_name: Optional[str] = None
    scan_time: datetime
    gatekeeper_address: Optional[str] = None
    scan_result: str
    reason: Optional[str] = None
    location: Optional[Dict[str, Any]] = None

    model_config = {"from_attributes": True}


class TicketEntryHistory(BaseModel):
    ticket_id: int
    used: bool
    entries: List[EntryLogResponse]
