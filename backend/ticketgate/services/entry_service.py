"""Entry admission service

Decides, for one gate scan, whether a ticket credential may enter and records
every attempt in the append-only entry log. The decision procedure runs in
order and stops at the first rejection:

1. credential validation (signed freshness token, when present or required)
2. freshness of the credential generation time
3. ownership against the ledger-confirmed purchase record
4. prior successful admission (duplicate window, then already used)

A second SUCCESS row for the same ticket is rejected by the database itself
(partial unique index), so two gates scanning the same ticket at the same
moment cannot both admit it.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ticketgate.core.config import settings
from ticketgate.core.errors import InvalidEntryCredential
from ticketgate.core.metrics import admission_decisions_counter, admission_write_conflicts_counter
from ticketgate.models.base import MAX_TICKET_ID
from ticketgate.models.entry_log import EntryLog, ScanResult
from ticketgate.models.purchase import Purchase
from ticketgate.utils.entry_tokens import verify_entry_token
from ticketgate.utils.timeutils import ensure_utc, from_epoch_millis, utcnow

logger = logging.getLogger("entry")
security_logger = logging.getLogger("security")

# Gatekeeper-facing decisions
ADMIT = "ADMIT"
DUPLICATE = "DUPLICATE"
ALREADY_USED = "ALREADY_USED"
EXPIRED = "EXPIRED"
INVALID = "INVALID"

_SCAN_RESULTS = {
    ADMIT: ScanResult.SUCCESS,
    DUPLICATE: ScanResult.DUPLICATE,
    ALREADY_USED: ScanResult.ALREADY_USED,
    EXPIRED: ScanResult.EXPIRED,
    INVALID: ScanResult.INVALID,
}

INACTIVE_PURCHASE_STATUSES = ("refunded", "expired")


@dataclass
class ScanRequest:
    """One scan attempt as presented at the gate"""
    ticket_id: int
    holder_address: Optional[str] = None
    event_name: Optional[str] = None
    timestamp_ms: Optional[int] = None
    token: Optional[str] = None
    gatekeeper_address: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AdmissionResult:
    decision: str
    reason: str
    retryable: bool = False
    scan_time: Optional[datetime] = None
    conflicting_prior_record: Optional[Dict[str, Any]] = field(default=None)

    @property
    def admitted(self) -> bool:
        return self.decision == ADMIT


def _prior_record_summary(entry: EntryLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "scan_time": ensure_utc(entry.scan_time),
        "gatekeeper_address": entry.gatekeeper_address,
        "holder_address": entry.holder_address,
    }


def get_latest_success(db: Session, ticket_id: int) -> Optional[EntryLog]:
    """Most recent successful admission for a ticket, if any"""
    return (
        db.query(EntryLog)
        .filter(EntryLog.ticket_id == ticket_id, EntryLog.scan_result == ScanResult.SUCCESS.value)
        .order_by(EntryLog.scan_time.desc(), EntryLog.id.desc())
        .first()
    )


def _record_attempt(db: Session, request: ScanRequest, decision: str, reason: str, now: datetime) -> EntryLog:
    entry = EntryLog(
        ticket_id=request.ticket_id,
        holder_address=request.holder_address.lower() if request.holder_address else None,
        event_name=request.event_name,
        scan_time=now,
        gatekeeper_address=request.gatekeeper_address.lower() if request.gatekeeper_address else None,
        scan_result=_SCAN_RESULTS[decision].value,
        reason=reason[:255],
        ip_address=request.ip_address,
        user_agent=request.user_agent[:512] if request.user_agent else None,
        location=request.location,
    )
    db.add(entry)
    db.commit()
    return entry


def _reject(db: Session, request: ScanRequest, decision: str, reason: str, now: datetime,
            prior: Optional[EntryLog] = None) -> AdmissionResult:
    _record_attempt(db, request, decision, reason, now)
    logger.info(f"Ticket #{request.ticket_id} rejected at gate: {decision} - {reason}")
    return AdmissionResult(
        decision=decision,
        reason=reason,
        scan_time=now,
        conflicting_prior_record=_prior_record_summary(prior) if prior is not None else None,
    )


def _classify_prior(db: Session, request: ScanRequest, prior: EntryLog, now: datetime) -> AdmissionResult:
    prior_time = ensure_utc(prior.scan_time)
    elapsed = now - prior_time
    if elapsed < timedelta(seconds=settings.ENTRY_DUPLICATE_WINDOW_SECONDS):
        seconds = max(int(elapsed.total_seconds()), 0)
        return _reject(db, request, DUPLICATE, f"Ticket was just scanned ({seconds}s ago)", now, prior)
    return _reject(
        db, request, ALREADY_USED, f"Ticket already used at {prior_time.isoformat()}", now, prior
    )


def _check_credential(request: ScanRequest) -> Optional[int]:
    """Return the effective generation time in epoch milliseconds

    Raises:
        InvalidEntryCredential: Token missing (when required) or failed verification
    """
    if request.token:
        return verify_entry_token(request.token, request.ticket_id)
    if settings.ENTRY_REQUIRE_TOKEN:
        raise InvalidEntryCredential("Entry token required")
    return request.timestamp_ms


def _check_ownership(db: Session, request: ScanRequest) -> Tuple[Optional[str], Optional[str]]:
    """Return (rejection reason, event name of the active purchase)

    The reason is None when the holder owns an active purchase.
    """
    purchase = (
        db.query(Purchase)
        .filter(Purchase.ticket_id == request.ticket_id)
        .order_by(Purchase.purchase_date.desc(), Purchase.id.desc())
        .first()
    )
    if purchase is None:
        return "No purchase found for this ticket", None
    if purchase.status in INACTIVE_PURCHASE_STATUSES:
        return f"Ticket has been {purchase.status}", None
    if not request.holder_address or purchase.buyer != request.holder_address.lower():
        return "Holder does not own this ticket", None
    return None, purchase.event_name


def _decide(db: Session, request: ScanRequest, now: datetime) -> AdmissionResult:
    if not 0 <= request.ticket_id <= MAX_TICKET_ID:
        # Cannot be stored in the entry log
        security_logger.warning(
            f"Rejected out-of-range ticket id {request.ticket_id} (gatekeeper {request.gatekeeper_address})"
        )
        return AdmissionResult(decision=INVALID, reason="Unknown ticket", scan_time=now)

    try:
        generated_ms = _check_credential(request)
    except InvalidEntryCredential as e:
        security_logger.warning(
            f"Rejected entry credential for ticket #{request.ticket_id} "
            f"(gatekeeper {request.gatekeeper_address}): {e}"
        )
        return _reject(db, request, INVALID, str(e), now)

    if generated_ms is None:
        logger.warning(f"Ticket #{request.ticket_id} scanned without a credential timestamp (legacy QR code)")
    else:
        try:
            generated_at = from_epoch_millis(generated_ms)
        except (OverflowError, OSError, ValueError):
            return _reject(db, request, INVALID, "Credential timestamp out of range", now)
        age = now - generated_at
        if age > timedelta(seconds=settings.ENTRY_FRESHNESS_WINDOW_SECONDS):
            return _reject(db, request, EXPIRED, "QR code expired, ask the holder to refresh it", now)
        if -age > timedelta(seconds=settings.ENTRY_MAX_CLOCK_SKEW_SECONDS):
            return _reject(db, request, INVALID, "Credential timestamp is in the future", now)

    if settings.ENTRY_REQUIRE_PURCHASE:
        reason, event_name = _check_ownership(db, request)
        if reason:
            return _reject(db, request, INVALID, reason, now)
        if not request.event_name:
            request.event_name = event_name

    prior = get_latest_success(db, request.ticket_id)
    if prior is not None:
        return _classify_prior(db, request, prior, now)

    try:
        _record_attempt(db, request, ADMIT, "Entry granted", now)
    except IntegrityError:
        # Another gate admitted this ticket between our lookup and insert
        db.rollback()
        admission_write_conflicts_counter.inc()
        prior = get_latest_success(db, request.ticket_id)
        if prior is None:
            raise
        logger.info(f"Ticket #{request.ticket_id} lost a concurrent admission race")
        return _classify_prior(db, request, prior, now)

    logger.info(f"Ticket #{request.ticket_id} admitted by gatekeeper {request.gatekeeper_address}")
    return AdmissionResult(decision=ADMIT, reason="Entry granted", scan_time=now)


def evaluate_scan(db: Session, request: ScanRequest, now: Optional[datetime] = None) -> AdmissionResult:
    """Decide one scan attempt and durably record it

    Never raises for store failures: those yield INVALID with retryable=True.

    Args:
        db: Database session
        request: The scan attempt
        now: Server time of the attempt (defaults to the current UTC time)

    Returns:
        AdmissionResult with exactly one of ADMIT, DUPLICATE, ALREADY_USED, EXPIRED, INVALID
    """
    now = ensure_utc(now) if now is not None else utcnow()
    try:
        result = _decide(db, request, now)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Entry log unavailable while scanning ticket #{request.ticket_id}: {e}", exc_info=True)
        result = AdmissionResult(
            decision=INVALID,
            reason="Entry system temporarily unavailable, please scan again",
            retryable=True,
            scan_time=now,
        )

    admission_decisions_counter.labels(decision=result.decision).inc()
    return result


# ============================================================================
# READ HELPERS
# ============================================================================

def get_ticket_entry_history(db: Session, ticket_id: int) -> List[EntryLog]:
    """All scan attempts for a ticket in scan order"""
    return (
        db.query(EntryLog)
        .filter(EntryLog.ticket_id == ticket_id)
        .order_by(EntryLog.scan_time.asc(), EntryLog.id.asc())
        .all()
    )


def is_ticket_used(db: Session, ticket_id: int) -> bool:
    return get_latest_success(db, ticket_id) is not None


def get_event_guests(db: Session, event_name: str) -> List[EntryLog]:
    """Successful admissions for an event (the guest list)"""
    return (
        db.query(EntryLog)
        .filter(EntryLog.event_name == event_name, EntryLog.scan_result == ScanResult.SUCCESS.value)
        .order_by(EntryLog.scan_time.asc(), EntryLog.id.asc())
        .all()
    )


def get_event_entry_stats(db: Session, event_name: str) -> Dict[str, int]:
    """Count of scan attempts per result for an event, plus a total"""
    rows = (
        db.query(EntryLog.scan_result, func.count(EntryLog.id))
        .filter(EntryLog.event_name == event_name)
        .group_by(EntryLog.scan_result)
        .all()
    )
    stats = {result.value: 0 for result in ScanResult}
    for scan_result, count in rows:
        stats[scan_result] = count
    stats["total"] = sum(count for _, count in rows)
    return stats
