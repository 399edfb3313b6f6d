"""Event indexer: keeps the off-chain store consistent with the ledger

The indexer polls the ledger on a fixed interval, walks the blocks produced
since its persisted cursor in fixed-size batches, and applies every lifecycle
event (Created, Purchased, Downloaded, Refunded) to the store.

Safety nets, independent of each other:

- the cursor only moves past a batch once the whole batch was enumerated;
- every event is recorded in ``ledger_events`` keyed by (tx_hash, log_index)
  and skipped if it was already processed;
- every handler checks the natural key of the record it touches before writing.

A handler failure is logged on the event row and skipped so that one bad
event cannot block a range. A ledger outage fails the cycle instead, leaving
the cursor where it was.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ticketgate.core.config import settings
from ticketgate.core.errors import IndexerLockLostError, LedgerUnavailableError, MalformedLedgerEventError
from ticketgate.core.metrics import (
    indexer_events_counter,
    indexer_last_block_gauge,
    indexer_poll_counter,
)
from ticketgate.db.redis import acquire_lock, extend_lock, indexer_lock_key, release_lock
from ticketgate.db.session import SessionLocal
from ticketgate.models.indexer_cursor import IndexerCursor
from ticketgate.models.ledger_event_log import LedgerEventLog
from ticketgate.models.purchase import Purchase
from ticketgate.models.ticket_event import TicketEvent
from ticketgate.services.ledger import (
    CREATED,
    DOWNLOADED,
    LIFECYCLE_EVENT_TYPES,
    PURCHASED,
    REFUNDED,
    ZERO_ADDRESS,
    LedgerReader,
    LifecycleEvent,
    Web3LedgerReader,
    decode_lifecycle_event,
)
from ticketgate.services.reconciliation import (
    CONFIRMED,
    CORRECTED,
    TRANSITION_CORRELATION_STRATEGIES,
    find_purchase,
    reconcile_purchase,
)
from ticketgate.utils.timeutils import from_epoch_seconds, utcnow

logger = logging.getLogger("indexer")

# Per-event outcomes
APPLIED = "applied"
SKIPPED = "skipped"
FAILED = "failed"
MALFORMED = "malformed"


# ============================================================================
# LIFECYCLE EVENT HANDLERS
# ============================================================================

def _get_ticket_event(ticket_id: int, db: Session) -> Optional[TicketEvent]:
    return db.query(TicketEvent).filter(TicketEvent.ticket_id == ticket_id).first()


def _set_if_changed(record, **values) -> bool:
    changed = False
    for key, value in values.items():
        if getattr(record, key) != value:
            setattr(record, key, value)
            changed = True
    return changed


def handle_ticket_created(event: LifecycleEvent, db: Session, ledger: LedgerReader) -> str:
    """Create the event listing for a newly minted ticket from the full on-chain struct"""
    if _get_ticket_event(event.ticket_id, db):
        return SKIPPED

    ticket = ledger.get_ticket(event.ticket_id)
    buyer = ticket.get("buyer")
    if not buyer or buyer.lower() == ZERO_ADDRESS:
        buyer = None

    record = TicketEvent(
        ticket_id=event.ticket_id,
        contract_address=ledger.contract_address,
        seller=event.parties["seller"],
        event_name=ticket.get("eventName") or event.args.get("eventName"),
        organizer=ticket.get("organizer"),
        event_date=from_epoch_seconds(ticket.get("eventDate") or event.args.get("eventDate")),
        sale_end_date=from_epoch_seconds(ticket.get("saleEndDate")),
        price=str(ticket.get("price", event.amount or 0)),
        poster_url=ticket.get("posterUrl"),
        ticket_image_url=ticket.get("ticketImageUrl"),
        is_sold=bool(ticket.get("isSold", False)),
        is_downloaded=bool(ticket.get("isDownloaded", False)),
        is_refunded=bool(ticket.get("isRefunded", False)),
        buyer=buyer,
        created_block_number=event.block_number,
    )
    db.add(record)
    logger.info(f"Indexed TicketCreated event: {event.ticket_id} - {record.event_name}")
    return APPLIED


def handle_ticket_purchased(event: LifecycleEvent, db: Session, ledger: LedgerReader) -> str:
    """Mark the listing sold and reconcile the purchase record by tx hash"""
    changed = False
    ticket_event = _get_ticket_event(event.ticket_id, db)
    if ticket_event:
        changed = _set_if_changed(ticket_event, is_sold=True, buyer=event.parties["buyer"])

    outcome = reconcile_purchase(event, db)
    logger.info(f"Indexed TicketPurchased event: {event.ticket_id} - {event.parties['buyer']} ({outcome})")
    return APPLIED if changed or outcome in (CORRECTED, CONFIRMED) else SKIPPED


def handle_ticket_downloaded(event: LifecycleEvent, db: Session, ledger: LedgerReader) -> str:
    """Mark the listing downloaded and move the purchase to 'downloaded'"""
    changed = False
    ticket_event = _get_ticket_event(event.ticket_id, db)
    if ticket_event:
        changed = _set_if_changed(ticket_event, is_downloaded=True)

    purchase, _ = find_purchase(event, db, TRANSITION_CORRELATION_STRATEGIES)
    if purchase is None:
        logger.warning(f"Purchase record not found for downloaded ticket #{event.ticket_id} (buyer {event.party})")
    elif purchase.download_tx_hash != event.tx_hash:
        _transition_purchase(purchase, "downloaded")
        purchase.download_tx_hash = event.tx_hash
        purchase.download_date = event.timestamp or utcnow()
        purchase.download_block_number = event.block_number
        changed = True

    logger.info(f"Indexed TicketDownloaded event: {event.ticket_id} - {event.party}")
    return APPLIED if changed else SKIPPED


def handle_ticket_refunded(event: LifecycleEvent, db: Session, ledger: LedgerReader) -> str:
    """Cancel the listing and move the purchase to 'refunded'"""
    changed = False
    ticket_event = _get_ticket_event(event.ticket_id, db)
    if ticket_event:
        changed = _set_if_changed(ticket_event, is_refunded=True, status="cancelled")

    purchase, _ = find_purchase(event, db, TRANSITION_CORRELATION_STRATEGIES)
    if purchase is None:
        logger.warning(f"Purchase record not found for refunded ticket #{event.ticket_id} (buyer {event.party})")
    elif purchase.refund_tx_hash != event.tx_hash:
        _transition_purchase(purchase, "refunded")
        purchase.refund_tx_hash = event.tx_hash
        purchase.refund_amount = event.amount or purchase.price
        purchase.refund_date = event.timestamp or utcnow()
        purchase.refund_block_number = event.block_number
        changed = True

    logger.info(f"Indexed TicketRefunded event: {event.ticket_id} - {event.party}")
    return APPLIED if changed else SKIPPED


def _transition_purchase(purchase: Purchase, new_status: str) -> None:
    if purchase.status != new_status:
        logger.info(f"Purchase {purchase.purchase_id}: {purchase.status} -> {new_status}")
        purchase.status = new_status


EVENT_HANDLERS: Dict[str, Callable[[LifecycleEvent, Session, LedgerReader], str]] = {
    CREATED: handle_ticket_created,
    PURCHASED: handle_ticket_purchased,
    DOWNLOADED: handle_ticket_downloaded,
    REFUNDED: handle_ticket_refunded,
}


# ============================================================================
# INDEXER
# ============================================================================

class EventIndexer:
    """Polling indexer with an explicit start()/stop() lifecycle.

    Poll cycles never overlap: the next cycle is scheduled only after the
    current one finished, and across processes a Redis lock admits a single
    poller per contract.
    """

    def __init__(
        self,
        ledger: Optional[LedgerReader] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        batch_size: Optional[int] = None,
        poll_interval: Optional[int] = None,
        start_block: Optional[int] = None,
        use_lock: bool = True,
    ):
        self.ledger = ledger or Web3LedgerReader()
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.INDEXER_BATCH_SIZE
        self.poll_interval = poll_interval or settings.INDEXER_POLL_INTERVAL_SECONDS
        self.start_block = start_block if start_block is not None else settings.INDEXER_START_BLOCK
        self.use_lock = use_lock
        self.last_processed_block: Optional[int] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._lock_token: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def contract_address(self) -> str:
        return (self.ledger.contract_address or "").lower()

    # --- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Load the persisted cursor and schedule the recurring poll task"""
        if self._running:
            logger.warning("Event indexer is already running")
            return

        self.last_processed_block = await asyncio.to_thread(self._load_cursor)
        if self.last_processed_block is not None:
            indexer_last_block_gauge.set(self.last_processed_block)
            logger.info(f"Resuming event indexer after block {self.last_processed_block}")
        else:
            logger.info("No persisted cursor - the first successful poll initializes it")

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Event indexer started (contract {self.contract_address}, RPC {self.ledger.endpoint})")

    async def stop(self) -> None:
        """Stop polling; an in-flight cycle is cancelled"""
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Event indexer stopped")

    def status(self) -> dict:
        """Operational status probe"""
        return {
            "running": self._running,
            "last_processed_block": self.last_processed_block,
            "ledger_endpoint": self.ledger.endpoint,
            "contract_address": self.contract_address,
        }

    async def _run(self) -> None:
        while self._running:
            await self.run_cycle()
            await asyncio.sleep(self.poll_interval)

    async def run_cycle(self) -> None:
        """One guarded poll cycle; never raises"""
        lock_key = indexer_lock_key(self.contract_address)
        if self.use_lock:
            try:
                self._lock_token = acquire_lock(lock_key, timeout=settings.INDEXER_LOCK_TIMEOUT_SECONDS)
            except Exception as e:
                logger.warning(f"Could not acquire indexer lock, skipping cycle: {e}")
                indexer_poll_counter.labels(status="skipped").inc()
                return
            if self._lock_token is None:
                logger.debug("Another indexer instance holds the poll lock, skipping cycle")
                indexer_poll_counter.labels(status="skipped").inc()
                return

        try:
            await self.poll()
            indexer_poll_counter.labels(status="success").inc()
        except IndexerLockLostError as e:
            logger.warning(f"Stopping poll cycle: {e}")
            indexer_poll_counter.labels(status="lock_lost").inc()
        except LedgerUnavailableError as e:
            logger.info(f"Ledger not available, retrying in {self.poll_interval} seconds: {e}")
            indexer_poll_counter.labels(status="ledger_unavailable").inc()
        except Exception as e:
            logger.error(f"Error polling for events: {e}", exc_info=True)
            indexer_poll_counter.labels(status="error").inc()
        finally:
            if self._lock_token is not None:
                token, self._lock_token = self._lock_token, None
                try:
                    if not release_lock(lock_key, token):
                        logger.warning("Indexer lock was no longer ours at release, left in place")
                except Exception as e:
                    logger.warning(f"Failed to release indexer lock: {e}")

    def _extend_lock(self) -> None:
        """Keep the poll lock alive between batches of a long catch-up

        Raises:
            IndexerLockLostError: The lock expired or now belongs to another instance
        """
        if self._lock_token is None:
            return
        lock_key = indexer_lock_key(self.contract_address)
        if not extend_lock(lock_key, self._lock_token, timeout=settings.INDEXER_LOCK_TIMEOUT_SECONDS):
            self._lock_token = None
            raise IndexerLockLostError(f"Lost indexer lock {lock_key} after block {self.last_processed_block}")

    # --- polling ---------------------------------------------------------------

    async def poll(self) -> int:
        """Process every block produced since the cursor.

        Returns:
            Number of blocks the cursor advanced by

        Raises:
            LedgerUnavailableError: The ledger could not be reached; the cursor
                stays after the last fully enumerated batch
            IndexerLockLostError: Another instance took over the poll lock between batches
        """
        head = await asyncio.to_thread(self.ledger.get_block_number)

        if self.last_processed_block is None:
            initial = self.start_block - 1 if self.start_block is not None else head
            await asyncio.to_thread(self._save_cursor, initial)
            logger.info(f"Indexer cursor initialized at block {initial}")

        if head < self.last_processed_block:
            logger.warning(
                f"Ledger head {head} is behind cursor {self.last_processed_block}; "
                f"waiting for the chain to catch up"
            )
            return 0
        if head == self.last_processed_block:
            return 0

        start = self.last_processed_block
        logger.info(f"Processing blocks {start + 1} to {head}")
        from_block = start + 1
        while from_block <= head:
            to_block = min(from_block + self.batch_size - 1, head)
            await self.process_batch(from_block, to_block)
            await asyncio.to_thread(self._save_cursor, to_block)
            from_block = to_block + 1
            if from_block <= head:
                self._extend_lock()

        return head - start

    async def process_range(self, from_block: int, to_block: int) -> Dict[str, int]:
        """Re-process an explicit block range without touching the cursor"""
        totals: Dict[str, int] = {}
        while from_block <= to_block:
            batch_end = min(from_block + self.batch_size - 1, to_block)
            for outcome, count in (await self.process_batch(from_block, batch_end)).items():
                totals[outcome] = totals.get(outcome, 0) + count
            from_block = batch_end + 1
        return totals

    async def process_batch(self, from_block: int, to_block: int) -> Dict[str, int]:
        """Fetch every lifecycle event type in the range and apply them in ledger order.

        Returns:
            Count of events per outcome (applied, skipped, failed, malformed)
        """
        fetched = await asyncio.gather(*(
            asyncio.to_thread(self.ledger.get_events, event_type, from_block, to_block)
            for event_type in LIFECYCLE_EVENT_TYPES
        ))

        outcomes = {APPLIED: 0, SKIPPED: 0, FAILED: 0, MALFORMED: 0}
        events: List[LifecycleEvent] = []
        for event_type, raw_events in zip(LIFECYCLE_EVENT_TYPES, fetched):
            for raw in raw_events:
                try:
                    events.append(decode_lifecycle_event(event_type, raw))
                except MalformedLedgerEventError as e:
                    logger.error(f"Skipping malformed {event_type} event in blocks {from_block}-{to_block}: {e}")
                    indexer_events_counter.labels(event_type=event_type, status=MALFORMED).inc()
                    outcomes[MALFORMED] += 1

        events.sort(key=lambda e: e.sort_key)
        for outcome, count in (await asyncio.to_thread(self._apply_events, events)).items():
            outcomes[outcome] += count

        if events or outcomes[MALFORMED]:
            logger.info(f"Blocks {from_block}-{to_block}: {outcomes}")
        return outcomes

    # --- application -----------------------------------------------------------

    def _apply_events(self, events: List[LifecycleEvent]) -> Dict[str, int]:
        outcomes = {APPLIED: 0, SKIPPED: 0, FAILED: 0}
        db = self.session_factory()
        try:
            for event in events:
                outcome = self.apply_event(event, db)
                outcomes[outcome] += 1
                indexer_events_counter.labels(event_type=event.event_type, status=outcome).inc()
        finally:
            db.close()
        return outcomes

    def apply_event(self, event: LifecycleEvent, db: Session) -> str:
        """Apply one event idempotently in its own transaction.

        Raises:
            LedgerUnavailableError: A handler's point query hit a ledger outage
        """
        try:
            entry = self._get_event_log(event, db)
            if entry is not None and entry.processed:
                return SKIPPED
            if entry is None:
                entry = LedgerEventLog(
                    tx_hash=event.tx_hash,
                    log_index=event.log_index,
                    event_type=event.event_type,
                    block_number=event.block_number,
                    ticket_id=event.ticket_id,
                    payload=event.to_payload(),
                )
                db.add(entry)

            outcome = EVENT_HANDLERS[event.event_type](event, db, self.ledger)

            entry.processed = True
            entry.processed_at = utcnow()
            entry.error_message = None
            db.commit()
            return outcome
        except LedgerUnavailableError:
            db.rollback()
            raise
        except Exception as e:
            db.rollback()
            logger.error(
                f"Error processing {event.event_type} event for ticket #{event.ticket_id} "
                f"(tx {event.tx_hash}, log {event.log_index}): {e}",
                exc_info=True
            )
            self._record_failure(event, str(e), db)
            return FAILED

    def _get_event_log(self, event: LifecycleEvent, db: Session) -> Optional[LedgerEventLog]:
        return db.query(LedgerEventLog).filter(
            LedgerEventLog.tx_hash == event.tx_hash,
            LedgerEventLog.log_index == event.log_index
        ).first()

    def _record_failure(self, event: LifecycleEvent, error_message: str, db: Session) -> None:
        """Keep the failed event unprocessed so a maintenance re-scan retries it"""
        try:
            entry = self._get_event_log(event, db)
            if entry is None:
                entry = LedgerEventLog(
                    tx_hash=event.tx_hash,
                    log_index=event.log_index,
                    event_type=event.event_type,
                    block_number=event.block_number,
                    ticket_id=event.ticket_id,
                    payload=event.to_payload(),
                )
                db.add(entry)
            entry.processed = False
            entry.error_message = error_message[:2000]
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record error for event {event.tx_hash}:{event.log_index}: {e}")

    # --- cursor persistence ----------------------------------------------------

    def _load_cursor(self) -> Optional[int]:
        db = self.session_factory()
        try:
            cursor = db.query(IndexerCursor).filter(
                IndexerCursor.contract_address == self.contract_address
            ).first()
            return cursor.last_processed_block if cursor else None
        finally:
            db.close()

    def _save_cursor(self, block_number: int) -> None:
        """Persist the cursor; it never moves backwards"""
        db = self.session_factory()
        try:
            cursor = db.query(IndexerCursor).filter(
                IndexerCursor.contract_address == self.contract_address
            ).first()
            if cursor is None:
                cursor = IndexerCursor(contract_address=self.contract_address, last_processed_block=block_number)
                db.add(cursor)
            elif block_number > cursor.last_processed_block:
                cursor.last_processed_block = block_number
            else:
                block_number = cursor.last_processed_block
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        self.last_processed_block = block_number
        indexer_last_block_gauge.set(block_number)
