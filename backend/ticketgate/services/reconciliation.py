"""Correlation of ledger lifecycle events with off-chain purchase records

A client may write a purchase record optimistically, before its transaction
confirms, with a placeholder or wrong ticket id (ticket numbering races under
concurrent mints). The transaction hash is therefore the canonical key and the
ticket id only a fallback. Strategies are tried in order; the first match wins.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from ticketgate.core.metrics import purchase_corrections_counter
from ticketgate.models.purchase import Purchase
from ticketgate.services.ledger import LifecycleEvent

logger = logging.getLogger("indexer")

# Reconciliation outcomes
CORRECTED = "corrected"
CONFIRMED = "confirmed"
UNCHANGED = "unchanged"
MISSING = "missing"


class CorrelationStrategy(ABC):
    """Finds the purchase record a lifecycle event refers to"""

    name: str = ""

    @abstractmethod
    def find(self, event: LifecycleEvent, db: Session) -> Optional[Purchase]:
        pass


class TxHashCorrelation(CorrelationStrategy):
    """Match on the purchase transaction hash (case-normalized)"""

    name = "tx_hash"

    def find(self, event, db):
        return db.query(Purchase).filter(Purchase.purchase_tx_hash == event.tx_hash.lower()).first()


class TicketIdCorrelation(CorrelationStrategy):
    """Match on ticket id, for legacy or manually corrected records"""

    name = "ticket_id"

    def find(self, event, db):
        return (
            db.query(Purchase)
            .filter(Purchase.ticket_id == event.ticket_id)
            .order_by(Purchase.purchase_date.desc(), Purchase.id.desc())
            .first()
        )


class TicketIdAndBuyerCorrelation(CorrelationStrategy):
    """Match on ticket id and the buyer named by the event"""

    name = "ticket_id_and_buyer"

    def find(self, event, db):
        buyer = event.parties.get("buyer")
        if not buyer:
            return None
        return (
            db.query(Purchase)
            .filter(Purchase.ticket_id == event.ticket_id, Purchase.buyer == buyer.lower())
            .order_by(Purchase.purchase_date.desc(), Purchase.id.desc())
            .first()
        )


PURCHASE_CORRELATION_STRATEGIES: Tuple[CorrelationStrategy, ...] = (
    TxHashCorrelation(),
    TicketIdCorrelation(),
)

TRANSITION_CORRELATION_STRATEGIES: Tuple[CorrelationStrategy, ...] = (
    TicketIdAndBuyerCorrelation(),
    TicketIdCorrelation(),
)


def find_purchase(
    event: LifecycleEvent,
    db: Session,
    strategies: Sequence[CorrelationStrategy] = PURCHASE_CORRELATION_STRATEGIES
) -> Tuple[Optional[Purchase], Optional[str]]:
    """Try each strategy in order and return (purchase, strategy name) for the first match"""
    for strategy in strategies:
        purchase = strategy.find(event, db)
        if purchase is not None:
            return purchase, strategy.name
    return None, None


def reconcile_purchase(
    event: LifecycleEvent,
    db: Session,
    strategies: Sequence[CorrelationStrategy] = PURCHASE_CORRELATION_STRATEGIES
) -> str:
    """Bring the purchase record for a Purchased event in line with the ledger.

    Never creates a record: buyer contact info only exists off-chain, so a
    purchase the store has never seen is reported and left alone.

    Does not commit; the caller owns the transaction.

    Returns:
        One of CORRECTED, CONFIRMED, UNCHANGED, MISSING
    """
    purchase, matched_by = find_purchase(event, db, strategies)
    if purchase is None:
        logger.warning(
            f"Purchase record not found for ticket #{event.ticket_id} (tx {event.tx_hash}) - nothing to reconcile"
        )
        return MISSING

    outcome = UNCHANGED
    if purchase.ticket_id != event.ticket_id:
        logger.warning(
            f"Correcting purchase {purchase.purchase_id} (tx {purchase.purchase_tx_hash}): "
            f"ticket id {purchase.ticket_id} -> {event.ticket_id} (matched by {matched_by})"
        )
        purchase.ticket_id = event.ticket_id
        purchase_corrections_counter.inc()
        outcome = CORRECTED

    if purchase.purchase_block_number != event.block_number:
        purchase.purchase_block_number = event.block_number
        if outcome == UNCHANGED:
            outcome = CONFIRMED

    if outcome != UNCHANGED:
        logger.info(f"Synced purchase record for ticket #{event.ticket_id} ({outcome}, matched by {matched_by})")
    return outcome
