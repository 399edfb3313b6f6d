"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from ticketgate.models.base import Base
from ticketgate.models.purchase import Purchase
from ticketgate.models.ticket_event import TicketEvent
from ticketgate.models.entry_log import EntryLog, ScanResult
from ticketgate.models.indexer_cursor import IndexerCursor
from ticketgate.models.ledger_event_log import LedgerEventLog

# Export all for convenience
__all__ = [
    "Base", "Purchase", "TicketEvent", "EntryLog", "ScanResult",
    "IndexerCursor", "LedgerEventLog"
]
