"""LedgerEventLog model"""
from sqlalchemy import Column, Integer, BigInteger, String, Boolean, Text, JSON, DateTime, UniqueConstraint
from datetime import datetime, timezone
from ticketgate.models.base import Base


class LedgerEventLog(Base):
    """Ledger lifecycle event log for indexer idempotency"""
    __tablename__ = "ledger_events"

    id = Column(Integer, primary_key=True, index=True)
    tx_hash = Column(String(66), nullable=False, index=True)
    log_index = Column(Integer, nullable=False)
    event_type = Column(String(50), nullable=False, index=True)
    block_number = Column(BigInteger, nullable=False, index=True)
    ticket_id = Column(BigInteger, nullable=True, index=True)
    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    payload = Column(JSON, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint('tx_hash', 'log_index', name='uq_ledger_events_tx_log'),
    )
