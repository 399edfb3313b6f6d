"""IndexerCursor model"""
from sqlalchemy import Column, Integer, BigInteger, String, DateTime
from datetime import datetime, timezone
from ticketgate.models.base import Base


class IndexerCursor(Base):
    """Last ledger block fully processed by the event indexer, per contract"""
    __tablename__ = "indexer_cursors"

    id = Column(Integer, primary_key=True, index=True)
    contract_address = Column(String(42), unique=True, nullable=False, index=True)
    last_processed_block = Column(BigInteger, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )
