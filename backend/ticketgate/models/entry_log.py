"""EntryLog model"""
import enum

from sqlalchemy import Column, Integer, BigInteger, String, DateTime, JSON, Index, text
from datetime import datetime, timezone
from ticketgate.models.base import Base


class ScanResult(str, enum.Enum):
    SUCCESS = "SUCCESS"
    DUPLICATE = "DUPLICATE"
    ALREADY_USED = "ALREADY_USED"
    EXPIRED = "EXPIRED"
    INVALID = "INVALID"


class EntryLog(Base):
    """Append-only audit log of entry scan attempts (one row per attempt)"""
    __tablename__ = "entry_logs"

    id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(BigInteger, nullable=False, index=True)
    holder_address = Column(String(42), nullable=True)
    event_name = Column(String(200), nullable=True)
    scan_time = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    gatekeeper_address = Column(String(42), nullable=True)
    scan_result = Column(String(20), nullable=False)
    reason = Column(String(255), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    location = Column(JSON, nullable=True)  # {"gate": ..., "coordinates": {"lat": ..., "lng": ...}}

    __table_args__ = (
        Index('ix_entry_logs_ticket_scan_time', 'ticket_id', 'scan_time'),
        Index('ix_entry_logs_result_scan_time', 'scan_result', 'scan_time'),
        # At most one SUCCESS row per ticket, enforced by the database
        Index(
            'uq_entry_logs_ticket_success',
            'ticket_id',
            unique=True,
            sqlite_where=text("scan_result = 'SUCCESS'"),
            postgresql_where=text("scan_result = 'SUCCESS'"),
        ),
    )
