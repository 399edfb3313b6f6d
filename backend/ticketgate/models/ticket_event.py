"""TicketEvent model"""
from sqlalchemy import Column, Integer, BigInteger, String, Boolean, DateTime
from sqlalchemy.orm import validates
from datetime import datetime, timezone
from ticketgate.models.base import Base


class TicketEvent(Base):
    """Event listing materialized from a ledger TicketCreated event"""
    __tablename__ = "ticket_events"

    id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(BigInteger, unique=True, nullable=False, index=True)
    contract_address = Column(String(42), nullable=False)
    seller = Column(String(42), nullable=False, index=True)
    price = Column(String(78), nullable=False)
    event_date = Column(DateTime(timezone=True), nullable=True)
    sale_end_date = Column(DateTime(timezone=True), nullable=True)
    event_name = Column(String(200), nullable=False, index=True)
    organizer = Column(String(100), nullable=True)
    poster_url = Column(String(500), nullable=True)
    ticket_image_url = Column(String(500), nullable=True)

    # Status: 'active', 'sold_out', 'cancelled', 'completed'
    status = Column(String(20), default="active", nullable=False)
    is_sold = Column(Boolean, default=False, nullable=False)
    is_downloaded = Column(Boolean, default=False, nullable=False)
    is_refunded = Column(Boolean, default=False, nullable=False)
    buyer = Column(String(42), nullable=True)
    created_block_number = Column(BigInteger, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    @validates("seller", "buyer", "contract_address")
    def _lowercase(self, key, value):
        return value.lower() if value else value
