"""Purchase model"""
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, JSON, Index
from sqlalchemy.orm import validates
from datetime import datetime, timezone
from ticketgate.models.base import Base

PURCHASE_STATUSES = ("purchased", "downloaded", "refunded", "expired")


class Purchase(Base):
    """Off-chain purchase record correlated to a ledger purchase by tx hash

    Created optimistically by the purchase submission flow, then confirmed or
    corrected by the event indexer. Never deleted, only transitioned.
    """
    __tablename__ = "purchases"

    id = Column(Integer, primary_key=True, index=True)
    purchase_id = Column(String(100), unique=True, nullable=False, index=True)
    ticket_id = Column(BigInteger, nullable=False, index=True)  # May be wrong until reconciled
    contract_address = Column(String(42), nullable=True)
    buyer = Column(String(42), nullable=False, index=True)
    seller = Column(String(42), nullable=True, index=True)
    price = Column(String(78), nullable=True)  # Wei as a decimal string

    # Transaction data
    purchase_tx_hash = Column(String(66), unique=True, nullable=False, index=True)
    download_tx_hash = Column(String(66), nullable=True, index=True)
    refund_tx_hash = Column(String(66), nullable=True)

    # Event data snapshot
    event_name = Column(String(200), nullable=True)
    organizer = Column(String(100), nullable=True)
    event_date = Column(DateTime(timezone=True), nullable=True)
    poster_url = Column(String(500), nullable=True)
    ticket_image_url = Column(String(500), nullable=True)

    # Status: 'purchased', 'downloaded', 'refunded', 'expired'
    status = Column(String(20), default="purchased", nullable=False, index=True)
    purchase_date = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    download_date = Column(DateTime(timezone=True), nullable=True)
    refund_date = Column(DateTime(timezone=True), nullable=True)
    refund_amount = Column(String(78), nullable=True)

    # Store-only buyer contact info (name, phone, address, seller_phone)
    buyer_info = Column(JSON, default=dict)

    # Ledger block numbers per lifecycle stage
    purchase_block_number = Column(BigInteger, nullable=True)
    download_block_number = Column(BigInteger, nullable=True)
    refund_block_number = Column(BigInteger, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    __table_args__ = (
        Index('ix_purchases_purchase_date', 'purchase_date'),
    )

    @validates("buyer", "seller", "contract_address", "purchase_tx_hash", "download_tx_hash", "refund_tx_hash")
    def _lowercase(self, key, value):
        return value.lower() if value else value

    @validates("status")
    def _check_status(self, key, value):
        if value not in PURCHASE_STATUSES:
            raise ValueError(f"Invalid purchase status: {value}")
        return value
