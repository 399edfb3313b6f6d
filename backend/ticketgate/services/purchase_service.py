"""Purchase and event listing read services"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ticketgate.models.purchase import Purchase
from ticketgate.models.ticket_event import TicketEvent
from ticketgate.utils.timeutils import ensure_utc

logger = logging.getLogger(__name__)


def _iso(value) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def serialize_purchase(purchase: Purchase) -> Dict[str, Any]:
    return {
        "purchase_id": purchase.purchase_id,
        "ticket_id": purchase.ticket_id,
        "contract_address": purchase.contract_address,
        "buyer": purchase.buyer,
        "seller": purchase.seller,
        "price": purchase.price,
        "status": purchase.status,
        "event_name": purchase.event_name,
        "organizer": purchase.organizer,
        "event_date": _iso(purchase.event_date),
        "poster_url": purchase.poster_url,
        "ticket_image_url": purchase.ticket_image_url,
        "purchase_tx_hash": purchase.purchase_tx_hash,
        "download_tx_hash": purchase.download_tx_hash,
        "refund_tx_hash": purchase.refund_tx_hash,
        "purchase_date": _iso(purchase.purchase_date),
        "download_date": _iso(purchase.download_date),
        "refund_date": _iso(purchase.refund_date),
        "refund_amount": purchase.refund_amount,
        "purchase_block_number": purchase.purchase_block_number,
        "download_block_number": purchase.download_block_number,
        "refund_block_number": purchase.refund_block_number,
    }


def serialize_ticket_event(event: TicketEvent) -> Dict[str, Any]:
    return {
        "ticket_id": event.ticket_id,
        "contract_address": event.contract_address,
        "event_name": event.event_name,
        "organizer": event.organizer,
        "event_date": _iso(event.event_date),
        "sale_end_date": _iso(event.sale_end_date),
        "price": event.price,
        "seller": event.seller,
        "buyer": event.buyer,
        "poster_url": event.poster_url,
        "ticket_image_url": event.ticket_image_url,
        "status": event.status,
        "is_sold": event.is_sold,
        "is_downloaded": event.is_downloaded,
        "is_refunded": event.is_refunded,
        "created_block_number": event.created_block_number,
    }


def get_user_purchases(buyer: str, db: Session, status: Optional[str] = None) -> List[Dict[str, Any]]:
    """Purchases made by a wallet, newest first"""
    query = db.query(Purchase).filter(Purchase.buyer == buyer.lower())
    if status:
        query = query.filter(Purchase.status == status)
    return [serialize_purchase(p) for p in query.order_by(Purchase.purchase_date.desc(), Purchase.id.desc()).all()]


def get_seller_sales(seller: str, db: Session, status: Optional[str] = None) -> List[Dict[str, Any]]:
    """Sales made by a wallet, newest first"""
    query = db.query(Purchase).filter(Purchase.seller == seller.lower())
    if status:
        query = query.filter(Purchase.status == status)
    return [serialize_purchase(p) for p in query.order_by(Purchase.purchase_date.desc(), Purchase.id.desc()).all()]


def get_purchase_by_tx(tx_hash: str, db: Session) -> Optional[Dict[str, Any]]:
    purchase = db.query(Purchase).filter(Purchase.purchase_tx_hash == tx_hash.lower()).first()
    return serialize_purchase(purchase) if purchase else None


def get_purchase_by_ticket(ticket_id: int, db: Session, buyer: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Most recent purchase of a ticket, optionally restricted to one buyer wallet"""
    query = db.query(Purchase).filter(Purchase.ticket_id == ticket_id)
    if buyer:
        query = query.filter(Purchase.buyer == buyer.lower())
    purchase = query.order_by(Purchase.purchase_date.desc(), Purchase.id.desc()).first()
    return serialize_purchase(purchase) if purchase else None


def get_purchase_stats(wallet: str, db: Session, as_seller: bool = False) -> List[Dict[str, Any]]:
    """Purchase count and total value (wei, as a decimal string) per status for a wallet"""
    column = Purchase.seller if as_seller else Purchase.buyer
    purchases = db.query(Purchase.status, Purchase.price).filter(column == wallet.lower()).all()

    grouped: Dict[str, Dict[str, int]] = {}
    for status, price in purchases:
        bucket = grouped.setdefault(status, {"count": 0, "total_value": 0})
        bucket["count"] += 1
        try:
            bucket["total_value"] += int(price or 0)
        except ValueError:
            logger.warning(f"Ignoring non-numeric price {price!r} in stats for {wallet}")

    return [
        {"status": status, "count": bucket["count"], "total_value": str(bucket["total_value"])}
        for status, bucket in sorted(grouped.items())
    ]


def list_events(db: Session, status: Optional[str] = None, available_only: bool = False,
                limit: int = 100) -> List[Dict[str, Any]]:
    """Indexed ticket listings, newest first"""
    query = db.query(TicketEvent)
    if status:
        query = query.filter(TicketEvent.status == status)
    if available_only:
        query = query.filter(TicketEvent.is_sold.is_(False), TicketEvent.is_refunded.is_(False))
    events = query.order_by(TicketEvent.ticket_id.desc()).limit(limit).all()
    return [serialize_ticket_event(e) for e in events]


def get_event(ticket_id: int, db: Session) -> Optional[Dict[str, Any]]:
    event = db.query(TicketEvent).filter(TicketEvent.ticket_id == ticket_id).first()
    return serialize_ticket_event(event) if event else None
