"""Shared pytest fixtures for test suite"""
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional
from unittest.mock import patch

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["INDEXER_ENABLED"] = "false"
os.environ.setdefault("ENTRY_TOKEN_SECRET", "test-entry-token-secret")

from ticketgate.core.errors import LedgerUnavailableError
from ticketgate.db import redis as redis_module
from ticketgate.db.session import get_db
from ticketgate.main import app
from ticketgate.models import Base
from ticketgate.models.purchase import Purchase
from ticketgate.services.indexer_service import EventIndexer
from ticketgate.services.ledger import (
    CREATED,
    DOWNLOADED,
    LIFECYCLE_EVENT_TYPES,
    PURCHASED,
    REFUNDED,
    ZERO_ADDRESS,
    LedgerReader,
)


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

CONTRACT_ADDRESS = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
BUYER = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
OTHER_BUYER = "0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc"
SELLER = "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"
GATEKEEPER = "0x90f79bf6eb2c4f870365e785982e1f101e93b906"


def tx_hash(n: int) -> str:
    """Deterministic 32-byte transaction hash for test events"""
    return "0x" + format(n, "064x")


class FakeLedger(LedgerReader):
    """In-memory ledger: events are appended per block, tickets keyed by id"""

    def __init__(self, contract_address: str = CONTRACT_ADDRESS):
        self.endpoint = "http://fake-ledger:8545"
        self.contract_address = contract_address
        self.head = 0
        self.unavailable = False
        self.events: Dict[str, List[Dict[str, Any]]] = {t: [] for t in LIFECYCLE_EVENT_TYPES}
        self.tickets: Dict[int, Dict[str, Any]] = {}
        self.get_events_calls: List[tuple] = []
        self.get_ticket_calls: List[int] = []

    def _check(self):
        if self.unavailable:
            raise LedgerUnavailableError("connection refused")

    def get_block_number(self) -> int:
        self._check()
        return self.head

    def get_events(self, event_type, from_block, to_block):
        self._check()
        self.get_events_calls.append((event_type, from_block, to_block))
        return [e for e in self.events[event_type] if from_block <= e["blockNumber"] <= to_block]

    def get_ticket(self, ticket_id):
        self._check()
        self.get_ticket_calls.append(ticket_id)
        return dict(self.tickets[ticket_id])

    def add_event(self, event_type: str, block: int, args: Dict[str, Any], tx: int,
                  log_index: int = 0, timestamp: Optional[int] = 1760000000) -> Dict[str, Any]:
        raw = {
            "args": args,
            "blockNumber": block,
            "logIndex": log_index,
            "transactionHash": tx_hash(tx),
            "timestamp": timestamp,
        }
        self.events[event_type].append(raw)
        self.head = max(self.head, block)
        return raw

    def create_ticket(self, ticket_id: int, block: int, tx: int, event_name: str = "Summer Fest",
                      price: int = 10 ** 17, log_index: int = 0):
        self.tickets[ticket_id] = {
            "ticketId": ticket_id,
            "eventName": event_name,
            "organizer": "Fest Org",
            "eventDate": 1767225600,
            "saleEndDate": 1767139200,
            "price": price,
            "posterUrl": "ipfs://poster",
            "ticketImageUrl": "ipfs://ticket",
            "seller": SELLER,
            "buyer": ZERO_ADDRESS,
            "isSold": False,
            "isDownloaded": False,
            "isRefunded": False,
        }
        return self.add_event(CREATED, block, {
            "ticketId": ticket_id, "eventName": event_name, "seller": SELLER,
            "price": price, "eventDate": 1767225600,
        }, tx, log_index)

    def purchase_ticket(self, ticket_id: int, block: int, tx: int, buyer: str = BUYER,
                        price: int = 10 ** 17, log_index: int = 0):
        return self.add_event(PURCHASED, block, {"ticketId": ticket_id, "buyer": buyer, "price": price}, tx, log_index)

    def download_ticket(self, ticket_id: int, block: int, tx: int, buyer: str = BUYER, log_index: int = 0):
        return self.add_event(DOWNLOADED, block, {"ticketId": ticket_id, "buyer": buyer}, tx, log_index)

    def refund_ticket(self, ticket_id: int, block: int, tx: int, buyer: str = BUYER,
                      amount: int = 10 ** 17, log_index: int = 0):
        return self.add_event(REFUNDED, block, {"ticketId": ticket_id, "buyer": buyer, "refundAmount": amount}, tx, log_index)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def fake_ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture(scope="function")
def indexer(db_session, fake_ledger) -> EventIndexer:
    """Indexer bound to the fake ledger and the test database (no Redis lock)"""
    return EventIndexer(
        ledger=fake_ledger,
        session_factory=TestSessionLocal,
        batch_size=1000,
        poll_interval=1,
        start_block=1,
        use_lock=False,
    )


@pytest.fixture(scope="function")
def make_purchase(db_session: Session):
    """Factory for purchase records as written by the purchase submission flow"""
    counter = {"n": 0}

    def _make(ticket_id: int, tx: int, buyer: str = BUYER, status: str = "purchased",
              event_name: str = "Summer Fest", purchase_date: Optional[datetime] = None) -> Purchase:
        counter["n"] += 1
        purchase = Purchase(
            purchase_id=f"purchase-{counter['n']}",
            ticket_id=ticket_id,
            contract_address=CONTRACT_ADDRESS,
            buyer=buyer,
            seller=SELLER,
            price=str(10 ** 17),
            purchase_tx_hash=tx_hash(tx),
            event_name=event_name,
            status=status,
            purchase_date=purchase_date or datetime.now(timezone.utc),
            buyer_info={"name": "Test Buyer"},
        )
        db_session.add(purchase)
        db_session.commit()
        db_session.refresh(purchase)
        return purchase

    return _make


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Disable OpenTelemetry instrumentation in tests
        with patch("ticketgate.core.otel.initialize_otel", return_value=False):
            with patch("ticketgate.core.otel.setup_otel_logging", return_value=False):
                with patch("ticketgate.main.init_db"):
                    with TestClient(app) as test_client:
                        yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def gatekeeper_session(mock_redis) -> str:
    """A valid gatekeeper session token"""
    token = "gk-session-token"
    redis_module.set_gatekeeper_session(token, GATEKEEPER)
    return token

