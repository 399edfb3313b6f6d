"""Event indexer tests"""
import pytest
from unittest.mock import patch

from ticketgate.core.errors import LedgerUnavailableError
from ticketgate.db.redis import indexer_lock_key
from ticketgate.models.indexer_cursor import IndexerCursor
from ticketgate.models.ledger_event_log import LedgerEventLog
from ticketgate.models.purchase import Purchase
from ticketgate.models.ticket_event import TicketEvent
from ticketgate.services import indexer_service
from ticketgate.services.indexer_service import EventIndexer
from ticketgate.services.ledger import PURCHASED
from ticketgate.utils.timeutils import ensure_utc, from_epoch_seconds

from conftest import BUYER, CONTRACT_ADDRESS, OTHER_BUYER, SELLER, TestSessionLocal, tx_hash


def _persisted_cursor(db_session):
    db_session.expire_all()
    cursor = db_session.query(IndexerCursor).filter(IndexerCursor.contract_address == CONTRACT_ADDRESS).first()
    return cursor.last_processed_block if cursor else None


@pytest.mark.critical
class TestPolling:
    """Cursor handling and batch boundaries"""

    @pytest.mark.asyncio
    async def test_poll_is_noop_when_cursor_is_at_head(self, indexer, fake_ledger, db_session):
        """Cursor at block 100 equal to the ledger head: nothing fetched, cursor stays"""
        db_session.add(IndexerCursor(contract_address=CONTRACT_ADDRESS, last_processed_block=100))
        db_session.commit()
        fake_ledger.head = 100

        await indexer.start()
        await indexer.stop()
        advanced = await indexer.poll()

        assert advanced == 0
        assert fake_ledger.get_events_calls == []
        assert indexer.last_processed_block == 100
        assert _persisted_cursor(db_session) == 100

    @pytest.mark.asyncio
    async def test_first_poll_initializes_cursor_from_start_block(self, indexer, fake_ledger, db_session):
        fake_ledger.create_ticket(1, block=3, tx=1)

        await indexer.poll()

        assert indexer.last_processed_block == 3
        assert _persisted_cursor(db_session) == 3
        assert db_session.query(TicketEvent).count() == 1

    @pytest.mark.asyncio
    async def test_first_poll_without_start_block_begins_at_head(self, db_session, fake_ledger):
        fake_ledger.create_ticket(1, block=7, tx=1)
        indexer = EventIndexer(ledger=fake_ledger, session_factory=TestSessionLocal, use_lock=False)
        indexer.start_block = None

        advanced = await indexer.poll()

        assert advanced == 0
        assert _persisted_cursor(db_session) == 7
        assert db_session.query(TicketEvent).count() == 0

    @pytest.mark.asyncio
    async def test_range_is_split_into_batches(self, db_session, fake_ledger):
        indexer = EventIndexer(
            ledger=fake_ledger, session_factory=TestSessionLocal, batch_size=10, start_block=1, use_lock=False
        )
        fake_ledger.create_ticket(1, block=4, tx=1)
        fake_ledger.create_ticket(2, block=25, tx=2)

        await indexer.poll()

        ranges = sorted({(start, end) for _, start, end in fake_ledger.get_events_calls})
        assert ranges == [(1, 10), (11, 20), (21, 25)]
        assert _persisted_cursor(db_session) == 25
        assert db_session.query(TicketEvent).count() == 2

    @pytest.mark.asyncio
    async def test_cursor_stays_after_last_complete_batch_on_ledger_failure(self, db_session, fake_ledger):
        indexer = EventIndexer(
            ledger=fake_ledger, session_factory=TestSessionLocal, batch_size=10, start_block=1, use_lock=False
        )
        fake_ledger.create_ticket(1, block=4, tx=1)
        fake_ledger.create_ticket(2, block=15, tx=2)

        original_get_events = fake_ledger.get_events

        def flaky_get_events(event_type, from_block, to_block):
            if from_block == 11:
                raise LedgerUnavailableError("timeout")
            return original_get_events(event_type, from_block, to_block)

        with patch.object(fake_ledger, "get_events", side_effect=flaky_get_events):
            with pytest.raises(LedgerUnavailableError):
                await indexer.poll()

        assert indexer.last_processed_block == 10
        assert _persisted_cursor(db_session) == 10

        await indexer.poll()
        assert _persisted_cursor(db_session) == 15
        assert db_session.query(TicketEvent).count() == 2

    @pytest.mark.asyncio
    async def test_restart_resumes_from_persisted_cursor(self, indexer, fake_ledger, db_session):
        fake_ledger.create_ticket(1, block=10, tx=1)
        await indexer.poll()

        # Blocks produced while the process was down
        fake_ledger.create_ticket(2, block=12, tx=2)
        fake_ledger.get_events_calls.clear()

        restarted = EventIndexer(ledger=fake_ledger, session_factory=TestSessionLocal, start_block=1, use_lock=False)
        await restarted.start()
        await restarted.stop()
        assert restarted.last_processed_block == 10

        await restarted.poll()

        assert {start for _, start, _ in fake_ledger.get_events_calls} == {11}
        assert db_session.query(TicketEvent).count() == 2
        assert _persisted_cursor(db_session) == 12

    @pytest.mark.asyncio
    async def test_ledger_outage_leaves_cursor_untouched(self, indexer, fake_ledger, db_session):
        fake_ledger.create_ticket(1, block=5, tx=1)
        await indexer.run_cycle()
        assert _persisted_cursor(db_session) == 5

        fake_ledger.create_ticket(2, block=9, tx=2)
        fake_ledger.unavailable = True
        await indexer.run_cycle()  # must not raise

        assert indexer.last_processed_block == 5
        assert _persisted_cursor(db_session) == 5

        fake_ledger.unavailable = False
        await indexer.run_cycle()
        assert _persisted_cursor(db_session) == 9
        assert db_session.query(TicketEvent).count() == 2


@pytest.mark.critical
class TestIdempotency:
    """Replayed ranges must not change the store"""

    @pytest.mark.asyncio
    async def test_replayed_range_changes_nothing(self, indexer, fake_ledger, db_session, make_purchase):
        purchase = make_purchase(ticket_id=1, tx=11)
        fake_ledger.create_ticket(1, block=2, tx=10)
        fake_ledger.purchase_ticket(1, block=3, tx=11)
        fake_ledger.download_ticket(1, block=4, tx=12)

        await indexer.poll()
        db_session.refresh(purchase)
        snapshot = (purchase.ticket_id, purchase.status, purchase.download_tx_hash, purchase.updated_at)

        outcomes = await indexer.process_range(1, 4)

        db_session.refresh(purchase)
        assert outcomes["skipped"] == 3
        assert outcomes["applied"] == 0
        assert (purchase.ticket_id, purchase.status, purchase.download_tx_hash, purchase.updated_at) == snapshot
        assert db_session.query(Purchase).count() == 1
        assert db_session.query(TicketEvent).count() == 1
        assert db_session.query(LedgerEventLog).count() == 3
        assert fake_ledger.get_ticket_calls == [1]

    @pytest.mark.asyncio
    async def test_handlers_are_idempotent_without_event_log(self, indexer, fake_ledger, db_session, make_purchase):
        """Natural-key checks hold even if the processed-event log is lost"""
        purchase = make_purchase(ticket_id=1, tx=11)
        fake_ledger.create_ticket(1, block=2, tx=10)
        fake_ledger.purchase_ticket(1, block=3, tx=11)
        fake_ledger.refund_ticket(1, block=4, tx=13)
        await indexer.poll()

        db_session.query(LedgerEventLog).delete()
        db_session.commit()

        outcomes = await indexer.process_range(1, 4)

        db_session.refresh(purchase)
        assert outcomes["applied"] == 0
        assert purchase.status == "refunded"
        assert purchase.refund_tx_hash == tx_hash(13)
        assert db_session.query(TicketEvent).count() == 1
        assert fake_ledger.get_ticket_calls == [1]


@pytest.mark.critical
class TestPurchaseReconciliation:
    """Purchased events correct the off-chain record by tx hash"""

    @pytest.mark.asyncio
    async def test_wrong_ticket_id_is_corrected(self, indexer, fake_ledger, db_session, make_purchase):
        """Record written optimistically with ticket 6, ledger says 7"""
        purchase = make_purchase(ticket_id=6, tx=100)
        fake_ledger.purchase_ticket(7, block=5, tx=100)

        await indexer.poll()

        db_session.refresh(purchase)
        assert purchase.ticket_id == 7
        assert purchase.purchase_block_number == 5
        assert db_session.query(Purchase).count() == 1

    @pytest.mark.asyncio
    async def test_correction_keyed_on_tx_hash_case_insensitively(self, indexer, fake_ledger, db_session, make_purchase):
        purchase = make_purchase(ticket_id=8, tx=0)
        purchase.purchase_tx_hash = "0xabc"
        db_session.commit()
        fake_ledger.purchase_ticket(9, block=2, tx=0)
        fake_ledger.events[PURCHASED][-1]["transactionHash"] = "0xABC"

        await indexer.poll()

        db_session.expire_all()
        purchases = db_session.query(Purchase).all()
        assert len(purchases) == 1
        assert purchases[0].ticket_id == 9
        assert purchases[0].purchase_tx_hash == "0xabc"

    @pytest.mark.asyncio
    async def test_falls_back_to_ticket_id(self, indexer, fake_ledger, db_session, make_purchase):
        purchase = make_purchase(ticket_id=3, tx=500)
        fake_ledger.purchase_ticket(3, block=4, tx=501)

        await indexer.poll()

        db_session.refresh(purchase)
        assert purchase.ticket_id == 3
        assert purchase.purchase_tx_hash == tx_hash(500)
        assert purchase.purchase_block_number == 4

    @pytest.mark.asyncio
    async def test_unknown_purchase_is_not_created(self, indexer, fake_ledger, db_session):
        fake_ledger.create_ticket(4, block=1, tx=1)
        fake_ledger.purchase_ticket(4, block=2, tx=2)

        await indexer.poll()

        assert db_session.query(Purchase).count() == 0
        ticket_event = db_session.query(TicketEvent).filter_by(ticket_id=4).one()
        assert ticket_event.is_sold is True
        assert ticket_event.buyer == BUYER

    @pytest.mark.asyncio
    async def test_status_past_purchased_is_not_regressed(self, indexer, fake_ledger, db_session, make_purchase):
        purchase = make_purchase(ticket_id=5, tx=50, status="downloaded")
        fake_ledger.purchase_ticket(5, block=2, tx=50)

        await indexer.poll()

        db_session.refresh(purchase)
        assert purchase.status == "downloaded"


@pytest.mark.high
class TestLifecycleHandlers:
    """Created, Downloaded and Refunded handlers"""

    @pytest.mark.asyncio
    async def test_created_materializes_ticket_event(self, indexer, fake_ledger, db_session):
        fake_ledger.create_ticket(21, block=2, tx=1, event_name="Jazz Night", price=5 * 10 ** 16)

        await indexer.poll()

        ticket_event = db_session.query(TicketEvent).filter_by(ticket_id=21).one()
        assert ticket_event.event_name == "Jazz Night"
        assert ticket_event.organizer == "Fest Org"
        assert ticket_event.price == str(5 * 10 ** 16)
        assert ticket_event.seller == SELLER
        assert ticket_event.buyer is None
        assert ticket_event.contract_address == CONTRACT_ADDRESS
        assert ticket_event.created_block_number == 2
        assert ensure_utc(ticket_event.event_date) == from_epoch_seconds(1767225600)

    @pytest.mark.asyncio
    async def test_downloaded_transitions_purchase(self, indexer, fake_ledger, db_session, make_purchase):
        purchase = make_purchase(ticket_id=1, tx=11)
        fake_ledger.create_ticket(1, block=1, tx=10)
        fake_ledger.purchase_ticket(1, block=2, tx=11)
        fake_ledger.download_ticket(1, block=3, tx=12)

        await indexer.poll()

        db_session.refresh(purchase)
        assert purchase.status == "downloaded"
        assert purchase.download_tx_hash == tx_hash(12)
        assert purchase.download_block_number == 3
        assert purchase.download_date is not None
        assert db_session.query(TicketEvent).filter_by(ticket_id=1).one().is_downloaded is True

    @pytest.mark.asyncio
    async def test_downloaded_matches_buyer(self, indexer, fake_ledger, db_session, make_purchase):
        older = make_purchase(ticket_id=2, tx=20, buyer=OTHER_BUYER)
        current = make_purchase(ticket_id=2, tx=21, buyer=BUYER)
        fake_ledger.download_ticket(2, block=3, tx=22, buyer=BUYER)

        await indexer.poll()

        db_session.refresh(older)
        db_session.refresh(current)
        assert current.status == "downloaded"
        assert older.status == "purchased"

    @pytest.mark.asyncio
    async def test_refunded_transitions_purchase_and_cancels_listing(self, indexer, fake_ledger, db_session, make_purchase):
        purchase = make_purchase(ticket_id=1, tx=11)
        fake_ledger.create_ticket(1, block=1, tx=10)
        fake_ledger.purchase_ticket(1, block=2, tx=11)
        fake_ledger.refund_ticket(1, block=6, tx=13, amount=9 * 10 ** 16)

        await indexer.poll()

        db_session.refresh(purchase)
        assert purchase.status == "refunded"
        assert purchase.refund_amount == str(9 * 10 ** 16)
        assert purchase.refund_block_number == 6
        ticket_event = db_session.query(TicketEvent).filter_by(ticket_id=1).one()
        assert ticket_event.is_refunded is True
        assert ticket_event.status == "cancelled"

    @pytest.mark.asyncio
    async def test_events_in_one_block_apply_in_log_order(self, indexer, fake_ledger, db_session, make_purchase):
        purchase = make_purchase(ticket_id=1, tx=11)
        fake_ledger.purchase_ticket(1, block=2, tx=11, log_index=0)
        fake_ledger.download_ticket(1, block=4, tx=12, log_index=3)
        fake_ledger.refund_ticket(1, block=4, tx=13, log_index=1)

        await indexer.poll()

        db_session.refresh(purchase)
        # Refund (log 1) then download (log 3) in block 4
        assert purchase.status == "downloaded"
        payload_order = [
            row.tx_hash for row in db_session.query(LedgerEventLog).order_by(LedgerEventLog.id).all()
        ]
        assert payload_order == [tx_hash(11), tx_hash(13), tx_hash(12)]


@pytest.mark.high
class TestFailureHandling:
    """Bad events are skipped without blocking the range"""

    @pytest.mark.asyncio
    async def test_malformed_event_is_skipped_and_cursor_advances(self, indexer, fake_ledger, db_session):
        fake_ledger.create_ticket(1, block=2, tx=1)
        fake_ledger.add_event(PURCHASED, block=3, args={"buyer": BUYER, "price": 1}, tx=2)

        await indexer.poll()

        assert _persisted_cursor(db_session) == 3
        assert db_session.query(TicketEvent).count() == 1
        assert db_session.query(LedgerEventLog).count() == 1

    @pytest.mark.asyncio
    async def test_handler_error_is_recorded_and_retried_on_rescan(self, indexer, fake_ledger, db_session, make_purchase):
        purchase = make_purchase(ticket_id=6, tx=100)
        fake_ledger.purchase_ticket(7, block=3, tx=100)

        def boom(event, db, ledger):
            raise RuntimeError("store exploded")

        with patch.dict(indexer_service.EVENT_HANDLERS, {PURCHASED: boom}):
            await indexer.poll()

        entry = db_session.query(LedgerEventLog).one()
        assert entry.processed is False
        assert "store exploded" in entry.error_message
        assert _persisted_cursor(db_session) == 3
        db_session.refresh(purchase)
        assert purchase.ticket_id == 6

        outcomes = await indexer.process_range(3, 3)

        db_session.expire_all()
        entry = db_session.query(LedgerEventLog).one()
        assert outcomes["applied"] == 1
        assert entry.processed is True
        assert entry.error_message is None
        assert db_session.query(Purchase).one().ticket_id == 7


@pytest.mark.medium
class TestLifecycleAndLock:
    """start()/stop(), status and the poll lock"""

    @pytest.mark.asyncio
    async def test_status_reports_running_and_cursor(self, indexer, fake_ledger):
        assert indexer.status() == {
            "running": False,
            "last_processed_block": None,
            "ledger_endpoint": "http://fake-ledger:8545",
            "contract_address": CONTRACT_ADDRESS,
        }

        await indexer.start()
        assert indexer.status()["running"] is True
        await indexer.stop()
        assert indexer.status()["running"] is False

    @pytest.mark.asyncio
    async def test_cycle_skipped_while_lock_is_held(self, db_session, fake_ledger, mock_redis):
        fake_ledger.create_ticket(1, block=2, tx=1)
        indexer = EventIndexer(ledger=fake_ledger, session_factory=TestSessionLocal, start_block=1, use_lock=True)
        mock_redis.set(indexer_lock_key(CONTRACT_ADDRESS), "1")

        await indexer.run_cycle()

        assert fake_ledger.get_events_calls == []
        assert _persisted_cursor(db_session) is None

        mock_redis.delete(indexer_lock_key(CONTRACT_ADDRESS))
        await indexer.run_cycle()

        assert _persisted_cursor(db_session) == 2
        assert mock_redis.get(indexer_lock_key(CONTRACT_ADDRESS)) is None

    @pytest.mark.asyncio
    async def test_cycle_skipped_when_redis_is_unreachable(self, indexer, fake_ledger, db_session):
        indexer.use_lock = True
        fake_ledger.create_ticket(1, block=2, tx=1)

        with patch.object(indexer_service, "acquire_lock", side_effect=ConnectionError("redis down")):
            await indexer.run_cycle()

        assert fake_ledger.get_events_calls == []
        assert _persisted_cursor(db_session) is None

    @pytest.mark.asyncio
    async def test_lock_is_extended_between_batches(self, db_session, fake_ledger, mock_redis):
        indexer = EventIndexer(
            ledger=fake_ledger, session_factory=TestSessionLocal, batch_size=10, start_block=1, use_lock=True
        )
        fake_ledger.create_ticket(1, block=4, tx=1)
        fake_ledger.create_ticket(2, block=25, tx=2)

        with patch.object(indexer_service, "extend_lock", wraps=indexer_service.extend_lock) as extend:
            await indexer.run_cycle()

        # Three batches, extended before the second and third
        assert extend.call_count == 2
        assert _persisted_cursor(db_session) == 25
        assert mock_redis.get(indexer_lock_key(CONTRACT_ADDRESS)) is None

    @pytest.mark.asyncio
    async def test_lost_lock_stops_cycle_and_keeps_new_owner_lock(self, db_session, fake_ledger, mock_redis):
        indexer = EventIndexer(
            ledger=fake_ledger, session_factory=TestSessionLocal, batch_size=10, start_block=1, use_lock=True
        )
        fake_ledger.create_ticket(1, block=4, tx=1)
        fake_ledger.create_ticket(2, block=25, tx=2)
        lock_key = indexer_lock_key(CONTRACT_ADDRESS)
        original_get_events = fake_ledger.get_events

        def slow_get_events(event_type, from_block, to_block):
            if from_block == 11:
                # Our lock expired and another instance took it over
                mock_redis.set(lock_key, "other-instance")
            return original_get_events(event_type, from_block, to_block)

        with patch.object(fake_ledger, "get_events", side_effect=slow_get_events):
            await indexer.run_cycle()

        assert _persisted_cursor(db_session) == 20
        assert db_session.query(TicketEvent).count() == 1
        assert mock_redis.get(lock_key) == "other-instance"
