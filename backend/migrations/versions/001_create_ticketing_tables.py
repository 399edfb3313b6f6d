"""Create ticketing tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SUCCESS_ONLY = sa.text("scan_result = 'SUCCESS'")


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def _create_missing_indexes(inspector, table, indexes):
    """Create indexes that are not present yet: {name: (columns, unique, kwargs)}"""
    existing = [idx['name'] for idx in inspector.get_indexes(table)]
    for name, (columns, unique, kwargs) in indexes.items():
        if name not in existing:
            op.create_index(name, table, columns, unique=unique, **kwargs)


PURCHASE_INDEXES = {
    'ix_purchases_id': (['id'], False, {}),
    'ix_purchases_purchase_id': (['purchase_id'], True, {}),
    'ix_purchases_ticket_id': (['ticket_id'], False, {}),
    'ix_purchases_buyer': (['buyer'], False, {}),
    'ix_purchases_seller': (['seller'], False, {}),
    'ix_purchases_purchase_tx_hash': (['purchase_tx_hash'], True, {}),
    'ix_purchases_download_tx_hash': (['download_tx_hash'], False, {}),
    'ix_purchases_status': (['status'], False, {}),
    'ix_purchases_purchase_date': (['purchase_date'], False, {}),
}

TICKET_EVENT_INDEXES = {
    'ix_ticket_events_id': (['id'], False, {}),
    'ix_ticket_events_ticket_id': (['ticket_id'], True, {}),
    'ix_ticket_events_seller': (['seller'], False, {}),
    'ix_ticket_events_event_name': (['event_name'], False, {}),
}

ENTRY_LOG_INDEXES = {
    'ix_entry_logs_id': (['id'], False, {}),
    'ix_entry_logs_ticket_id': (['ticket_id'], False, {}),
    'ix_entry_logs_scan_time': (['scan_time'], False, {}),
    'ix_entry_logs_ticket_scan_time': (['ticket_id', 'scan_time'], False, {}),
    'ix_entry_logs_result_scan_time': (['scan_result', 'scan_time'], False, {}),
    'uq_entry_logs_ticket_success': (
        ['ticket_id'], True, {'postgresql_where': SUCCESS_ONLY, 'sqlite_where': SUCCESS_ONLY}
    ),
}

INDEXER_CURSOR_INDEXES = {
    'ix_indexer_cursors_id': (['id'], False, {}),
    'ix_indexer_cursors_contract_address': (['contract_address'], True, {}),
}

LEDGER_EVENT_INDEXES = {
    'ix_ledger_events_id': (['id'], False, {}),
    'ix_ledger_events_tx_hash': (['tx_hash'], False, {}),
    'ix_ledger_events_event_type': (['event_type'], False, {}),
    'ix_ledger_events_block_number': (['block_number'], False, {}),
    'ix_ledger_events_ticket_id': (['ticket_id'], False, {}),
}


def upgrade() -> None:
    # Tables may already exist if they were created by Base.metadata.create_all
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'purchases' not in existing_tables:
        op.create_table(
            'purchases',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('purchase_id', sa.String(length=100), nullable=False),
            sa.Column('ticket_id', sa.BigInteger(), nullable=False),
            sa.Column('contract_address', sa.String(length=42), nullable=True),
            sa.Column('buyer', sa.String(length=42), nullable=False),
            sa.Column('seller', sa.String(length=42), nullable=True),
            sa.Column('price', sa.String(length=78), nullable=True),
            sa.Column('purchase_tx_hash', sa.String(length=66), nullable=False),
            sa.Column('download_tx_hash', sa.String(length=66), nullable=True),
            sa.Column('refund_tx_hash', sa.String(length=66), nullable=True),
            sa.Column('event_name', sa.String(length=200), nullable=True),
            sa.Column('organizer', sa.String(length=100), nullable=True),
            sa.Column('event_date', sa.DateTime(timezone=True), nullable=True),
            sa.Column('poster_url', sa.String(length=500), nullable=True),
            sa.Column('ticket_image_url', sa.String(length=500), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='purchased'),
            sa.Column('purchase_date', sa.DateTime(timezone=True), nullable=False),
            sa.Column('download_date', sa.DateTime(timezone=True), nullable=True),
            sa.Column('refund_date', sa.DateTime(timezone=True), nullable=True),
            sa.Column('refund_amount', sa.String(length=78), nullable=True),
            sa.Column('buyer_info', sa.JSON(), nullable=True),
            sa.Column('purchase_block_number', sa.BigInteger(), nullable=True),
            sa.Column('download_block_number', sa.BigInteger(), nullable=True),
            sa.Column('refund_block_number', sa.BigInteger(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id')
        )

    if 'ticket_events' not in existing_tables:
        op.create_table(
            'ticket_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('ticket_id', sa.BigInteger(), nullable=False),
            sa.Column('contract_address', sa.String(length=42), nullable=False),
            sa.Column('seller', sa.String(length=42), nullable=False),
            sa.Column('price', sa.String(length=78), nullable=False),
            sa.Column('event_date', sa.DateTime(timezone=True), nullable=True),
            sa.Column('sale_end_date', sa.DateTime(timezone=True), nullable=True),
            sa.Column('event_name', sa.String(length=200), nullable=False),
            sa.Column('organizer', sa.String(length=100), nullable=True),
            sa.Column('poster_url', sa.String(length=500), nullable=True),
            sa.Column('ticket_image_url', sa.String(length=500), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
            sa.Column('is_sold', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('is_downloaded', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('is_refunded', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('buyer', sa.String(length=42), nullable=True),
            sa.Column('created_block_number', sa.BigInteger(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id')
        )

    if 'entry_logs' not in existing_tables:
        op.create_table(
            'entry_logs',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('ticket_id', sa.BigInteger(), nullable=False),
            sa.Column('holder_address', sa.String(length=42), nullable=True),
            sa.Column('event_name', sa.String(length=200), nullable=True),
            sa.Column('scan_time', sa.DateTime(timezone=True), nullable=False),
            sa.Column('gatekeeper_address', sa.String(length=42), nullable=True),
            sa.Column('scan_result', sa.String(length=20), nullable=False),
            sa.Column('reason', sa.String(length=255), nullable=True),
            sa.Column('ip_address', sa.String(length=64), nullable=True),
            sa.Column('user_agent', sa.String(length=512), nullable=True),
            sa.Column('location', sa.JSON(), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )

    if 'indexer_cursors' not in existing_tables:
        op.create_table(
            'indexer_cursors',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('contract_address', sa.String(length=42), nullable=False),
            sa.Column('last_processed_block', sa.BigInteger(), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )

    if 'ledger_events' not in existing_tables:
        op.create_table(
            'ledger_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('tx_hash', sa.String(length=66), nullable=False),
            sa.Column('log_index', sa.Integer(), nullable=False),
            sa.Column('event_type', sa.String(length=50), nullable=False),
            sa.Column('block_number', sa.BigInteger(), nullable=False),
            sa.Column('ticket_id', sa.BigInteger(), nullable=True),
            sa.Column('processed', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('tx_hash', 'log_index', name='uq_ledger_events_tx_log')
        )

    # Refresh after creating tables, then fill in any missing indexes
    inspector = inspect(conn)
    _create_missing_indexes(inspector, 'purchases', PURCHASE_INDEXES)
    _create_missing_indexes(inspector, 'ticket_events', TICKET_EVENT_INDEXES)
    _create_missing_indexes(inspector, 'entry_logs', ENTRY_LOG_INDEXES)
    _create_missing_indexes(inspector, 'indexer_cursors', INDEXER_CURSOR_INDEXES)
    _create_missing_indexes(inspector, 'ledger_events', LEDGER_EVENT_INDEXES)


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    for table in ('ledger_events', 'indexer_cursors', 'entry_logs', 'ticket_events', 'purchases'):
        if table in existing_tables:
            op.drop_table(table)
