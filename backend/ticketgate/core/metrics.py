"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, REGISTRY

# Indexer metrics
try:
    indexer_poll_counter = Counter(
        'ticketgate_indexer_polls_total',
        'Total number of indexer poll cycles',
        ['status']
    )
except ValueError:
    indexer_poll_counter = REGISTRY._names_to_collectors.get('ticketgate_indexer_polls_total')

try:
    indexer_events_counter = Counter(
        'ticketgate_indexer_events_total',
        'Total number of ledger lifecycle events handled by the indexer',
        ['event_type', 'status']
    )
except ValueError:
    indexer_events_counter = REGISTRY._names_to_collectors.get('ticketgate_indexer_events_total')

try:
    purchase_corrections_counter = Counter(
        'ticketgate_purchase_ticket_id_corrections_total',
        'Total number of purchase records whose ticket id was corrected from the ledger'
    )
except ValueError:
    purchase_corrections_counter = REGISTRY._names_to_collectors.get('ticketgate_purchase_ticket_id_corrections_total')

try:
    indexer_last_block_gauge = Gauge(
        'ticketgate_indexer_last_processed_block',
        'Last ledger block fully processed by the indexer'
    )
except ValueError:
    indexer_last_block_gauge = REGISTRY._names_to_collectors.get('ticketgate_indexer_last_processed_block')

# Entry admission metrics
try:
    admission_decisions_counter = Counter(
        'ticketgate_admission_decisions_total',
        'Total number of entry admission decisions',
        ['decision']
    )
except ValueError:
    admission_decisions_counter = REGISTRY._names_to_collectors.get('ticketgate_admission_decisions_total')

try:
    admission_write_conflicts_counter = Counter(
        'ticketgate_admission_write_conflicts_total',
        'Concurrent first-admission attempts that lost the uniqueness guard'
    )
except ValueError:
    admission_write_conflicts_counter = REGISTRY._names_to_collectors.get('ticketgate_admission_write_conflicts_total')
