"""
Prometheus metrics for the Trade Sync Service
"""

from prometheus_client import CollectorRegistry, Counter, Histogram

# Custom registry to avoid conflicts with the default process collectors
sync_registry = CollectorRegistry()

exchange_requests = Counter(
    'tradesync_exchange_requests_total',
    'Total signed requests sent to the exchange',
    ['endpoint', 'status'],
    registry=sync_registry,
)
exchange_request_duration = Histogram(
    'tradesync_exchange_request_duration_seconds',
    'Exchange request duration',
    ['endpoint'],
    registry=sync_registry,
)
trades_served = Counter(
    'tradesync_trades_served_total',
    'Trade listings served by source',
    ['source'],
    registry=sync_registry,
)
accounts_connected = Counter(
    'tradesync_accounts_connected_total',
    'Successful account connections',
    registry=sync_registry,
)
vault_errors = Counter(
    'tradesync_vault_errors_total',
    'Credential vault failures',
    ['kind'],
    registry=sync_registry,
)
