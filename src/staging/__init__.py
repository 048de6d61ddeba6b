"""
Staging: message staging engine for integration interfaces.

A source batch (a delimited file, a query result) is split into
single-record messages held in a durable staging store. Every destination
adapter instance subscribed to the interface then receives each message
independently, with leases, retries and dead-lettering per message.

Subpackages:
    parsing    - Delimited text parser, escaping and column type inference
    store      - Staging store, subscription registry and transport lock backends (JSON files, SQL)
    adapters   - Source/destination adapter capabilities and the CSV file adapter
    delivery   - Delivery loop, retry policy and stale-lease reaper
    transport  - Transport lock renewal and startup reconciliation for managed queues

Architecture:
    Source → DebatchingPipeline → StagingStore (N messages) → SubscriptionRegistry (M subscribers)
                                                                      ↓
                                          DeliveryWorker (lease per message) → Destination
                                                 ↓ (on failure)
                                          Error → (retry delay) → DeliveryWorker
                                                 ↓ (exhausted / non-retriable)
                                              DeadLetter

Dependencies:
    - core.*: Logging, errors and utilities
    - sqlalchemy: SQL store backend
    - pydantic: Message payload validation
    - prometheus-client: Metrics
    - aiohttp: Health endpoints
"""

__version__ = "0.1.0"
