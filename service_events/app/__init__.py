"""
Event distribution package.

Topics, subscriptions and the delivery runtime that moves events between
independently deployed services:

- app.topics: Topic definitions and payload schemas.
- app.runtime: At-least-once delivery with retry and dead-lettering.
- app.store: In-memory and Redis event stores.
- app.publisher: Publishing after a local commit.
- app.consumers: Idempotent identity consumers.
- app.main: Lifecycle wiring from configuration.

Handlers must be idempotent. Delivery is at-least-once, so any handler may
see the same event again after a crash or a lost acknowledgement.
"""
