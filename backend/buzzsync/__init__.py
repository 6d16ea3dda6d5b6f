"""
BuzzSync Backend — Application Package Initializer
==================================================

What: Data synchronization and transactional access layer for the venue
      discovery mobile client.
Who:  Imported by uvicorn (`buzzsync.main:app`), Alembic, and pytest.

Architecture Note:

    ┌──────────────────────────────────────────────┐
    │            Routes (HTTP contracts)           │  ← status codes, query params
    ├──────────────────────────────────────────────┤
    │  ChangeFeed │ GeoSearch │ TransactionGateway │  ← stateless request handlers
    ├──────────────────────────────────────────────┤
    │          ConnectionPoolManager               │  ← the only shared mutable state
    ├──────────────────────────────────────────────┤
    │        Relational storage (PostgreSQL)       │
    └──────────────────────────────────────────────┘

    Services never reach for a global engine. The pool is created by the
    application factory, stored on `app.state.pool`, and handed to each
    service through FastAPI dependencies.
"""

__version__ = "1.0.0"
