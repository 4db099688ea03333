"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — structured JSON logging
    errors      — exception hierarchy & handlers
    middleware  — request logging with request ids
    health      — health check aggregation
    database    — async SQLAlchemy engine (SQLite by default)
"""
