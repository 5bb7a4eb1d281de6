"""
Core package — cross-cutting concerns.

Modules:
    config        — environment variables & settings
    logging       — structured JSON logging
    middleware    — request correlation IDs and timing
    errors        — exception hierarchy & handlers
    health        — health check aggregation
    database      — async PostgreSQL engine for the secondary store
    dependencies  — engine construction and FastAPI wiring
"""
