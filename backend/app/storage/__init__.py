"""
storage — Persistence routing for the alert engine.

Sub-modules:
    operations      — StorageOp descriptors + canonical record shape
    source_router   — primary-first / secondary-fallback routing
    rest_backend    — primary: hosted backend service (httpx)
    sql_backend     — secondary: PostgreSQL replica (SQLAlchemy async)
    memory_backend  — in-process store for development and tests
    tables          — relational layout of the secondary store
"""
