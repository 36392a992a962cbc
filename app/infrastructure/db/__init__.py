"""
Database Infrastructure Package for CreditFlow

Exports the database handle. FastAPI dependency providers live in
``app.infrastructure.db.dependencies`` and are imported from there
(they depend on the services, which depend on this package).
"""

from app.infrastructure.db.database import (
    Database,
    is_retryable_error,
    normalize_database_url,
)


__all__ = [
    "Database",
    "is_retryable_error",
    "normalize_database_url",
]
