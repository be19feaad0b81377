"""
Database module for the orchestrator.

Provides async SQLAlchemy support with PostgreSQL and SQLite.
"""
from __future__ import annotations

from orchestra.db.database import (
    Base,
    get_session_factory,
    init_db,
    close_db,
)
from orchestra.db.models import OrchestrationStatusRow

__all__ = [
    "Base",
    "get_session_factory",
    "init_db",
    "close_db",
    "OrchestrationStatusRow",
]
