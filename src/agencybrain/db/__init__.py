"""Database module for SQLite persistence.

Provides:
- Database connection management
- Schema initialization for staff, training, challenge and call tables
- Repository functions for the call scoring tables
"""

from agencybrain.db.database import generate_id, get_db, init_db, now_iso

__all__ = ["generate_id", "get_db", "init_db", "now_iso"]
