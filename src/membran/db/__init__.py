"""Database pool, schema constants, and the PostgreSQL-backed store."""

from membran.db.pool import close_pool, get_pool

__all__ = ["get_pool", "close_pool"]
