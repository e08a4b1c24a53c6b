"""
Threadline Database - asyncpg-based data access.

- Database: shared connection pool manager (one per app)
"""

from .database import Database

__all__ = ["Database"]
