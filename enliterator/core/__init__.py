"""
Enliterator Pipeline - Core Package
===================================

Configuration, persistence, models and schemas.
"""

from enliterator.core.config import settings
from enliterator.core.database import Base, get_db_session

__all__ = ["Base", "get_db_session", "settings"]
