"""Database package for activity ingestion service."""

from .database import get_db
from .activities import ActivityRepository

__all__ = ['get_db', 'ActivityRepository']
