"""Database configuration, models, and session management."""

from citypulse.database.config import engine, Base, get_db, utcnow
from citypulse.database import models

__all__ = ["engine", "Base", "get_db", "utcnow", "models"]
