"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = await create_store(settings.database)
  post = await store.get_social_post("p1")
"""
from database.models import (
    AuditLogRow, Base, BusinessRow, EventSyncRow, ListingRow, SocialAccountRow,
    SocialPostRow, SpaceRequestRow, WebhookDeliveryRow, WebhookEndpointRow,
)
from database.session import Database
from database.store_base import ANY_STATUS, BaseStore
from database.store import SqlStore
from database.store_memory import InMemoryStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "AuditLogRow", "Base", "BusinessRow", "EventSyncRow", "ListingRow",
    "SocialAccountRow", "SocialPostRow", "SpaceRequestRow",
    "WebhookDeliveryRow", "WebhookEndpointRow",
    # Session management
    "Database",
    # Store interface
    "ANY_STATUS", "BaseStore",
    # Store backends
    "SqlStore", "InMemoryStore",
    # Factory
    "create_store",
]
