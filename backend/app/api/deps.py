"""Shared API dependencies — single import point for all routers.

Re-exports database session, settings and billing collaborators so that
router modules can import everything they need from one place::

    from app.api.deps import get_db, get_gateway, get_record_store
"""

from app.billing.dependencies import get_gateway, get_record_store, get_settings
from app.database import get_db

__all__ = [
    "get_db",
    "get_gateway",
    "get_record_store",
    "get_settings",
]
