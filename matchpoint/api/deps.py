"""Shared API dependencies: single import point for all routers.

Re-exports database session and authentication dependencies so that router
modules can import everything they need from one place::

    from matchpoint.api.deps import get_db, get_current_user
"""

from matchpoint.auth.dependencies import get_current_user, require_staff
from matchpoint.database import get_db, get_session_factory

__all__ = [
    "get_db",
    "get_session_factory",
    "get_current_user",
    "require_staff",
]
