"""
HTTP API for the health records gateway.

Routers are grouped by caller: account self-service, patient, requester
(doctor/hospital), emergency and admin.
"""

from .admin import admin_router
from .auth import auth_router
from .emergency import emergency_router
from .patient import patient_router
from .requester import requester_router
from .user import user_router
from .dependencies import get_current_account, require_admin, require_role  # re-export

__all__ = [
    "admin_router",
    "auth_router",
    "emergency_router",
    "patient_router",
    "requester_router",
    "user_router",
    "get_current_account",
    "require_admin",
    "require_role",
]
