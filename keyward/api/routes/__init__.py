"""
API Routes for KEYWARD.
"""
from .auth import router as auth_router
from .user import router as user_router
from .password_reset import router as password_reset_router
from .health import router as health_router

__all__ = [
    "auth_router",
    "user_router",
    "password_reset_router",
    "health_router",
]
