# apps/backend/academy/routers/__init__.py
from .admin import router as admin_router
from .courses import router as courses_router
from .payments import router as payments_router
from .user import router as user_router

__all__ = ["admin_router", "courses_router", "payments_router", "user_router"]
