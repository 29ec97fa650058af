"""API routers package"""
from app.routers.auth import router as auth_router
from app.routers.lands import router as lands_router
from app.routers.negotiations import router as negotiations_router
from app.routers.transactions import router as transactions_router
from app.routers.users import router as users_router

__all__ = [
    "auth_router",
    "lands_router",
    "negotiations_router",
    "transactions_router",
    "users_router",
]
