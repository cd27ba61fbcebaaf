"""
Routes package for the Momentum API.
Import all routers here for use in main.py.
"""

from routes.auth import router as auth_router
from routes.carts import router as carts_router
from routes.cart_save import router as cart_save_router
from routes.checkout import router as checkout_router
from routes.churn import router as churn_router
from routes.delivery import router as delivery_router
from routes.events import router as events_router
from routes.voice_recovery import router as voice_recovery_router

__all__ = [
    "auth_router",
    "carts_router",
    "cart_save_router",
    "checkout_router",
    "churn_router",
    "delivery_router",
    "events_router",
    "voice_recovery_router",
]
