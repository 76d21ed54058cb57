"""Booking lifecycle domain"""

from .router import router, stripe_router, webhooks_router

__all__ = ["router", "stripe_router", "webhooks_router"]
