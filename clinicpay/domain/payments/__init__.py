"""Payments domain - PayOS payment links and reconciliation for appointments and consultations"""

from .router import router, webhooks_router

__all__ = ["router", "webhooks_router"]
