"""Clinic booking payments: PayOS checkout links, webhooks, polling and expiry"""

__version__ = "1.0.0"
