"""
Expiry sweep for unpaid payment links
Handles pending → expired once a payment's window has passed
Also drives the background status poll for links the webhook never reported on
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import PAYMENT_POLL_BATCH_SIZE, PAYMENT_POLL_MIN_AGE_SECONDS
from ...models import PAYMENT_EXPIRED, PAYMENT_PENDING
from .exceptions import OrphanedOrderCode
from .gateway import PaymentGateway
from .reconciliation import SOURCE_SWEEP, ReconciliationEngine
from .repository import PaymentRepository

logger = logging.getLogger(__name__)


def sweep_expired_payments(db: Session, now: Optional[datetime] = None, limit: int = 500) -> dict:
    """
    Expire every pending payment whose expires_at has passed.
    Should be run as a scheduled job (every minute)

    Each record goes through the same conditional transition as webhooks and polls,
    so a payment confirmed a moment earlier is left alone.

    Returns:
        dict: Summary of the sweep
    """
    now = now or datetime.utcnow()
    engine = ReconciliationEngine(db)
    summary = {"checked": 0, "expired": 0, "skipped": 0}

    order_codes = PaymentRepository.find_expired_pending_codes(db, now, limit=limit)
    for order_code in order_codes:
        summary["checked"] += 1
        try:
            changed = engine.apply_transition(order_code, PAYMENT_EXPIRED, source=SOURCE_SWEEP, now=now)
        except OrphanedOrderCode:
            # Deleted between query and update (discarded reservation)
            summary["skipped"] += 1
            continue

        if changed:
            summary["expired"] += 1
        else:
            summary["skipped"] += 1

    if summary["expired"] > 0:
        logger.info(f"📊 Payment expiry sweep summary: {summary}")
    else:
        logger.debug("ℹ️ No pending payments past their window")

    return summary


async def poll_pending_payments(
    db: Session,
    gateway: PaymentGateway,
    now: Optional[datetime] = None,
    min_age_seconds: int = PAYMENT_POLL_MIN_AGE_SECONDS,
    limit: int = PAYMENT_POLL_BATCH_SIZE,
) -> dict:
    """Poll the gateway for pending payments old enough that a webhook was expected"""
    now = now or datetime.utcnow()
    engine = ReconciliationEngine(db, gateway)
    summary = {"polled": 0, "resolved": 0, "still_pending": 0}

    created_before = now - timedelta(seconds=min_age_seconds)
    order_codes = PaymentRepository.find_pending_for_poll(db, created_before, now, limit=limit)

    for order_code in order_codes:
        summary["polled"] += 1
        try:
            status = await engine.poll(order_code)
        except OrphanedOrderCode:
            continue

        if status == PAYMENT_PENDING:
            summary["still_pending"] += 1
        else:
            summary["resolved"] += 1

    if summary["polled"]:
        logger.info(f"📊 Payment poll summary: {summary}")
    return summary
