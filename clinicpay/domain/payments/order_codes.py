"""Order code allocation - the numeric handle PayOS round-trips in callbacks and queries"""

import hashlib
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...config import ORDER_CODE_COLLISION_BUDGET
from ...models import PaymentRecord
from .exceptions import CollisionBudgetExhausted
from .gateway import unix_timestamp
from .repository import PaymentRepository

logger = logging.getLogger(__name__)

# PayOS accepts order codes in 1..999999999
ORDER_CODE_MIN = 1
ORDER_CODE_MAX = 999_999_999


def booking_key(service_type: str, booking_id) -> str:
    return f"{service_type}:{booking_id}"


def derive_order_code(key: str, timestamp: int, attempt: int = 0) -> int:
    """
    Combine the timestamp with a hash of the booking key.

    The hash is truncated, so the code cannot be decoded back to a booking;
    the payment record store keeps that mapping.
    """
    salted = key if attempt == 0 else f"{key}:{attempt}"
    hash_number = int(hashlib.md5(salted.encode("utf-8")).hexdigest()[:6], 16)
    return (timestamp % 100000) * 10000 + (hash_number % 10000)


class OrderCodeAllocator:
    """Issues unique order codes, reusing a booking's open pending code"""

    def __init__(self, repo: Optional[PaymentRepository] = None, budget: int = ORDER_CODE_COLLISION_BUDGET):
        self.repo = repo or PaymentRepository()
        self.budget = budget

    def reusable_record(
        self, db: Session, service_type: str, booking_id: int, now: Optional[datetime] = None
    ) -> Optional[PaymentRecord]:
        """Pending record whose gateway session is open and still inside its window"""
        now = now or datetime.utcnow()
        for record in self.repo.get_pending_for_booking(db, service_type, booking_id):
            if record.gateway_link_id and record.expires_at and record.expires_at > now:
                return record
        return None

    def allocate(
        self,
        db: Session,
        service_type: str,
        booking_id: int,
        now: Optional[datetime] = None,
        exclude: Optional[set] = None,
    ) -> int:
        """
        Return the booking's open pending code, or a fresh code not used by any record.

        Raises:
            CollisionBudgetExhausted: every candidate within the budget was taken
        """
        now = now or datetime.utcnow()
        existing = self.reusable_record(db, service_type, booking_id, now)
        if existing:
            logger.info(
                f"♻️ Reusing pending order code {existing.order_code} for {service_type} {booking_id}"
            )
            return existing.order_code

        key = booking_key(service_type, booking_id)
        timestamp = unix_timestamp(now)
        exclude = exclude or set()

        for attempt in range(self.budget):
            candidate = derive_order_code(key, timestamp, attempt)
            if candidate < ORDER_CODE_MIN or candidate > ORDER_CODE_MAX:
                continue
            if candidate in exclude or self.repo.order_code_exists(db, candidate):
                logger.warning(f"⚠️ Order code collision on {candidate} (attempt {attempt + 1}/{self.budget})")
                continue

            logger.info(f"🔢 Allocated order code {candidate} for {key}")
            return candidate

        logger.error(f"❌ Order code collision budget exhausted for {key}")
        raise CollisionBudgetExhausted(
            f"No free order code for {key} after {self.budget} attempts"
        )
