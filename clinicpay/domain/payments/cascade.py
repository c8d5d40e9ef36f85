"""
Booking cascade - propagates a payment's terminal status into its appointment or consultation.

Every booking update is conditional on the booking's current status, so re-running a
cascade after a crash or retry leaves the booking unchanged.
"""

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ...models import (
    PAYMENT_CANCELLED,
    PAYMENT_EXPIRED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_SUCCESS,
    SERVICE_APPOINTMENT,
    SERVICE_CONSULTATION,
    Appointment,
    Consultation,
    PaymentRecord,
)
from .repository import PaymentRepository, booking_column

logger = logging.getLogger(__name__)


class BookingCascade:
    """Status rules for one kind of booking"""

    model = None
    # Booking statuses from which a successful payment may confirm the booking
    payable_statuses = ("pending_payment", "pending")
    success_values: dict = {}
    expired_status = "expired"

    def __init__(self, repo: PaymentRepository = None):
        self.repo = repo or PaymentRepository()

    def _update(self, db: Session, booking_id: int, allowed: tuple, values: dict, *conditions) -> bool:
        result = db.execute(
            update(self.model)
            .where(self.model.id == booking_id, self.model.status.in_(allowed), *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def no_other_pending(record: PaymentRecord):
        """Condition: the booking has no pending attempt besides this record"""
        column = booking_column(record.service_type)
        return ~(
            select(PaymentRecord.id)
            .where(
                column == record.booking_id,
                PaymentRecord.id != record.id,
                PaymentRecord.status == PAYMENT_PENDING,
            )
            .exists()
        )

    def _release(self, db: Session, record: PaymentRecord, values: dict) -> bool:
        """Move a booking off pending_payment unless a newer attempt is still open"""
        changed = self._update(
            db, record.booking_id, ("pending_payment",), values, self.no_other_pending(record)
        )
        if not changed:
            logger.info(
                f"⏭️ {record.service_type} {record.booking_id} left as is after {record.order_code} "
                f"(superseded or not awaiting payment)"
            )
        return changed

    def success_values_at(self, now: datetime) -> dict:
        return dict(self.success_values)

    def already_confirmed(self, booking) -> bool:
        return booking.status == self.success_values.get("status")

    def expired_values(self) -> dict:
        return {"status": self.expired_status}

    def apply(self, db: Session, record: PaymentRecord, new_status: str, now: datetime) -> bool:
        """Apply the cascade for new_status; returns True if the booking changed"""
        booking_id = record.booking_id

        if new_status == PAYMENT_SUCCESS:
            changed = self._update(db, booking_id, self.payable_statuses, self.success_values_at(now))
            if changed:
                logger.info(f"✅ {record.service_type} {booking_id} confirmed by payment {record.order_code}")
                return True

            booking = db.get(self.model, booking_id, populate_existing=True)
            if booking is not None and self.already_confirmed(booking):
                return False

            # Money captured but the booking moved on (cancelled, expired, ...)
            current = booking.status if booking is not None else "missing"
            logger.error(
                f"🚨 Paid order {record.order_code} could not confirm {record.service_type} {booking_id} (status={current})"
            )
            self.repo.add_dead_letter(
                db,
                kind="cascade_skipped",
                order_code=record.order_code,
                payment_record_id=record.id,
                source=record.last_transition_source,
                detail=f"{record.service_type} {booking_id} was {current} when payment succeeded",
            )
            return False

        if new_status in (PAYMENT_FAILED, PAYMENT_CANCELLED):
            # Slot stays reserved; the user may retry payment
            changed = self._release(db, record, {"status": "pending"})
            if changed:
                logger.info(f"↩️ {record.service_type} {booking_id} back to pending after {new_status} payment")
            return changed

        if new_status == PAYMENT_EXPIRED:
            changed = self._release(db, record, self.expired_values())
            if changed:
                logger.info(f"⌛ {record.service_type} {booking_id} released after payment expiry")
            return changed

        raise ValueError(f"No cascade for status {new_status}")


class AppointmentCascade(BookingCascade):
    model = Appointment
    expired_status = "expired"

    def success_values_at(self, now: datetime) -> dict:
        return {"status": "confirmed", "payment_status": "paid", "paid_at": now}

    def already_confirmed(self, booking) -> bool:
        return booking.payment_status == "paid"

    def expired_values(self) -> dict:
        # Dropping the slot reference frees it for the doctor's schedule
        return {"status": self.expired_status, "slot_id": None}


class ConsultationCascade(BookingCascade):
    model = Consultation
    success_values = {"status": "scheduled"}
    expired_status = "cancelled"

    def already_confirmed(self, booking) -> bool:
        return booking.status in ("scheduled", "consulting", "completed")


CASCADES = {
    SERVICE_APPOINTMENT: AppointmentCascade(),
    SERVICE_CONSULTATION: ConsultationCascade(),
}


def get_cascade(service_type: str) -> BookingCascade:
    try:
        return CASCADES[service_type]
    except KeyError:
        raise ValueError(f"Unknown service type: {service_type}") from None
