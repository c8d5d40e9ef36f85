"""Payment repository - Database operations for payment records"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ...config import APPOINTMENT_PAYMENT_WINDOW_MINUTES, CONSULTATION_PAYMENT_WINDOW_MINUTES
from ...models import (
    PAYMENT_PENDING,
    PAYMENT_SUCCESS,
    SERVICE_APPOINTMENT,
    SERVICE_CONSULTATION,
    Appointment,
    Consultation,
    PaymentDeadLetter,
    PaymentRecord,
)

PAYMENT_WINDOWS = {
    SERVICE_APPOINTMENT: timedelta(minutes=APPOINTMENT_PAYMENT_WINDOW_MINUTES),
    SERVICE_CONSULTATION: timedelta(minutes=CONSULTATION_PAYMENT_WINDOW_MINUTES),
}

BOOKING_MODELS = {
    SERVICE_APPOINTMENT: Appointment,
    SERVICE_CONSULTATION: Consultation,
}


def booking_column(service_type: str):
    if service_type == SERVICE_APPOINTMENT:
        return PaymentRecord.appointment_id
    if service_type == SERVICE_CONSULTATION:
        return PaymentRecord.consultation_id
    raise ValueError(f"Unknown service type: {service_type}")


class PaymentRepository:
    """Repository for payment database operations"""

    @staticmethod
    def get_booking(db: Session, service_type: str, booking_id: int):
        """Get the appointment or consultation a payment is for"""
        model = BOOKING_MODELS.get(service_type)
        if model is None:
            raise ValueError(f"Unknown service type: {service_type}")
        return db.query(model).filter(model.id == booking_id).first()

    @staticmethod
    def get_by_order_code(db: Session, order_code: int) -> Optional[PaymentRecord]:
        return db.query(PaymentRecord).filter(PaymentRecord.order_code == order_code).first()

    @staticmethod
    def order_code_exists(db: Session, order_code: int) -> bool:
        return (
            db.query(PaymentRecord.id).filter(PaymentRecord.order_code == order_code).first()
            is not None
        )

    @staticmethod
    def get_latest_for_booking(
        db: Session, service_type: str, booking_id: int
    ) -> Optional[PaymentRecord]:
        """Most recent payment attempt for a booking (earlier attempts stay as audit rows)"""
        return (
            db.query(PaymentRecord)
            .filter(
                PaymentRecord.service_type == service_type,
                booking_column(service_type) == booking_id,
            )
            .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
            .first()
        )

    @staticmethod
    def has_successful_payment(db: Session, service_type: str, booking_id: int) -> bool:
        return (
            db.query(PaymentRecord.id)
            .filter(
                PaymentRecord.service_type == service_type,
                booking_column(service_type) == booking_id,
                PaymentRecord.status == PAYMENT_SUCCESS,
            )
            .first()
            is not None
        )

    @staticmethod
    def get_pending_for_booking(
        db: Session, service_type: str, booking_id: int
    ) -> list[PaymentRecord]:
        return (
            db.query(PaymentRecord)
            .filter(
                PaymentRecord.service_type == service_type,
                booking_column(service_type) == booking_id,
                PaymentRecord.status == PAYMENT_PENDING,
            )
            .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
            .all()
        )

    @staticmethod
    def reserve_pending(
        db: Session,
        service_type: str,
        booking_id: int,
        owner_id: str,
        order_code: int,
        amount: int,
        description: str,
        now: datetime,
        customer_name: Optional[str] = None,
        customer_email: Optional[str] = None,
        customer_phone: Optional[str] = None,
    ) -> PaymentRecord:
        """
        Persist a pending record holding order_code before the gateway session exists.
        Raises IntegrityError if another writer already holds the code.
        """
        record = PaymentRecord(
            service_type=service_type,
            owner_id=owner_id,
            order_code=order_code,
            amount=amount,
            description=description,
            customer_name=customer_name,
            customer_email=customer_email,
            customer_phone=customer_phone,
            status=PAYMENT_PENDING,
            created_at=now,
            expires_at=now + PAYMENT_WINDOWS[service_type],
        )
        if service_type == SERVICE_APPOINTMENT:
            record.appointment_id = booking_id
        else:
            record.consultation_id = booking_id

        db.add(record)
        db.commit()
        db.refresh(record)
        return record

    @staticmethod
    def attach_gateway_session(
        db: Session,
        record: PaymentRecord,
        gateway_link_id: str,
        checkout_url: str,
        qr_code: Optional[str] = None,
    ) -> PaymentRecord:
        record.gateway_link_id = gateway_link_id
        record.checkout_url = checkout_url
        record.qr_code = qr_code
        db.commit()
        db.refresh(record)
        return record

    @staticmethod
    def mark_awaiting_payment(db: Session, service_type: str, booking_id: int) -> bool:
        """pending → pending_payment once a checkout session is open"""
        model = BOOKING_MODELS[service_type]
        result = db.execute(
            update(model)
            .where(model.id == booking_id, model.status == "pending")
            .values(status="pending_payment")
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    @staticmethod
    def discard_reservation(db: Session, record: PaymentRecord) -> bool:
        """Delete a reservation whose gateway session was never opened"""
        deleted = (
            db.query(PaymentRecord)
            .filter(
                PaymentRecord.id == record.id,
                PaymentRecord.status == PAYMENT_PENDING,
                PaymentRecord.gateway_link_id.is_(None),
            )
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted == 1

    @staticmethod
    def transition_if_pending(db: Session, order_code: int, values: dict) -> bool:
        """
        Conditional update: set values only while status is still pending.
        Exactly one concurrent caller sees True. Does not commit.
        """
        result = db.execute(
            update(PaymentRecord)
            .where(
                PaymentRecord.order_code == order_code,
                PaymentRecord.status == PAYMENT_PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def find_expired_pending_codes(db: Session, now: datetime, limit: int = 500) -> list[int]:
        rows = (
            db.query(PaymentRecord.order_code)
            .filter(
                PaymentRecord.status == PAYMENT_PENDING,
                PaymentRecord.expires_at.isnot(None),
                PaymentRecord.expires_at <= now,
            )
            .order_by(PaymentRecord.expires_at.asc())
            .limit(limit)
            .all()
        )
        return [row[0] for row in rows]

    @staticmethod
    def find_pending_for_poll(
        db: Session, created_before: datetime, now: datetime, limit: int = 50
    ) -> list[int]:
        """Pending, gateway-backed, not yet expired records old enough to poll"""
        rows = (
            db.query(PaymentRecord.order_code)
            .filter(
                PaymentRecord.status == PAYMENT_PENDING,
                PaymentRecord.gateway_link_id.isnot(None),
                PaymentRecord.created_at <= created_before,
                PaymentRecord.expires_at > now,
            )
            .order_by(PaymentRecord.created_at.asc())
            .limit(limit)
            .all()
        )
        return [row[0] for row in rows]

    @staticmethod
    def add_dead_letter(
        db: Session,
        kind: str,
        order_code: Optional[int] = None,
        payment_record_id: Optional[int] = None,
        source: Optional[str] = None,
        detail: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> PaymentDeadLetter:
        """Stage a dead-letter row; committed by the caller's unit of work"""
        letter = PaymentDeadLetter(
            kind=kind,
            order_code=order_code,
            payment_record_id=payment_record_id,
            source=source,
            detail=detail,
            payload=payload,
        )
        db.add(letter)
        return letter

    @staticmethod
    def list_dead_letters(
        db: Session, unresolved_only: bool = True, limit: int = 100
    ) -> list[PaymentDeadLetter]:
        query = db.query(PaymentDeadLetter)
        if unresolved_only:
            query = query.filter(PaymentDeadLetter.resolved_at.is_(None))
        return query.order_by(PaymentDeadLetter.id.desc()).limit(limit).all()

    @staticmethod
    def get_dead_letter(db: Session, letter_id: int) -> Optional[PaymentDeadLetter]:
        return db.query(PaymentDeadLetter).filter(PaymentDeadLetter.id == letter_id).first()

    @staticmethod
    def resolve_dead_letter(
        db: Session, letter: PaymentDeadLetter, note: Optional[str] = None
    ) -> PaymentDeadLetter:
        letter.resolved_at = datetime.utcnow()
        letter.resolution_note = note
        db.commit()
        db.refresh(letter)
        return letter
