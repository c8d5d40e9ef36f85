import secrets
import time

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

# Payment record statuses
PAYMENT_PENDING = "pending"
PAYMENT_SUCCESS = "success"
PAYMENT_FAILED = "failed"
PAYMENT_CANCELLED = "cancelled"
PAYMENT_EXPIRED = "expired"
TERMINAL_PAYMENT_STATUSES = (PAYMENT_SUCCESS, PAYMENT_FAILED, PAYMENT_CANCELLED, PAYMENT_EXPIRED)

# Discriminator for the booking a payment belongs to
SERVICE_APPOINTMENT = "appointment"
SERVICE_CONSULTATION = "consultation"


def generate_bill_number():
    """Generate a human-readable, unique bill number"""
    return f"BILL-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint(
            "(service_id IS NULL) <> (package_id IS NULL)",
            name="ck_appointment_service_xor_package",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(64), index=True, nullable=False)  # Booking user
    service_id = Column(Integer, nullable=True)
    package_id = Column(Integer, nullable=True)
    service_name = Column(String(255), nullable=True)  # Snapshot for payment description
    slot_id = Column(String(64), nullable=True)  # Doctor schedule slot held by this booking

    # pending_payment, pending, scheduled, confirmed, consulting, completed, cancelled, expired
    status = Column(String(32), default="pending_payment", nullable=False, index=True)
    # unpaid, paid, partial, refunded
    payment_status = Column(String(16), default="unpaid", nullable=False)
    total_amount = Column(Integer, default=0, nullable=False)
    paid_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    payments = relationship("PaymentRecord", back_populates="appointment")


class Consultation(Base):
    """Online consultation booked with a doctor; paid through the same payment flow"""

    __tablename__ = "consultations"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(64), index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    consultation_fee = Column(Integer, default=0, nullable=False)

    # pending, pending_payment, scheduled, consulting, completed, cancelled
    status = Column(String(32), default="pending", nullable=False, index=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    payments = relationship("PaymentRecord", back_populates="consultation")


class PaymentRecord(Base):
    """
    Durable payment tracking row, the single source of truth for payment status.
    Terminal rows are kept forever as the audit trail; only pending rows carry expires_at.
    """

    __tablename__ = "payment_records"
    __table_args__ = (
        CheckConstraint(
            "(service_type = 'appointment' AND appointment_id IS NOT NULL AND consultation_id IS NULL)"
            " OR (service_type = 'consultation' AND consultation_id IS NOT NULL AND appointment_id IS NULL)",
            name="ck_payment_record_booking_ref",
        ),
        CheckConstraint(
            "(status = 'pending') = (expires_at IS NOT NULL)",
            name="ck_payment_record_expiry_only_while_pending",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    service_type = Column(String(20), nullable=False)  # appointment, consultation
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True, index=True)
    consultation_id = Column(Integer, ForeignKey("consultations.id"), nullable=True, index=True)
    owner_id = Column(String(64), index=True, nullable=False)
    bill_number = Column(String(40), unique=True, nullable=False, default=generate_bill_number)

    # PayOS integration
    order_code = Column(BigInteger, unique=True, nullable=False, index=True)
    gateway_link_id = Column(String(255), nullable=True)  # Null until the gateway session is open
    checkout_url = Column(String(500), nullable=True)
    qr_code = Column(Text, nullable=True)
    amount = Column(Integer, nullable=False)
    description = Column(String(25), nullable=False)

    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(32), nullable=True)

    # pending, success, failed, cancelled, expired
    status = Column(String(16), default=PAYMENT_PENDING, nullable=False, index=True)
    transaction_info = Column(JSON, nullable=True)  # Opaque gateway metadata
    webhook_received = Column(Boolean, default=False, nullable=False)
    webhook_processed_at = Column(DateTime, nullable=True)
    last_transition_source = Column(String(16), nullable=True)  # webhook, poll, sweep, user
    finalized_at = Column(DateTime, nullable=True)

    expires_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    appointment = relationship("Appointment", back_populates="payments")
    consultation = relationship("Consultation", back_populates="payments")

    @property
    def booking_id(self):
        if self.service_type == SERVICE_APPOINTMENT:
            return self.appointment_id
        return self.consultation_id


class PaymentDeadLetter(Base):
    """Integrity events that need an operator: late successes, orphaned codes, skipped cascades"""

    __tablename__ = "payment_dead_letters"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(32), nullable=False, index=True)  # late_success, orphaned_order_code, cascade_skipped
    order_code = Column(BigInteger, nullable=True, index=True)
    payment_record_id = Column(Integer, ForeignKey("payment_records.id"), nullable=True)
    source = Column(String(16), nullable=True)
    detail = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    resolved_at = Column(DateTime, nullable=True, index=True)
    resolution_note = Column(Text, nullable=True)
