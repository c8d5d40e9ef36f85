import json
import os
from datetime import datetime

# Configure before any clinicpay import reads the environment
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clinicpay.database import Base, get_db
from clinicpay.domain.payments.gateway import GatewayLink, GatewayStatus, get_payment_gateway
from clinicpay.domain.payments.repository import PaymentRepository
from clinicpay.models import SERVICE_APPOINTMENT, Appointment, Consultation
from clinicpay.webhook_security import compute_hmac_sha256, verify_payos_signature

CHECKSUM_KEY = "test-checksum-key"


class FakeGateway:
    """In-memory PaymentGateway that records calls"""

    def __init__(self, checksum_key: str = CHECKSUM_KEY):
        self.checksum_key = checksum_key
        self.created = []
        self.cancelled = []
        self.status_calls = []
        self.statuses = {}
        self.create_error = None
        self.status_error = None
        self.cancel_error = None

    async def create_link(
        self,
        amount,
        description,
        return_url,
        cancel_url,
        order_code,
        expired_at,
        buyer_name=None,
        buyer_email=None,
        buyer_phone=None,
    ):
        if self.create_error:
            raise self.create_error
        self.created.append(
            {
                "amount": amount,
                "description": description,
                "return_url": return_url,
                "cancel_url": cancel_url,
                "order_code": order_code,
                "expired_at": expired_at,
            }
        )
        return GatewayLink(
            checkout_url=f"https://pay.payos.vn/web/{order_code}",
            gateway_link_id=f"link-{order_code}",
            qr_code=f"qr-{order_code}",
        )

    async def get_status(self, order_code):
        self.status_calls.append(order_code)
        if self.status_error:
            raise self.status_error
        return GatewayStatus(
            status=self.statuses.get(order_code, "PENDING"),
            amount=100000,
            amount_paid=100000 if self.statuses.get(order_code) == "PAID" else 0,
            transactions=[{"reference": f"FT{order_code}", "transactionDateTime": "2024-05-01 10:00:00"}],
        )

    async def cancel_link(self, order_code, reason=None):
        self.cancelled.append((order_code, reason))
        if self.cancel_error:
            raise self.cancel_error
        return {"orderCode": order_code, "status": "CANCELLED"}

    def verify_signature(self, raw_body, signature):
        return verify_payos_signature(raw_body, signature, self.checksum_key)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(session_factory, gateway):
    from clinicpay.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_appointment(db):
    def _make(**overrides):
        values = {
            "owner_id": "user-1",
            "service_id": 7,
            "service_name": "Xét nghiệm tổng quát",
            "slot_id": "slot-42",
            "status": "pending_payment",
            "payment_status": "unpaid",
            "total_amount": 350000,
        }
        values.update(overrides)
        appointment = Appointment(**values)
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment

    return _make


@pytest.fixture
def make_consultation(db):
    def _make(**overrides):
        values = {
            "owner_id": "user-2",
            "full_name": "Nguyen Van A",
            "phone": "0901234567",
            "consultation_fee": 200000,
            "status": "pending",
        }
        values.update(overrides)
        consultation = Consultation(**values)
        db.add(consultation)
        db.commit()
        db.refresh(consultation)
        return consultation

    return _make


@pytest.fixture
def make_payment(db):
    """Pending record with an open gateway session"""

    def _make(booking, order_code, service_type=SERVICE_APPOINTMENT, now=None, amount=None, link=True):
        now = now or datetime.utcnow()
        record = PaymentRepository.reserve_pending(
            db,
            service_type=service_type,
            booking_id=booking.id,
            owner_id=booking.owner_id,
            order_code=order_code,
            amount=amount or 350000,
            description="Thanh toán - test",
            now=now,
        )
        if link:
            record = PaymentRepository.attach_gateway_session(
                db,
                record,
                gateway_link_id=f"link-{order_code}",
                checkout_url=f"https://pay.payos.vn/web/{order_code}",
            )
        return record

    return _make


def sign_webhook(payload: dict, key: str = CHECKSUM_KEY):
    """Serialize a webhook payload and sign it the way PayOS does"""
    body = json.dumps(payload).encode("utf-8")
    return body, compute_hmac_sha256(key, body)


def webhook_payload(order_code: int, code: str = "00", desc: str = "success") -> dict:
    return {
        "code": code,
        "desc": desc,
        "success": code == "00",
        "data": {
            "orderCode": order_code,
            "amount": 350000,
            "reference": f"FT{order_code}",
            "transactionDateTime": "2024-05-01 10:00:00",
            "code": code,
            "desc": desc,
        },
    }
