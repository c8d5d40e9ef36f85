from datetime import datetime, timedelta

import pytest

from clinicpay import worker
from clinicpay.domain.payments.repository import PaymentRepository
from clinicpay.models import PAYMENT_EXPIRED, PAYMENT_SUCCESS


@pytest.fixture(autouse=True)
def worker_sessions(monkeypatch, session_factory):
    monkeypatch.setattr(worker, "SessionLocal", session_factory)


def status_of(db, order_code):
    db.expire_all()
    return PaymentRepository.get_by_order_code(db, order_code).status


async def test_sweep_task_expires_overdue_payments(db, make_appointment, make_payment):
    appointment = make_appointment()
    make_payment(appointment, 14001, now=datetime.utcnow() - timedelta(minutes=30))

    summary = await worker.sweep_expired_payments_task({})

    assert summary["expired"] == 1
    assert status_of(db, 14001) == PAYMENT_EXPIRED


async def test_poll_task_uses_gateway_from_context(db, gateway, make_appointment, make_payment):
    appointment = make_appointment()
    make_payment(appointment, 14002, now=datetime.utcnow() - timedelta(minutes=5))
    gateway.statuses[14002] = "PAID"

    summary = await worker.poll_pending_payments_task({"gateway": gateway})

    assert summary["resolved"] == 1
    assert gateway.status_calls == [14002]
    assert status_of(db, 14002) == PAYMENT_SUCCESS


def test_cron_schedule():
    assert len(worker.WorkerSettings.cron_jobs) == 2
    assert worker.WorkerSettings.max_tries == 1
    assert worker.sweep_expired_payments_task in worker.WorkerSettings.functions
