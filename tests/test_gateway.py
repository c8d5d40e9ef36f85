import json
from datetime import datetime, timezone

import httpx
import pytest

from clinicpay.domain.payments.exceptions import GatewayRejected, GatewayUnavailable
from clinicpay.domain.payments.gateway import (
    PaymentGateway,
    PayOSGateway,
    map_gateway_status,
    truncate_description,
)
from clinicpay.models import PAYMENT_CANCELLED, PAYMENT_EXPIRED, PAYMENT_SUCCESS
from clinicpay.webhook_security import sign_payos_request

CHECKSUM_KEY = "gateway-checksum"


def make_gateway(handler, **kwargs):
    return PayOSGateway(
        client_id="client-id",
        api_key="api-key",
        checksum_key=CHECKSUM_KEY,
        base_url="https://payos.test",
        retry_delay=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def envelope(data, code="00", desc="success"):
    return httpx.Response(200, json={"code": code, "desc": desc, "data": data})


def test_truncate_description():
    assert truncate_description("Short") == "Short"
    assert truncate_description("x" * 25) == "x" * 25

    long = "Thanh toán - Gói khám sức khỏe tổng quát"
    assert len(long) > 25
    truncated = truncate_description(long)
    assert len(truncated) == 25
    assert truncated.endswith("...")
    assert truncated == long[:22] + "..."


def test_map_gateway_status():
    assert map_gateway_status("PAID") == PAYMENT_SUCCESS
    assert map_gateway_status("cancelled") == PAYMENT_CANCELLED
    assert map_gateway_status("EXPIRED") == PAYMENT_EXPIRED
    assert map_gateway_status("PENDING") is None
    assert map_gateway_status("PROCESSING") is None
    assert map_gateway_status(None) is None


def test_payos_gateway_satisfies_protocol():
    assert isinstance(make_gateway(lambda request: envelope({})), PaymentGateway)


async def test_create_link_sends_signed_request():
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return envelope(
            {
                "checkoutUrl": "https://pay.payos.vn/web/abc",
                "paymentLinkId": "abc",
                "qrCode": "000201",
            }
        )

    gateway = make_gateway(handler)
    expired_at = datetime(2024, 5, 1, 10, 0, 0)
    link = await gateway.create_link(
        amount=500000,
        description="D" * 40,
        return_url="https://clinic.test/ok",
        cancel_url="https://clinic.test/cancel",
        order_code=123456789,
        expired_at=expired_at,
    )

    assert link.checkout_url == "https://pay.payos.vn/web/abc"
    assert link.gateway_link_id == "abc"
    assert link.qr_code == "000201"

    body = captured["body"]
    assert captured["url"] == "https://payos.test/v2/payment-requests"
    assert captured["headers"]["x-client-id"] == "client-id"
    assert captured["headers"]["x-api-key"] == "api-key"
    assert body["description"] == "D" * 22 + "..."
    assert len(body["description"]) == 25
    assert body["expiredAt"] == int(expired_at.replace(tzinfo=timezone.utc).timestamp())
    assert body["signature"] == sign_payos_request(
        CHECKSUM_KEY,
        {
            "amount": 500000,
            "cancelUrl": "https://clinic.test/cancel",
            "description": "D" * 22 + "...",
            "orderCode": 123456789,
            "returnUrl": "https://clinic.test/ok",
        },
    )


async def test_create_link_rejects_non_positive_amount():
    calls = []
    gateway = make_gateway(lambda request: calls.append(request) or envelope({}))

    with pytest.raises(GatewayRejected):
        await gateway.create_link(0, "desc", "https://a", "https://b", 1, datetime.utcnow())
    assert calls == []


async def test_envelope_error_is_rejected():
    gateway = make_gateway(lambda request: envelope(None, code="231", desc="Đơn thanh toán đã tồn tại"))

    with pytest.raises(GatewayRejected) as exc_info:
        await gateway.get_status(42)
    assert exc_info.value.code == "231"


async def test_client_error_is_rejected_without_retry():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"code": "20", "desc": "bad request"})

    gateway = make_gateway(handler, max_retries=3)
    with pytest.raises(GatewayRejected):
        await gateway.get_status(42)
    assert len(calls) == 1


async def test_server_errors_are_retried_then_unavailable():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(502)

    gateway = make_gateway(handler, max_retries=3)
    with pytest.raises(GatewayUnavailable):
        await gateway.get_status(42)
    assert len(calls) == 3


async def test_timeout_then_success_recovers():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectTimeout("timed out", request=request)
        return envelope({"status": "PAID", "amount": 500000, "amountPaid": 500000, "transactions": []})

    gateway = make_gateway(handler, max_retries=3)
    status = await gateway.get_status(42)

    assert status.internal_status == PAYMENT_SUCCESS
    assert len(calls) == 2


async def test_cancel_link_posts_reason():
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return envelope({"status": "CANCELLED"})

    gateway = make_gateway(handler)
    await gateway.cancel_link(42, "Changed my mind")

    assert captured["url"] == "https://payos.test/v2/payment-requests/42/cancel"
    assert captured["body"] == {"cancellationReason": "Changed my mind"}


async def test_unconfigured_gateway_is_unavailable():
    gateway = PayOSGateway(client_id=None, api_key=None, checksum_key=None)
    with pytest.raises(GatewayUnavailable):
        await gateway.get_status(42)
