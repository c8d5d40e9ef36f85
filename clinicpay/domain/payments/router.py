"""Payments router - FastAPI endpoints for booking payments and PayOS webhooks"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ...database import get_db
from .exceptions import SignatureInvalid
from .gateway import PaymentGateway, get_payment_gateway
from .reconciliation import ReconciliationEngine
from .repository import PaymentRepository
from .schemas import (
    CancelPaymentRequest,
    CancelPaymentResponse,
    CreatePaymentLinkRequest,
    DeadLetterResponse,
    PaymentLinkResponse,
    PaymentStatusResponse,
    ResolveDeadLetterRequest,
    WebhookAck,
)
from .service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])
webhooks_router = APIRouter(tags=["Webhooks"])

SIGNATURE_HEADER = "x-payos-signature"


def get_payment_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentService:
    """Dependency injection for PaymentService"""
    return PaymentService(db, gateway)


# ============================================================================
# OPERATIONAL REVIEW
# ============================================================================


@router.get("/dead-letters", response_model=list[DeadLetterResponse])
async def list_dead_letters(
    unresolved_only: bool = True,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    """Integrity events awaiting an operator (late successes, orphaned codes, skipped cascades)"""
    return PaymentRepository.list_dead_letters(db, unresolved_only=unresolved_only, limit=limit)


@router.post("/dead-letters/{letter_id}/resolve", response_model=DeadLetterResponse)
async def resolve_dead_letter(
    letter_id: int,
    body: Optional[ResolveDeadLetterRequest] = None,
    db: Session = Depends(get_db),
):
    letter = PaymentRepository.get_dead_letter(db, letter_id)
    if not letter:
        raise HTTPException(status_code=404, detail="Dead letter not found")

    letter = PaymentRepository.resolve_dead_letter(db, letter, body.note if body else None)
    logger.info(f"🧾 Dead letter {letter_id} ({letter.kind}) resolved")
    return letter


# ============================================================================
# BOOKING PAYMENTS
# ============================================================================


@router.post("/{service_type}/{booking_id}/link", response_model=PaymentLinkResponse)
async def create_payment_link(
    service_type: str,
    booking_id: int,
    body: Optional[CreatePaymentLinkRequest] = None,
    service: PaymentService = Depends(get_payment_service),
):
    """Create a PayOS checkout link for an appointment or consultation"""
    return await service.create_payment_link(
        service_type, booking_id, body or CreatePaymentLinkRequest()
    )


@router.get("/{service_type}/{booking_id}/status", response_model=PaymentStatusResponse)
async def get_payment_status(
    service_type: str,
    booking_id: int,
    service: PaymentService = Depends(get_payment_service),
):
    """Get payment status, reconciling with PayOS while the payment is pending"""
    return await service.get_payment_status(service_type, booking_id)


@router.post("/{service_type}/{booking_id}/cancel", response_model=CancelPaymentResponse)
async def cancel_payment(
    service_type: str,
    booking_id: int,
    body: Optional[CancelPaymentRequest] = None,
    service: PaymentService = Depends(get_payment_service),
):
    """Cancel the pending payment; the booking returns to pending"""
    return await service.cancel_payment(service_type, booking_id, body)


# ============================================================================
# WEBHOOKS
# ============================================================================


@webhooks_router.post("/webhooks/payos", response_model=WebhookAck)
async def handle_payos_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    PayOS payment notification.

    Signature failures get 401. Every other outcome is acknowledged with 2xx,
    including duplicates and unknown order codes, so PayOS stops redelivering.
    """
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    engine = ReconciliationEngine(db, gateway)
    try:
        outcome = engine.handle_webhook(raw_body, signature)
    except SignatureInvalid:
        raise HTTPException(status_code=401, detail="Invalid signature")

    return WebhookAck(result=outcome.result, order_code=outcome.order_code)
