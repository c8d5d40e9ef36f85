"""Payment service - Business logic for booking payments"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import FRONTEND_URL
from ...models import (
    PAYMENT_EXPIRED,
    PAYMENT_PENDING,
    PAYMENT_SUCCESS,
    SERVICE_APPOINTMENT,
    SERVICE_CONSULTATION,
    PaymentRecord,
)
from .exceptions import (
    CollisionBudgetExhausted,
    GatewayRejected,
    GatewayUnavailable,
    OrphanedOrderCode,
)
from .gateway import PaymentGateway, truncate_description
from .order_codes import OrderCodeAllocator
from .reconciliation import SOURCE_SWEEP, ReconciliationEngine
from .repository import BOOKING_MODELS, PaymentRepository
from .schemas import (
    CancelPaymentRequest,
    CancelPaymentResponse,
    CreatePaymentLinkRequest,
    PaymentLinkResponse,
    PaymentStatusResponse,
)

logger = logging.getLogger(__name__)

# Booking statuses that accept a new payment attempt
PAYABLE_STATUSES = ("pending_payment", "pending")

# The end user only ever sees pending, paid, failed, cancelled or expired
USER_FACING_STATUS = {PAYMENT_SUCCESS: "paid"}

CONSULTATION_DESCRIPTION = "Tư vấn trực tuyến"


def user_facing_status(status: str) -> str:
    return USER_FACING_STATUS.get(status, status)


class PaymentService:
    """Service for booking payment links, status and cancellation"""

    def __init__(self, db: Session, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway
        self.repo = PaymentRepository()
        self.allocator = OrderCodeAllocator(self.repo)
        self.engine = ReconciliationEngine(db, gateway, self.repo)

    # ------------------------------------------------------------------
    # Booking helpers
    # ------------------------------------------------------------------

    def _get_booking(self, service_type: str, booking_id: int):
        if service_type not in BOOKING_MODELS:
            raise HTTPException(status_code=404, detail=f"Unknown service type: {service_type}")

        booking = self.repo.get_booking(self.db, service_type, booking_id)
        if not booking:
            raise HTTPException(status_code=404, detail=f"{service_type.capitalize()} not found")
        return booking

    @staticmethod
    def _amount(service_type: str, booking) -> int:
        if service_type == SERVICE_APPOINTMENT:
            return booking.total_amount or 0
        return booking.consultation_fee or 0

    @staticmethod
    def _description(service_type: str, booking) -> str:
        if service_type == SERVICE_CONSULTATION:
            return CONSULTATION_DESCRIPTION
        service_name = booking.service_name or "Dịch vụ y tế"
        return truncate_description(f"Thanh toán - {service_name}")

    @staticmethod
    def _customer_name(service_type: str, booking, body: CreatePaymentLinkRequest) -> Optional[str]:
        if body.customer_name:
            return body.customer_name
        if service_type == SERVICE_CONSULTATION:
            return booking.full_name
        return None

    def _check_payable(self, service_type: str, booking):
        if self.repo.has_successful_payment(self.db, service_type, booking.id):
            raise HTTPException(status_code=409, detail="Booking is already paid")
        if service_type == SERVICE_APPOINTMENT and booking.payment_status == "paid":
            raise HTTPException(status_code=409, detail="Booking is already paid")
        if booking.status not in PAYABLE_STATUSES:
            raise HTTPException(
                status_code=400,
                detail=f"Booking cannot be paid in status '{booking.status}'",
            )

    def _expire_stale_pending(self, service_type: str, booking_id: int, now: datetime):
        """Expire pending records past their window that the sweeper has not reached yet"""
        for record in self.repo.get_pending_for_booking(self.db, service_type, booking_id):
            if record.expires_at and record.expires_at <= now:
                logger.info(f"⌛ Expiring stale payment {record.order_code} before a new attempt")
                self.engine.apply_transition(
                    record.order_code, PAYMENT_EXPIRED, source=SOURCE_SWEEP, now=now
                )

    @staticmethod
    def _link_response(record: PaymentRecord) -> PaymentLinkResponse:
        return PaymentLinkResponse(
            payment_url=record.checkout_url,
            order_code=record.order_code,
            amount=record.amount,
            qr_code=record.qr_code,
            expired_at=record.expires_at,
        )

    def _reserve(self, service_type: str, booking, amount: int, description: str, body, now: datetime):
        """Reserve a fresh order code; the unique constraint settles concurrent claims"""
        exclude = set()
        try:
            for _ in range(self.allocator.budget):
                order_code = self.allocator.allocate(self.db, service_type, booking.id, now, exclude)
                try:
                    return self.repo.reserve_pending(
                        self.db,
                        service_type=service_type,
                        booking_id=booking.id,
                        owner_id=booking.owner_id,
                        order_code=order_code,
                        amount=amount,
                        description=description,
                        now=now,
                        customer_name=self._customer_name(service_type, booking, body),
                        customer_email=body.customer_email,
                        customer_phone=body.customer_phone or getattr(booking, "phone", None),
                    )
                except IntegrityError:
                    self.db.rollback()
                    exclude.add(order_code)
                    logger.warning(f"⚠️ Order code {order_code} claimed concurrently, retrying")
            raise CollisionBudgetExhausted(f"No free order code for {service_type} {booking.id}")
        except CollisionBudgetExhausted as e:
            logger.error(f"❌ {e}")
            raise HTTPException(
                status_code=503, detail="Could not allocate a payment reference, please retry"
            ) from e

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_payment_link(
        self, service_type: str, booking_id: int, body: CreatePaymentLinkRequest
    ) -> PaymentLinkResponse:
        """Open (or reuse) a checkout session for a booking"""
        booking = self._get_booking(service_type, booking_id)
        now = datetime.utcnow()

        reusable = self.allocator.reusable_record(self.db, service_type, booking_id, now)
        if reusable:
            logger.info(f"♻️ Returning open payment link {reusable.order_code} for {service_type} {booking_id}")
            return self._link_response(reusable)

        self._expire_stale_pending(service_type, booking_id, now)
        self.db.refresh(booking)
        self._check_payable(service_type, booking)

        amount = self._amount(service_type, booking)
        if amount <= 0:
            raise HTTPException(status_code=400, detail="Payment amount must be greater than 0")

        description = self._description(service_type, booking)
        record = self._reserve(service_type, booking, amount, description, body, now)

        booking_path = f"{service_type}s/{booking_id}"
        return_url = body.return_url or f"{FRONTEND_URL}/payment/success?{service_type}Id={booking_id}"
        cancel_url = body.cancel_url or f"{FRONTEND_URL}/payment/cancel?{service_type}Id={booking_id}"

        try:
            link = await self.gateway.create_link(
                amount=amount,
                description=description,
                return_url=return_url,
                cancel_url=cancel_url,
                order_code=record.order_code,
                expired_at=record.expires_at,
                buyer_name=record.customer_name,
                buyer_email=record.customer_email,
                buyer_phone=record.customer_phone,
            )
        except GatewayRejected as e:
            self.repo.discard_reservation(self.db, record)
            logger.error(f"❌ Gateway rejected payment link for {booking_path}: {e}")
            raise HTTPException(status_code=400, detail=f"Payment gateway rejected the request: {e}")
        except GatewayUnavailable as e:
            self.repo.discard_reservation(self.db, record)
            logger.error(f"❌ Gateway unavailable for {booking_path}: {e}")
            raise HTTPException(status_code=503, detail="Payment service temporarily unavailable")

        record = self.repo.attach_gateway_session(
            self.db,
            record,
            gateway_link_id=link.gateway_link_id,
            checkout_url=link.checkout_url,
            qr_code=link.qr_code,
        )
        if self.repo.mark_awaiting_payment(self.db, service_type, booking_id):
            logger.info(f"📝 {service_type} {booking_id} moved to pending_payment")
        logger.info(f"✅ Payment link ready for {booking_path}: orderCode={record.order_code}")
        return self._link_response(record)

    async def get_payment_status(self, service_type: str, booking_id: int) -> PaymentStatusResponse:
        """Latest payment attempt for a booking, reconciled against the gateway while pending"""
        booking = self._get_booking(service_type, booking_id)

        record = self.repo.get_latest_for_booking(self.db, service_type, booking_id)
        if not record:
            raise HTTPException(status_code=404, detail="No payment found for this booking")

        if record.status == PAYMENT_PENDING:
            try:
                await self.engine.poll(record.order_code)
            except OrphanedOrderCode:
                # Reservation discarded while we were polling
                raise HTTPException(status_code=404, detail="No payment found for this booking")
            self.db.refresh(record)
            self.db.refresh(booking)

        response = PaymentStatusResponse(
            order_code=record.order_code,
            status=user_facing_status(record.status),
            amount=record.amount,
            webhook_received=record.webhook_received,
            created_at=record.created_at,
            expires_at=record.expires_at,
        )
        if service_type == SERVICE_APPOINTMENT:
            response.appointment_status = booking.status
            response.payment_status = booking.payment_status
            response.paid_at = booking.paid_at
        else:
            response.consultation_status = booking.status
        return response

    async def cancel_payment(
        self, service_type: str, booking_id: int, body: Optional[CancelPaymentRequest] = None
    ) -> CancelPaymentResponse:
        """Cancel the booking's pending payment; the booking itself stays open for a retry"""
        self._get_booking(service_type, booking_id)

        pending = self.repo.get_pending_for_booking(self.db, service_type, booking_id)
        if not pending:
            raise HTTPException(status_code=400, detail="No pending payment to cancel")

        record = pending[0]
        reason = (body.reason if body else None) or "Cancelled by user"
        try:
            cancelled = await self.engine.cancel(record.order_code, reason)
        except OrphanedOrderCode:
            raise HTTPException(status_code=404, detail="No payment found for this booking")

        self.db.refresh(record)
        return CancelPaymentResponse(
            order_code=record.order_code,
            cancelled=cancelled,
            status=user_facing_status(record.status),
        )
