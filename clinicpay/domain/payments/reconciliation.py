"""
Reconciliation engine - the only writer of payment status.

Webhook pushes, status polls, the expiry sweep and user cancellations all funnel into
apply_transition, a single conditional update that only succeeds while the record is
pending. Whichever caller lands the first terminal transition wins; every later call
is a logged no-op.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from ...config import PAYMENT_POLL_TIMEOUT_SECONDS
from ...models import (
    PAYMENT_CANCELLED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_SUCCESS,
    TERMINAL_PAYMENT_STATUSES,
    PaymentRecord,
)
from .cascade import get_cascade
from .exceptions import (
    DuplicateOrLateEvent,
    GatewayRejected,
    GatewayUnavailable,
    OrphanedOrderCode,
    RaceLost,
    SignatureInvalid,
)
from .gateway import PAYOS_SUCCESS_CODE, PaymentGateway
from .repository import PaymentRepository

logger = logging.getLogger(__name__)

# Transition sources
SOURCE_WEBHOOK = "webhook"
SOURCE_POLL = "poll"
SOURCE_SWEEP = "sweep"
SOURCE_USER = "user"


class WebhookOutcome(BaseModel):
    result: str  # applied, duplicate, orphaned, ignored
    order_code: Optional[int] = None
    payment_status: Optional[str] = None


class ReconciliationEngine:
    """Applies gateway-reported truth to local state exactly once in effect"""

    def __init__(
        self,
        db: Session,
        gateway: Optional[PaymentGateway] = None,
        repo: Optional[PaymentRepository] = None,
        poll_timeout: float = PAYMENT_POLL_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.gateway = gateway
        self.repo = repo or PaymentRepository()
        self.poll_timeout = poll_timeout

    def _load(self, order_code: int) -> Optional[PaymentRecord]:
        record = self.repo.get_by_order_code(self.db, order_code)
        if record is not None:
            self.db.refresh(record)
        return record

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def apply_transition(
        self,
        order_code: int,
        new_status: str,
        transaction_info: Optional[dict] = None,
        source: str = SOURCE_POLL,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Move a pending record to a terminal status and cascade into its booking.

        Returns True only for the call that changed state. Calls against a record that
        is already terminal (duplicate delivery, late event, lost race) return False.

        Raises:
            OrphanedOrderCode: no record holds this order code
        """
        if new_status not in TERMINAL_PAYMENT_STATUSES:
            raise ValueError(f"{new_status} is not a terminal payment status")

        now = now or datetime.utcnow()
        values = {
            "status": new_status,
            # Terminal records are retained forever
            "expires_at": None,
            "finalized_at": now,
            "last_transition_source": source,
            "updated_at": now,
        }
        if transaction_info is not None:
            values["transaction_info"] = transaction_info
        if source == SOURCE_WEBHOOK:
            values["webhook_received"] = True
            values["webhook_processed_at"] = now

        try:
            record = self._load(order_code)
            if record is None:
                raise OrphanedOrderCode(order_code)
            if record.status != PAYMENT_PENDING:
                raise DuplicateOrLateEvent(f"order {order_code} already {record.status}")

            if not self.repo.transition_if_pending(self.db, order_code, values):
                raise RaceLost(f"order {order_code} finalized by a concurrent writer")

            self.db.refresh(record)
            get_cascade(record.service_type).apply(self.db, record, new_status, now)
            self.db.commit()
        except OrphanedOrderCode:
            self.db.rollback()
            raise
        except DuplicateOrLateEvent as event:
            self.db.rollback()
            self._record_no_op(order_code, new_status, source, transaction_info, event)
            self.db.commit()
            return False
        except Exception as e:
            logger.error(f"❌ Transition of order {order_code} to {new_status} failed: {e}")
            self.db.rollback()
            raise

        logger.info(f"💾 Payment {order_code}: pending → {new_status} (source={source})")
        return True

    def _record_no_op(
        self,
        order_code: int,
        new_status: str,
        source: str,
        transaction_info: Optional[dict],
        event: DuplicateOrLateEvent,
    ):
        """Log a transition that lost to an earlier one; dead-letter money we could not honour"""
        record = self._load(order_code)
        kind = "race lost" if isinstance(event, RaceLost) else "late"

        if record.status == new_status:
            logger.info(
                f"🔄 Duplicate {new_status} for order {order_code} from {source} ({kind}), already applied"
            )
            return

        logger.warning(
            f"⚠️ Ignored {new_status} for order {order_code} from {source} ({kind}); record is already {record.status}"
        )

        if new_status == PAYMENT_SUCCESS:
            logger.error(
                f"🚨 Payment {order_code} reported paid after it was {record.status}; funds may be captured"
            )
            self.repo.add_dead_letter(
                self.db,
                kind="late_success",
                order_code=order_code,
                payment_record_id=record.id,
                source=source,
                detail=f"success reported after terminal status {record.status}",
                payload=transaction_info,
            )

    def report_orphan(self, order_code, source: str, payload: Optional[dict] = None):
        """Integrity alarm: the gateway knows an order code we have no record of"""
        logger.error(f"🚨 Orphaned order code {order_code} from {source}; no payment record exists")
        self.repo.add_dead_letter(
            self.db,
            kind="orphaned_order_code",
            order_code=order_code,
            source=source,
            detail="no payment record for order code",
            payload=payload,
        )
        self.db.commit()

    # ------------------------------------------------------------------
    # Webhook path
    # ------------------------------------------------------------------

    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookOutcome:
        """
        Process a PayOS webhook. Only local work: signature check plus store access.

        Raises:
            SignatureInvalid: body does not match the signature; nothing is applied
        """
        if self.gateway is None or not self.gateway.verify_signature(raw_body, signature):
            logger.warning("🚫 Rejected PayOS webhook with invalid signature (possible integrity issue)")
            raise SignatureInvalid("Invalid webhook signature")

        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"❌ Signed webhook body is not valid JSON: {e}")
            return WebhookOutcome(result="ignored")

        if not isinstance(payload, dict):
            logger.error("❌ Signed webhook body is not a JSON object")
            return WebhookOutcome(result="ignored")

        data = payload.get("data") or {}
        if not isinstance(data, dict):
            logger.error(f"❌ Signed webhook has a non-object data field: {type(data).__name__}")
            return WebhookOutcome(result="ignored")

        raw_code = payload.get("orderCode", data.get("orderCode"))
        try:
            order_code = int(raw_code)
        except (TypeError, ValueError):
            logger.error(f"❌ Webhook without a usable orderCode: {raw_code!r}")
            return WebhookOutcome(result="ignored")

        code = str(payload.get("code", data.get("code", "")))
        desc = payload.get("desc", data.get("desc"))
        new_status = PAYMENT_SUCCESS if code == PAYOS_SUCCESS_CODE else PAYMENT_FAILED
        transaction_info = {**data, "code": code, "desc": desc}

        logger.info(f"📥 PayOS webhook: orderCode={order_code} code={code} desc={desc}")

        try:
            changed = self.apply_transition(
                order_code, new_status, transaction_info=transaction_info, source=SOURCE_WEBHOOK
            )
        except OrphanedOrderCode:
            self.report_orphan(order_code, SOURCE_WEBHOOK, payload)
            return WebhookOutcome(result="orphaned", order_code=order_code)

        record = self._load(order_code)
        return WebhookOutcome(
            result="applied" if changed else "duplicate",
            order_code=order_code,
            payment_status=record.status if record else None,
        )

    # ------------------------------------------------------------------
    # Poll path
    # ------------------------------------------------------------------

    async def poll(self, order_code: int) -> str:
        """
        Ask the gateway for the status of a pending payment and apply it.
        Gateway failures leave the record untouched and report it as pending.
        """
        record = self._load(order_code)
        if record is None:
            raise OrphanedOrderCode(order_code)
        if record.status != PAYMENT_PENDING:
            return record.status
        if not record.gateway_link_id or self.gateway is None:
            return PAYMENT_PENDING

        # Nothing is held open while the gateway call is in flight
        self.db.commit()

        try:
            gateway_status = await asyncio.wait_for(
                self.gateway.get_status(order_code), timeout=self.poll_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"⏰ Poll for order {order_code} timed out after {self.poll_timeout}s")
            return PAYMENT_PENDING
        except GatewayUnavailable as e:
            logger.warning(f"⚠️ Poll for order {order_code} skipped, gateway unavailable: {e}")
            return PAYMENT_PENDING
        except GatewayRejected as e:
            logger.warning(f"⚠️ Gateway rejected status query for order {order_code}: {e}")
            return PAYMENT_PENDING

        new_status = gateway_status.internal_status
        if new_status is None:
            return PAYMENT_PENDING

        self.apply_transition(
            order_code,
            new_status,
            transaction_info=gateway_status.transaction_info(),
            source=SOURCE_POLL,
        )
        record = self._load(order_code)
        return record.status

    # ------------------------------------------------------------------
    # User cancellation
    # ------------------------------------------------------------------

    async def cancel(self, order_code: int, reason: Optional[str] = None) -> bool:
        """Cancel a pending payment; returns False if it already reached a terminal status"""
        record = self._load(order_code)
        if record is None:
            raise OrphanedOrderCode(order_code)
        if record.status != PAYMENT_PENDING:
            return False

        if record.gateway_link_id and self.gateway is not None:
            self.db.commit()
            try:
                await self.gateway.cancel_link(order_code, reason)
            except GatewayRejected as e:
                # Usually means the link is already paid or closed; let the gateway decide
                logger.warning(f"⚠️ Gateway refused to cancel order {order_code}: {e}")
                if await self.poll(order_code) != PAYMENT_PENDING:
                    return False
            except GatewayUnavailable as e:
                logger.warning(f"⚠️ Could not cancel order {order_code} at the gateway: {e}")

        return self.apply_transition(
            order_code,
            PAYMENT_CANCELLED,
            transaction_info={"cancellationReason": reason} if reason else None,
            source=SOURCE_USER,
        )
