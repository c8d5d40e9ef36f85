"""Payment domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys, as the booking frontend does"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class CreatePaymentLinkRequest(CamelModel):
    """Schema for opening a checkout session for a booking"""

    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None

    @field_validator("return_url", "cancel_url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v


class CancelPaymentRequest(CamelModel):
    reason: Optional[str] = None


class PaymentLinkResponse(CamelModel):
    payment_url: str
    order_code: int
    amount: int
    qr_code: Optional[str] = None
    expired_at: Optional[datetime] = None


class PaymentStatusResponse(CamelModel):
    """User-facing status: pending, paid, failed, cancelled or expired"""

    order_code: int
    status: str
    amount: int
    appointment_status: Optional[str] = None
    payment_status: Optional[str] = None
    paid_at: Optional[datetime] = None
    consultation_status: Optional[str] = None
    webhook_received: bool = False
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class CancelPaymentResponse(CamelModel):
    order_code: int
    cancelled: bool
    status: str


class WebhookAck(BaseModel):
    """Acknowledgement returned to PayOS; any 2xx stops redelivery"""

    success: bool = True
    result: str
    order_code: Optional[int] = None


class DeadLetterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    order_code: Optional[int] = None
    payment_record_id: Optional[int] = None
    source: Optional[str] = None
    detail: Optional[str] = None
    payload: Optional[Any] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None


class ResolveDeadLetterRequest(BaseModel):
    note: Optional[str] = None
