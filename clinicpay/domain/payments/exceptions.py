"""Payment domain exceptions"""

from typing import Optional


class PaymentError(Exception):
    """Base class for payment reconciliation errors"""

    pass


class GatewayUnavailable(PaymentError):
    """Transient gateway failure (timeout, transport error, 5xx). Safe to retry."""

    pass


class GatewayRejected(PaymentError):
    """Gateway refused the request (bad amount, unknown order code). Terminal for this attempt."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class SignatureInvalid(PaymentError):
    """Webhook body does not match its HMAC signature"""

    pass


class DuplicateOrLateEvent(PaymentError):
    """Transition requested on a record that is already terminal"""

    pass


class RaceLost(DuplicateOrLateEvent):
    """Another writer won the conditional update first"""

    pass


class OrphanedOrderCode(PaymentError):
    """Gateway referenced an order code with no payment record"""

    def __init__(self, order_code):
        super().__init__(f"No payment record for order code {order_code}")
        self.order_code = order_code


class CollisionBudgetExhausted(PaymentError):
    """Could not find a free order code within the allowed number of attempts"""

    pass
