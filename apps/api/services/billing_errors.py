"""
Billing exceptions.

Only infrastructure and integration failures are exceptions. Expected
outcomes such as insufficient credits or a duplicate webhook delivery are
returned as values by the credits manager and never raised.
"""

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base exception for billing failures, serializable for API responses."""

    status_code = 500

    def __init__(self, message: str, code: str = "BILLING_ERROR", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class StorageUnavailable(BillingError):
    """The ledger store could not be reached or did not answer in time. Retryable."""

    status_code = 503

    def __init__(self, message: str = "Credit ledger is temporarily unavailable", operation: Optional[str] = None):
        super().__init__(
            message=message,
            code="STORAGE_UNAVAILABLE",
            details={"operation": operation, "retryable": True} if operation else {"retryable": True},
        )
        self.operation = operation


class LedgerConflict(BillingError):
    """A write collided with an existing ledger row, such as a reused purchase id."""

    status_code = 409

    def __init__(self, operation: str):
        super().__init__(
            message="Ledger write conflicts with an existing record",
            code="LEDGER_CONFLICT",
            details={"operation": operation},
        )
        self.operation = operation


class PaymentGatewayError(BillingError):
    """The payment provider rejected or failed a request."""

    status_code = 502

    def __init__(self, message: str, provider: str):
        super().__init__(message=message, code="PAYMENT_GATEWAY_ERROR", details={"provider": provider})
        self.provider = provider


class PaymentGatewayNotConfigured(BillingError):
    """Raised when a payment provider is disabled or missing credentials."""

    status_code = 503

    def __init__(self, provider: str):
        super().__init__(
            message=f"Payment provider '{provider}' is not configured.",
            code="PAYMENT_GATEWAY_NOT_CONFIGURED",
            details={"provider": provider},
        )
        self.provider = provider


class WebhookVerificationError(BillingError):
    """Inbound gateway notification failed signature or payload checks."""

    status_code = 400

    def __init__(self, message: str, provider: str):
        super().__init__(message=message, code="WEBHOOK_VERIFICATION_FAILED", details={"provider": provider})
        self.provider = provider
