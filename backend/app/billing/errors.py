"""Billing error taxonomy.

Every failure the billing subsystem can report has its own class so callers
can tell them apart. ``kind`` is the class name and is what clients see.
"""

from typing import Any


class BillingError(Exception):
    """Base class for all billing failures."""

    status_code: int = 400

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_detail(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, **self.extra}


# --- Validation -------------------------------------------------------------


class ValidationFailed(BillingError):
    status_code = 400


# --- Authorization ----------------------------------------------------------


class AdminRequired(BillingError):
    status_code = 403

    def __init__(self, message: str = "Admin access required") -> None:
        super().__init__(message)


# --- Lookup -----------------------------------------------------------------


class RecordNotFound(BillingError):
    status_code = 404

    def __init__(self, resource: str, record_id: Any = None) -> None:
        super().__init__(f"{resource} not found", resource=resource)
        self.record_id = record_id


# --- State conflicts --------------------------------------------------------


class InvalidStateTransition(BillingError):
    status_code = 409

    def __init__(self, current: str, event: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Cannot {event} from status '{current}'",
            current_status=current,
            event=event,
        )


class DuplicateRefundRequest(BillingError):
    status_code = 409

    def __init__(self) -> None:
        super().__init__("A refund request is already open for this item")


class RefundWindowExpired(BillingError):
    status_code = 400

    def __init__(self, refund_window_days: int, days_elapsed: int) -> None:
        super().__init__(
            f"Refund window has expired. Refunds are only available within "
            f"{refund_window_days} days of payment.",
            refund_window_days=refund_window_days,
            days_elapsed=days_elapsed,
        )


class ActiveSubscriptionExists(BillingError):
    status_code = 409

    def __init__(self) -> None:
        super().__init__("User already has a live subscription")


class ConcurrentModification(BillingError):
    status_code = 409

    def __init__(self) -> None:
        super().__init__("Record was modified concurrently, retry the request", retryable=True)


# --- Trust failures ---------------------------------------------------------


class InvalidSignature(BillingError):
    status_code = 400

    def __init__(self) -> None:
        super().__init__("Invalid payment signature")


class PaymentRecordNotFound(BillingError):
    status_code = 404

    def __init__(self) -> None:
        super().__init__("No payment record exists for this order")


# --- External dependency ----------------------------------------------------


class GatewayError(BillingError):
    status_code = 502

    def __init__(self, message: str = "Payment gateway request failed", **extra: Any) -> None:
        super().__init__(message, **extra)


class GatewayTimeout(GatewayError):
    status_code = 504

    def __init__(self, message: str = "Payment gateway timed out") -> None:
        super().__init__(message, retryable=True)


class ManualRefundRequired(BillingError):
    status_code = 502

    def __init__(self, message: str, gateway_error: str | None = None) -> None:
        super().__init__(
            message,
            manual_refund_required=True,
            gateway_error=gateway_error,
        )
