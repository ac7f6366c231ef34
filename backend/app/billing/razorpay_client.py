"""Async Razorpay API wrapper: orders, refunds and signature checks."""

import hashlib
import hmac
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx

from app.billing.errors import GatewayError, GatewayTimeout
from app.config import settings

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount (rupees) to the gateway's minor units (paise)."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


def get_razorpay_client() -> httpx.AsyncClient:
    """Create an HTTP client authenticated against the Razorpay REST API."""
    return httpx.AsyncClient(
        base_url=settings.razorpay_api_base.rstrip("/"),
        auth=(settings.razorpay_key_id, settings.razorpay_key_secret),
        timeout=settings.gateway_timeout_seconds,
    )


async def _request(method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    if not settings.gateway_configured:
        logger.error("Razorpay %s %s skipped: API credentials are not configured", method, path)
        raise GatewayError("Payment gateway is not configured")

    async with get_razorpay_client() as client:
        try:
            response = await client.request(method, path, json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("Razorpay %s %s timed out: %s", method, path, exc)
            raise GatewayTimeout() from exc
        except httpx.HTTPError as exc:
            logger.error("Razorpay %s %s failed: %s", method, path, exc)
            raise GatewayError(f"Failed to contact Razorpay: {exc}") from exc

    if response.status_code >= 400:
        description = _error_description(response)
        logger.error("Razorpay %s %s returned %s: %s", method, path, response.status_code, description)
        raise GatewayError(
            f"Razorpay rejected the request: {description}",
            gateway_status=response.status_code,
        )

    try:
        data = response.json()
    except ValueError as exc:
        raise GatewayError("Invalid response received from Razorpay") from exc
    if not isinstance(data, dict):
        raise GatewayError("Unexpected response format from Razorpay")
    return data


def _error_description(response: httpx.Response) -> str:
    try:
        return response.json()["error"]["description"]
    except (ValueError, KeyError, TypeError):
        return response.text[:200] or "unknown error"


async def create_order(
    amount_minor: int,
    currency: str,
    receipt: str,
    notes: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Create a Razorpay order; the client completes checkout against its id."""
    logger.info("Creating Razorpay order for %s %s (receipt %s)", amount_minor, currency, receipt)
    order = await _request(
        "POST",
        "/orders",
        {
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt[:40],
            "notes": notes or {},
        },
    )
    logger.info("Created Razorpay order %s", order.get("id"))
    return order


async def create_refund(
    payment_id: str,
    amount_minor: int,
    notes: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Refund (part of) a captured payment."""
    logger.info("Creating Razorpay refund of %s for payment %s", amount_minor, payment_id)
    return await _request(
        "POST",
        f"/payments/{payment_id}/refund",
        {"amount": amount_minor, "speed": "normal", "notes": notes or {}},
    )


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(order_id: str, payment_id: str, signature: str) -> bool:
    """Check the checkout signature: HMAC-SHA256 of ``order_id|payment_id``."""
    if not signature or not settings.razorpay_key_secret:
        return False
    expected = _hmac_hex(settings.razorpay_key_secret, f"{order_id}|{payment_id}".encode("utf-8"))
    return hmac.compare_digest(expected, signature)


def verify_webhook_signature(body: bytes, signature: str) -> bool:
    """Check ``X-Razorpay-Signature``: HMAC-SHA256 of the raw body with the webhook secret."""
    if not signature or not settings.razorpay_webhook_secret:
        return False
    expected = _hmac_hex(settings.razorpay_webhook_secret, body)
    return hmac.compare_digest(expected, signature)
