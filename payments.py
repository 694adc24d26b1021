"""
Stripe-style payment webhook handling.

The provider signs ``"<timestamp>.<raw body>"`` with HMAC-SHA256 and sends
``Stripe-Signature: t=<timestamp>,v1=<hex digest>``. Verified events are
translated into PaymentResult objects that drive order updates.
"""
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional

from database import new_id, utcnow
from errors import OrderNotFoundError, RefundError, WebhookVerificationError
from order_service import OrderService
from order_validator import validate_payment_status_transition
from schemas import Order, PaymentResult

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300
REFUND_PROVIDERS = ("stripe", "mock")


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def verify_webhook(payload: bytes, signature_header: str, secret: Optional[str], now: Optional[float] = None) -> Dict[str, Any]:
    """Checks the signature header and returns the decoded event."""
    if not secret:
        raise WebhookVerificationError("webhook secret is not configured")
    if not signature_header:
        raise WebhookVerificationError("missing signature header")

    timestamp = None
    signatures = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if timestamp is None or not timestamp.isdigit() or not signatures:
        raise WebhookVerificationError("malformed signature header")

    expected = compute_signature(payload, int(timestamp), secret)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookVerificationError("signature mismatch")

    now = time.time() if now is None else now
    if abs(now - int(timestamp)) > SIGNATURE_TOLERANCE_SECONDS:
        raise WebhookVerificationError("timestamp outside tolerance")

    try:
        event = json.loads(payload)
    except ValueError as e:
        raise WebhookVerificationError("payload is not valid JSON") from e
    if not isinstance(event, dict):
        raise WebhookVerificationError("payload is not a JSON object")
    return event


def _order_reference(obj: Dict[str, Any]) -> Optional[str]:
    metadata = obj.get("metadata")
    return metadata.get("orderReference") if isinstance(metadata, dict) else None

def _payment_intent_succeeded(obj: Dict[str, Any]) -> PaymentResult:
    return PaymentResult(
        success=True,
        status="paid",
        payment_id=obj.get("latest_charge"),
        payment_intent_id=obj.get("id"),
        payment_method_id=obj.get("payment_method"),
        order_reference=_order_reference(obj),
        provider_data={
            "amount": obj.get("amount"),
            "currency": obj.get("currency"),
            "payment_method_types": obj.get("payment_method_types"),
        },
    )


def _payment_intent_failed(obj: Dict[str, Any]) -> PaymentResult:
    last_error = obj.get("last_payment_error") or {}
    return PaymentResult(
        success=False,
        status="failed",
        payment_intent_id=obj.get("id"),
        payment_method_id=obj.get("payment_method"),
        error=last_error.get("message") or "Payment failed",
        order_reference=_order_reference(obj),
        provider_data={"amount": obj.get("amount"), "currency": obj.get("currency")},
    )


def _payment_intent_canceled(obj: Dict[str, Any]) -> PaymentResult:
    return PaymentResult(
        success=False,
        status="cancelled",
        payment_intent_id=obj.get("id"),
        error="Payment was canceled",
        order_reference=_order_reference(obj),
        provider_data={
            "amount": obj.get("amount"),
            "currency": obj.get("currency"),
            "cancellation_reason": obj.get("cancellation_reason"),
        },
    )


def _charge_refunded(obj: Dict[str, Any]) -> PaymentResult:
    refunds = obj.get("refunds")
    entries = refunds.get("data") if isinstance(refunds, dict) else None
    first = entries[0] if isinstance(entries, list) and entries and isinstance(entries[0], dict) else {}
    amount = obj.get("amount") or 0
    refunded = obj.get("amount_refunded") or 0
    return PaymentResult(
        success=True,
        status="refunded",
        payment_id=obj.get("id"),
        payment_intent_id=obj.get("payment_intent"),
        order_reference=_order_reference(obj),
        refund_amount=refunded / 100,
        refund_reason=first.get("reason"),
        refund_date=utcnow(),
        provider_data={
            "amount": amount,
            "amount_refunded": refunded,
            "currency": obj.get("currency"),
            "is_fully_refunded": refunded == amount,
        },
    )


EVENT_HANDLERS = {
    "payment_intent.succeeded": _payment_intent_succeeded,
    "payment_intent.payment_failed": _payment_intent_failed,
    "payment_intent.canceled": _payment_intent_canceled,
    "charge.refunded": _charge_refunded,
}


def process_event(event: Dict[str, Any]) -> Optional[PaymentResult]:
    """Translates a provider event into a PaymentResult, or None if unhandled."""
    event_type = event.get("type")
    handler = EVENT_HANDLERS.get(event_type) if isinstance(event_type, str) else None
    if handler is None:
        logger.info("Unhandled payment event type: %s", event_type)
        return None
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        obj = {}
    logger.info("Processing payment event %s", event_type)
    return handler(obj)


def apply_payment_result(order_service: OrderService, result: PaymentResult) -> Optional[Order]:
    """Updates the referenced order. Returns None when no order matches."""
    if not result.order_reference and not result.payment_intent_id:
        logger.warning("Payment result has no order reference, skipping order update")
        return None
    try:
        order = order_service.find_order_for_payment(result.order_reference, result.payment_intent_id)
    except OrderNotFoundError:
        logger.error("No order found for payment reference %s", result.order_reference)
        return None
    return order_service.update_order_from_payment(order.id, result)


def refund_payment(
    order_service: OrderService,
    payment_id: str,
    amount: Optional[float] = None,
    provider: Optional[str] = None,
    reason: Optional[str] = None,
) -> PaymentResult:
    """Records a refund against the order paid by ``payment_id``.

    Only paid orders can be refunded. ``amount`` defaults to the order total
    and may not exceed it. The provider is not contacted.
    """
    if provider is not None and provider not in REFUND_PROVIDERS:
        raise RefundError(payment_id, f"payment provider '{provider}' not found")

    order = order_service.get_order_by_payment_intent_id(payment_id)
    validate_payment_status_transition(order.payment_status, "refunded")
    if amount is not None and round(amount, 2) > round(order.total, 2):
        raise RefundError(payment_id, f"amount {amount} exceeds order total {order.total}")

    result = PaymentResult(
        success=True,
        status="refunded",
        payment_id=payment_id,
        payment_intent_id=order.payment_intent_id,
        order_reference=order.order_number,
        refund_id=new_id(),
        refund_amount=round(amount if amount is not None else order.total, 2),
        refund_reason=reason,
        refund_date=utcnow(),
        provider_data={"provider": provider or "stripe"},
    )
    order_service.update_order_from_payment(order.id, result)
    logger.info("Refunded %s on order %s (refund %s)", result.refund_amount, order.order_number, result.refund_id)
    return result
