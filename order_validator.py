"""Order and payment status values and the transitions allowed between them."""

import logging
from typing import Dict, List

from errors import InvalidStatusError, InvalidStatusTransitionError

logger = logging.getLogger(__name__)

VALID_ORDER_STATUSES: List[str] = [
    "pending",
    "processing",
    "paid",
    "completed",
    "cancelled",
    "refunded",
    "failed",
]

VALID_PAYMENT_STATUSES: List[str] = [
    "pending",
    "processing",
    "paid",
    "failed",
    "refunded",
    "cancelled",
]

# Each status lists itself so repeating the current status is a no-op
ALLOWED_ORDER_STATUS_TRANSITIONS: Dict[str, List[str]] = {
    "pending": ["pending", "processing", "paid", "cancelled", "failed"],
    "processing": ["processing", "paid", "completed", "cancelled", "failed", "pending"],
    "paid": ["paid", "processing", "completed", "refunded"],
    "completed": ["completed", "refunded", "processing"],
    "cancelled": ["cancelled", "pending"],
    "refunded": ["refunded"],
    "failed": ["failed", "pending", "processing"],
}

ALLOWED_PAYMENT_STATUS_TRANSITIONS: Dict[str, List[str]] = {
    "pending": ["processing", "paid", "failed", "cancelled"],
    "processing": ["paid", "failed", "cancelled"],
    "paid": ["refunded"],
    "failed": ["pending", "processing"],
    "refunded": [],
    "cancelled": ["pending"],
}


def normalize_order_status(status: str) -> str:
    # finalization writes "created", which the workflow treats as pending
    return "pending" if status == "created" else status


def get_allowed_order_status_transitions(current: str) -> List[str]:
    return list(ALLOWED_ORDER_STATUS_TRANSITIONS.get(normalize_order_status(current), []))


def get_allowed_payment_status_transitions(current: str) -> List[str]:
    return list(ALLOWED_PAYMENT_STATUS_TRANSITIONS.get(current, []))


def validate_order_status_transition(current: str, requested: str) -> None:
    if requested not in VALID_ORDER_STATUSES:
        raise InvalidStatusError(requested)
    allowed = get_allowed_order_status_transitions(current)
    if requested not in allowed:
        logger.warning("Rejected order status transition %s -> %s", current, requested)
        raise InvalidStatusTransitionError(normalize_order_status(current), requested, allowed)


def validate_payment_status_transition(current: str, requested: str) -> None:
    if requested not in VALID_PAYMENT_STATUSES:
        raise InvalidStatusError(requested, kind="payment")
    allowed = get_allowed_payment_status_transitions(current)
    if requested not in allowed:
        logger.warning("Rejected payment status transition %s -> %s", current, requested)
        raise InvalidStatusTransitionError(current, requested, allowed, kind="payment")
