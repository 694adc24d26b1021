import json
import logging
import random
import re
import string
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import serialize_doc, utcnow
from errors import OrderNotFoundError, StorageError
from order_validator import validate_payment_status_transition
from schemas import Order, OrderFilters, OrderItem, OrderListResult, OrderStatusHistory, PaymentResult

logger = logging.getLogger(__name__)

ORDER_NUMBER_CHARS = string.ascii_uppercase + string.digits
UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

# payment result status -> (order status, payment status)
PAYMENT_RESULT_STATUS_MAP: Dict[str, Tuple[str, str]] = {
    "paid": ("paid", "paid"),
    "completed": ("paid", "paid"),
    "failed": ("failed", "failed"),
    "pending": ("processing", "pending"),
    "refunded": ("refunded", "refunded"),
    "canceled": ("cancelled", "failed"),
    "cancelled": ("cancelled", "failed"),
}


def generate_order_number(now: Optional[datetime] = None) -> str:
    """Human readable order number: NO-YYYYMMDD-XXXX with a random suffix."""
    now = now or utcnow()
    suffix = "".join(random.choices(ORDER_NUMBER_CHARS, k=4))
    return f"NO-{now:%Y%m%d}-{suffix}"


class OrderService:
    """Order lookups, listing and payment driven updates."""

    def __init__(self, db: Database):
        self.db = db
        self.orders = db["orders"]

    @staticmethod
    def build_order(order_doc: dict, item_docs: List[dict], history_docs: List[dict]) -> Order:
        data = serialize_doc(order_doc)
        data["items"] = [OrderItem.model_validate(serialize_doc(d)) for d in item_docs]
        data["status_history"] = [OrderStatusHistory.model_validate(serialize_doc(d)) for d in history_docs]
        return Order.model_validate(data)

    def _load(self, order_doc: dict) -> Order:
        order_id = order_doc["id"]
        try:
            items = list(self.db["order_items"].find({"order_id": order_id}).sort("created_at", ASCENDING))
            history = list(
                self.db["order_status_history"]
                .find({"order_id": order_id})
                .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            )
        except PyMongoError as e:
            raise StorageError("load order details", e) from e
        return self.build_order(order_doc, items, history)

    def _find_one(self, query: Dict[str, Any], reference: str) -> Order:
        try:
            doc = self.orders.find_one(query)
        except PyMongoError as e:
            raise StorageError("find order", e) from e
        if not doc:
            raise OrderNotFoundError(reference)
        return self._load(doc)

    def get_order_by_id(self, order_id: str) -> Order:
        return self._find_one({"id": order_id}, order_id)

    def get_order_by_order_number(self, order_number: str) -> Order:
        return self._find_one({"order_number": order_number}, order_number)

    def get_order_by_payment_intent_id(self, payment_intent_id: str) -> Order:
        return self._find_one({"payment_intent_id": payment_intent_id}, payment_intent_id)

    def find_order_for_payment(self, reference: Optional[str], payment_intent_id: Optional[str] = None) -> Order:
        """Resolves a payment's order by order number, payment intent, then id."""
        if reference:
            try:
                return self.get_order_by_order_number(reference)
            except OrderNotFoundError:
                logger.debug("Order not found by order number %s", reference)
        if payment_intent_id:
            try:
                return self.get_order_by_payment_intent_id(payment_intent_id)
            except OrderNotFoundError:
                logger.debug("Order not found by payment intent %s", payment_intent_id)
        if reference and UUID_RE.match(reference):
            return self.get_order_by_id(reference)
        raise OrderNotFoundError(reference or payment_intent_id or "<none>")

    def get_orders(self, filters: OrderFilters) -> OrderListResult:
        query: Dict[str, Any] = {}
        if filters.user_id:
            query["user_id"] = filters.user_id
        if filters.email:
            query["guest_email"] = filters.email
        if filters.status:
            query["status"] = {"$in": list(filters.status)}
        if filters.payment_status:
            query["payment_status"] = {"$in": list(filters.payment_status)}
        if filters.search:
            pattern = re.escape(filters.search)
            query["$or"] = [
                {"order_number": {"$regex": pattern, "$options": "i"}},
                {"guest_email": {"$regex": pattern, "$options": "i"}},
            ]

        direction = ASCENDING if filters.sort_direction == "asc" else DESCENDING
        try:
            total = self.orders.count_documents(query)
            docs = list(
                self.orders.find(query)
                .sort(filters.sort_by, direction)
                .skip(filters.offset)
                .limit(filters.limit)
            )
        except PyMongoError as e:
            raise StorageError("get_orders", e) from e

        return OrderListResult(
            orders=[self._load(d) for d in docs],
            total=total,
            limit=filters.limit,
            offset=filters.offset,
        )

    def update_order(self, order_id: str, fields: Dict[str, Any]) -> Order:
        update = {k: v for k, v in fields.items() if v is not None}
        update["updated_at"] = utcnow()
        try:
            result = self.orders.update_one({"id": order_id}, {"$set": update})
        except PyMongoError as e:
            raise StorageError("update_order", e) from e
        if result.matched_count == 0:
            raise OrderNotFoundError(order_id)
        return self.get_order_by_id(order_id)

    def update_payment_status(
        self,
        order_id: str,
        payment_status: str,
        payment_intent_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Order:
        order = self.get_order_by_id(order_id)
        validate_payment_status_transition(order.payment_status, payment_status)
        logger.info("Order %s payment status %s -> %s", order.order_number, order.payment_status, payment_status)
        return self.update_order(
            order_id,
            {"payment_status": payment_status, "payment_intent_id": payment_intent_id, "notes": notes},
        )

    def update_order_from_payment(self, order_id: str, result: PaymentResult) -> Order:
        if result.status in PAYMENT_RESULT_STATUS_MAP:
            order_status, payment_status = PAYMENT_RESULT_STATUS_MAP[result.status]
        elif result.success:
            order_status, payment_status = "paid", "paid"
        else:
            order_status, payment_status = "failed", "failed"

        notes = f"Payment error: {result.error}" if result.error else "Payment processed successfully."
        if result.refund_amount:
            notes += f" Refunded amount: {result.refund_amount}. Reason: {result.refund_reason or 'Not specified'}."

        metadata = {
            "payment_result": json.loads(result.model_dump_json(exclude={"provider_data"})),
            "tracking": {
                "carrier": "payment",
                "tracking_number": result.payment_id or "unknown",
                "payment_id": result.payment_id,
                "status": result.status,
            },
        }
        order = self.update_order(
            order_id,
            {
                "status": order_status,
                "payment_status": payment_status,
                "payment_intent_id": result.payment_intent_id,
                "notes": notes,
                "metadata": metadata,
            },
        )
        logger.info("Order %s updated from payment: status=%s payment_status=%s",
                    order.order_number, order.status, order.payment_status)
        return order
