"""
Checkout session state machine and order finalization.

A session moves information -> shipping -> payment -> review -> confirmation.
Step updates fall back to an in-memory EphemeralSession when the session
can't be read or written, so the shopper can keep going; callers can check
``session.is_persisted`` to tell durable state from best-effort state.
"""
import logging
from typing import List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from cart_service import CartCache, CartService, calculate_subtotal
from database import new_id, serialize_doc, utcnow
from errors import InvalidShippingMethodError, SessionNotFoundError, StorageError
from order_service import OrderService, generate_order_number
from schemas import (
    Address,
    CheckoutSession,
    CheckoutStep,
    EphemeralSession,
    Order,
    PaymentInfo,
    PersistedSession,
    ShippingOption,
)

logger = logging.getLogger(__name__)

# Flat rate applied to subtotal + shipping, not configurable per jurisdiction
TAX_RATE = 0.08

SHIPPING_OPTIONS: List[ShippingOption] = [
    ShippingOption(
        id="shipping-standard",
        name="Standard Shipping",
        description="Delivery in 5-7 business days",
        method="standard",
        price=9.99,
        estimated_delivery="5-7 business days",
    ),
    ShippingOption(
        id="shipping-express",
        name="Express Shipping",
        description="Delivery in 2-3 business days",
        method="express",
        price=19.99,
        estimated_delivery="2-3 business days",
    ),
    ShippingOption(
        id="shipping-overnight",
        name="Overnight Shipping",
        description="Next business day delivery",
        method="overnight",
        price=29.99,
        estimated_delivery="Next business day",
    ),
]


def calculate_tax(subtotal: float, shipping_cost: float) -> float:
    return round((subtotal + shipping_cost) * TAX_RATE, 2)


def calculate_totals(subtotal: float, shipping_cost: float) -> Tuple[float, float]:
    """Returns (tax, total) for the given subtotal and shipping cost."""
    tax = calculate_tax(subtotal, shipping_cost)
    return tax, round(subtotal + shipping_cost + tax, 2)


def get_shipping_options() -> List[ShippingOption]:
    return [option.model_copy() for option in SHIPPING_OPTIONS]


def find_shipping_option(option_id: Optional[str]) -> ShippingOption:
    for option in SHIPPING_OPTIONS:
        if option.id == option_id:
            return option.model_copy()
    raise InvalidShippingMethodError(option_id)


class CheckoutService:
    """Service for managing checkout sessions and turning them into orders."""

    def __init__(self, db: Database, cart_cache: Optional[CartCache] = None):
        self.db = db
        self.sessions = db["checkout_sessions"]
        self.carts = CartService(db, cart_cache)
        self.cart_reader = self.carts.reader
        self.order_service = OrderService(db)

    # ------------------------- helpers -------------------------
    @staticmethod
    def _to_session(doc: dict) -> PersistedSession:
        return PersistedSession.model_validate(serialize_doc(doc))

    def _find_session_doc(self, session_id: str) -> Optional[dict]:
        # duplicates are tolerated, the most recently updated row wins
        return self.sessions.find_one({"id": session_id}, sort=[("updated_at", DESCENDING)])

    def _cart_subtotal(self, cart_id: Optional[str]) -> float:
        if not cart_id:
            return 0.0
        return calculate_subtotal(self.cart_reader.get_cart_items(cart_id))

    @staticmethod
    def _ephemeral(session_id: str, cart_id: Optional[str], base: Optional[dict] = None, **fields) -> EphemeralSession:
        now = utcnow()
        data = dict(serialize_doc(base) or {})
        data.update(fields)
        data["id"] = session_id
        data["cart_id"] = data.get("cart_id") or cart_id
        data.setdefault("created_at", now)
        data["updated_at"] = now
        data.pop("durability", None)
        return EphemeralSession.model_validate(data)

    # ------------------------- sessions -------------------------
    def get_or_create_checkout_session(self, cart_id: str, user_id: Optional[str] = None) -> CheckoutSession:
        """Returns the cart's checkout session, creating it if needed.

        Never raises: when storage is unreachable the session comes back as
        an EphemeralSession with a fresh id and the current cart subtotal.
        """
        logger.info("Starting checkout session creation/retrieval for cart %s", cart_id)
        items = self.cart_reader.get_cart_items(cart_id)
        subtotal = calculate_subtotal(items)
        session_id = new_id()
        now = utcnow()

        try:
            doc = self.sessions.find_one_and_update(
                {"cart_id": cart_id},
                {
                    "$setOnInsert": {
                        "id": session_id,
                        "user_id": user_id,
                        "current_step": "information",
                        "subtotal": subtotal,
                        "shipping_cost": 0.0,
                        "tax": 0.0,
                        "total": subtotal,
                        "created_at": now,
                        "updated_at": now,
                    }
                },
                sort=[("updated_at", DESCENDING)],
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.warning("Could not persist checkout session for cart %s, returning ephemeral session %s: %s",
                           cart_id, session_id, e)
            doc = None

        if doc:
            session = self._to_session(doc)
            logger.info("Using checkout session %s for cart %s", session.id, cart_id)
            return session

        return EphemeralSession(
            id=session_id,
            cart_id=cart_id,
            user_id=user_id,
            subtotal=subtotal,
            total=subtotal,
            created_at=now,
            updated_at=now,
        )

    def get_checkout_session(self, session_id: str) -> CheckoutSession:
        try:
            doc = self._find_session_doc(session_id)
        except PyMongoError as e:
            raise StorageError("get_checkout_session", e) from e
        if doc:
            return self._to_session(doc)
        logger.info("No checkout session found with id %s, returning ephemeral session", session_id)
        return self._ephemeral(session_id, None, current_step="information")

    def update_shipping_address(
        self,
        session_id: str,
        address: Address,
        guest_email: Optional[str] = None,
        cart_id: Optional[str] = None,
    ) -> CheckoutSession:
        now = utcnow()
        update = {
            "shipping_address": address.model_dump(),
            "current_step": "shipping",
            "updated_at": now,
        }
        if guest_email:
            update["guest_email"] = guest_email

        try:
            doc = self.sessions.find_one_and_update(
                {"id": session_id},
                {"$set": update},
                sort=[("updated_at", DESCENDING)],
                return_document=ReturnDocument.AFTER,
            )
            if doc:
                return self._to_session(doc)
            logger.info("Session %s not found for address update, treating as ephemeral", session_id)
        except PyMongoError as e:
            logger.warning("Address update failed for session %s, treating as ephemeral: %s", session_id, e)

        subtotal = self._cart_subtotal(cart_id)
        return self._ephemeral(
            session_id,
            cart_id,
            shipping_address=address,
            guest_email=guest_email,
            current_step="shipping",
            subtotal=subtotal,
            total=subtotal,
        )

    def update_shipping_method(
        self,
        session_id: str,
        option: ShippingOption,
        cart_id: Optional[str] = None,
    ) -> CheckoutSession:
        """Selects a shipping option and recomputes tax and total."""
        try:
            current = self._find_session_doc(session_id)
        except PyMongoError as e:
            logger.warning("Session lookup failed for %s during shipping update: %s", session_id, e)
            current = None

        if current is None:
            logger.info("No session found for id %s, computing an ephemeral session", session_id)
            subtotal = self._cart_subtotal(cart_id)
        else:
            subtotal = float(current.get("subtotal") or 0)

        shipping_cost = option.price
        tax, total = calculate_totals(subtotal, shipping_cost)
        logger.debug("Session %s totals: subtotal=%s shipping=%s tax=%s total=%s",
                     session_id, subtotal, shipping_cost, tax, total)
        values = {
            "shipping_method": option.method,
            "shipping_option": option.model_dump(),
            "shipping_cost": shipping_cost,
            "subtotal": subtotal,
            "tax": tax,
            "total": total,
            "current_step": "payment",
        }

        if current is not None:
            try:
                doc = self.sessions.find_one_and_update(
                    {"id": session_id},
                    {"$set": {**values, "updated_at": utcnow()}},
                    sort=[("updated_at", DESCENDING)],
                    return_document=ReturnDocument.AFTER,
                )
                if doc:
                    return self._to_session(doc)
                logger.info("No document returned after shipping update for %s, using computed values", session_id)
            except PyMongoError as e:
                logger.warning("Shipping update failed for session %s, using computed values: %s", session_id, e)

        return self._ephemeral(session_id, cart_id, base=current, **values)

    def update_payment_info(self, session_id: str, payment_info: PaymentInfo) -> CheckoutSession:
        """Stores payment details and advances to review.

        Storage errors propagate as StorageError since there is no safe
        fallback for payment details.
        """
        try:
            current = self._find_session_doc(session_id)
        except PyMongoError as e:
            raise StorageError("update_payment_info", e) from e

        billing_address = payment_info.billing_address
        if payment_info.billing_address_same_as_shipping:
            billing_address = current.get("shipping_address") if current else None
        elif billing_address is not None:
            billing_address = billing_address.model_dump()

        # card data never reaches storage, only what identifies the method
        stored_info = payment_info.model_dump(exclude={"billing_address"})
        values = {
            "payment_method": payment_info.type,
            "payment_info": stored_info,
            "billing_address": billing_address,
            "current_step": "review",
        }

        if current is None:
            logger.info("Session %s not found for payment update, returning ephemeral session", session_id)
            return self._ephemeral(session_id, None, **values)

        try:
            doc = self.sessions.find_one_and_update(
                {"id": session_id},
                {"$set": {**values, "updated_at": utcnow()}},
                sort=[("updated_at", DESCENDING)],
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise StorageError("update_payment_info", e) from e
        if not doc:
            return self._ephemeral(session_id, None, base=current, **values)
        return self._to_session(doc)

    def update_checkout_session_step(self, session_id: str, step: CheckoutStep) -> None:
        try:
            self.sessions.update_many({"id": session_id}, {"$set": {"current_step": step, "updated_at": utcnow()}})
        except PyMongoError as e:
            raise StorageError("update_checkout_session_step", e) from e

    # ------------------------- orders -------------------------
    def create_order(self, session_id: str) -> Order:
        """Finalizes a session into an order and empties the source cart.

        The writes are sequential with no surrounding transaction. Once the
        order row exists, failures in the cleanup steps are logged and the
        order is still returned, so a retry after a partial failure can
        produce a duplicate order.
        """
        try:
            session_doc = self._find_session_doc(session_id)
        except PyMongoError as e:
            raise StorageError("create_order: load session", e) from e
        if not session_doc:
            raise SessionNotFoundError(session_id)
        session = self._to_session(session_doc)

        try:
            cart_items = self.cart_reader.fetch_cart_items(session.cart_id)
        except PyMongoError as e:
            raise StorageError("create_order: load cart items", e) from e

        order_id = new_id()
        now = utcnow()
        order_doc = {
            "id": order_id,
            "checkout_session_id": session.id,
            "cart_id": session.cart_id,
            "user_id": session.user_id,
            "guest_email": session.guest_email,
            "order_number": generate_order_number(now),
            "status": "created",
            "payment_status": "pending",
            "payment_method": session.payment_method,
            "payment_provider": session.payment_info.provider if session.payment_info else None,
            "shipping_address": session_doc.get("shipping_address"),
            "billing_address": session_doc.get("billing_address"),
            "shipping_method": session.shipping_method,
            "shipping_cost": session.shipping_cost,
            "subtotal": session.subtotal,
            "tax": session.tax,
            "total": session.total,
            "created_at": now,
            "updated_at": now,
        }
        item_docs = [
            {
                "id": new_id(),
                "order_id": order_id,
                "product_id": item.product_id,
                "variant_id": item.variant_id,
                "name": (item.product.name if item.product else None) or f"Product ID: {item.product_id[:8]}",
                "sku": (item.product.sku if item.product else None) or f"SKU: {item.id[:8]}",
                "quantity": item.quantity,
                "unit_price": item.price,
                "total_price": round(item.price * item.quantity, 2),
                "image_url": item.product.image_url if item.product else None,
                "options": {},
                "created_at": now,
            }
            for item in cart_items
        ]

        try:
            self.db["orders"].insert_one(order_doc)
        except PyMongoError as e:
            raise StorageError("create_order: insert order", e) from e
        logger.info("Created order %s (%s) from session %s", order_doc["order_number"], order_id, session_id)

        if item_docs:
            try:
                self.db["order_items"].insert_many(item_docs)
            except PyMongoError as e:
                logger.error("Failed to insert items for order %s, removing order: %s", order_id, e)
                try:
                    self.db["orders"].delete_one({"id": order_id})
                except PyMongoError as cleanup_error:
                    logger.error("Could not remove order %s after item failure: %s", order_id, cleanup_error)
                raise StorageError("create_order: insert order items", e) from e

        try:
            self.update_checkout_session_step(session_id, "confirmation")
        except StorageError as e:
            logger.error("Order %s created but session %s was not advanced: %s", order_id, session_id, e)

        try:
            self.carts.mark_completed(session.cart_id)
        except StorageError as e:
            logger.error("Order %s created but cart %s was not marked completed: %s", order_id, session.cart_id, e)

        try:
            deleted = self.carts.clear_items(session.cart_id)
            logger.info("Removed %d item(s) from cart %s after order creation", deleted, session.cart_id)
        except StorageError as e:
            # the order exists, a stale cart is the lesser problem
            logger.error("Failed to clear cart items for cart %s after order creation: %s", session.cart_id, e)

        return self.order_service.build_order(order_doc, item_docs, [])
