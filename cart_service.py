import logging
from threading import Lock
from typing import Dict, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, get_documents, new_id, serialize_doc, utcnow
from errors import CartItemNotFoundError, StorageError
from schemas import Cart, CartItem, CartItemProduct

logger = logging.getLogger(__name__)


class CartCache:
    """Process-wide cached read path for cart contents, keyed by cart id."""

    def __init__(self):
        self._items: Dict[str, List[CartItem]] = {}
        self._lock = Lock()

    def get(self, cart_id: str) -> List[CartItem]:
        with self._lock:
            return list(self._items.get(cart_id, []))

    def put(self, cart_id: str, items: List[CartItem]) -> None:
        with self._lock:
            self._items[cart_id] = list(items)

    def invalidate(self, cart_id: str) -> None:
        with self._lock:
            self._items.pop(cart_id, None)


def calculate_subtotal(items: List[CartItem]) -> float:
    return round(sum((item.price or 0) * (item.quantity or 0) for item in items), 2)


class CartReader:
    """Reads cart line items, reconciling the cache against a direct query."""

    def __init__(self, db: Database, cache: Optional[CartCache] = None):
        self.db = db
        self.cache = cache if cache is not None else CartCache()

    def fetch_cart_items(self, cart_id: str) -> List[CartItem]:
        """Direct storage query. Raises PyMongoError on failure."""
        docs = self.db["cart_items"].find({"cart_id": cart_id}).sort("created_at", 1)
        return [CartItem.model_validate(serialize_doc(d)) for d in docs]

    def get_cart_items(self, cart_id: str) -> List[CartItem]:
        try:
            direct = self.fetch_cart_items(cart_id)
        except PyMongoError as e:
            logger.warning("Direct cart item query failed for cart %s, using cached items: %s", cart_id, e)
            return self.cache.get(cart_id)

        if not direct:
            # an empty stored cart is authoritative, drop whatever was cached
            self.cache.put(cart_id, [])
            return []

        cached = self.cache.get(cart_id)
        if not cached:
            self.cache.put(cart_id, direct)
            return direct

        cached_qty = {(i.product_id, i.variant_id): i.quantity for i in cached}
        direct_qty = {(i.product_id, i.variant_id): i.quantity for i in direct}
        if cached_qty.keys() != direct_qty.keys():
            logger.info("Cached items for cart %s differ from stored items, refreshing", cart_id)
            self.cache.put(cart_id, direct)
            return direct

        for key, quantity in direct_qty.items():
            if cached_qty[key] != quantity:
                logger.info(
                    "Quantity discrepancy for product %s in cart %s: %s stored, %s cached",
                    key[0], cart_id, quantity, cached_qty[key],
                )
                self.cache.put(cart_id, direct)
                return direct
        return cached


class CartService:
    def __init__(self, db: Database, cache: Optional[CartCache] = None):
        self.db = db
        self.reader = CartReader(db, cache)

    @property
    def cache(self) -> CartCache:
        return self.reader.cache

    def get_or_create_cart(self, anonymous_id: Optional[str] = None, user_id: Optional[str] = None) -> Cart:
        query = {"status": "active"}
        if user_id:
            query["user_id"] = user_id
        elif anonymous_id:
            query["anonymous_id"] = anonymous_id
        else:
            anonymous_id = new_id()
            query["anonymous_id"] = anonymous_id

        try:
            existing = self.db["carts"].find_one(query, sort=[("updated_at", DESCENDING)])
            if existing:
                return Cart.model_validate(serialize_doc(existing))
            cart = Cart(id=new_id(), anonymous_id=anonymous_id, user_id=user_id, status="active")
            create_document("carts", cart, database=self.db)
        except PyMongoError as e:
            raise StorageError("get_or_create_cart", e) from e
        logger.info("Created cart %s", cart.id)
        return cart

    def get_items(self, cart_id: str) -> List[CartItem]:
        return self.reader.get_cart_items(cart_id)

    def add_item(
        self,
        cart_id: str,
        product_id: str,
        quantity: int,
        price: float,
        variant_id: Optional[str] = None,
        product: Optional[CartItemProduct] = None,
    ) -> CartItem:
        now = utcnow()
        try:
            existing = self.db["cart_items"].find_one(
                {"cart_id": cart_id, "product_id": product_id, "variant_id": variant_id}
            )
            if existing:
                self.db["cart_items"].update_one(
                    {"id": existing["id"]},
                    {"$inc": {"quantity": quantity}, "$set": {"price": price, "updated_at": now}},
                )
                doc = self.db["cart_items"].find_one({"id": existing["id"]})
            else:
                item = CartItem(
                    id=new_id(),
                    cart_id=cart_id,
                    product_id=product_id,
                    variant_id=variant_id,
                    quantity=quantity,
                    price=price,
                    product=product,
                )
                item_id = create_document("cart_items", item, database=self.db)
                doc = self.db["cart_items"].find_one({"id": item_id})
            self.db["carts"].update_one({"id": cart_id}, {"$set": {"updated_at": now}})
        except PyMongoError as e:
            raise StorageError("add_item", e) from e
        finally:
            self.cache.invalidate(cart_id)
        return CartItem.model_validate(serialize_doc(doc))

    def update_quantity(self, item_id: str, quantity: int) -> Optional[CartItem]:
        """Sets an item's quantity. A quantity of zero or less removes the item."""
        if quantity <= 0:
            self.remove_item(item_id)
            return None
        try:
            doc = self.db["cart_items"].find_one({"id": item_id})
            if not doc:
                raise CartItemNotFoundError(item_id)
            self.db["cart_items"].update_one(
                {"id": item_id}, {"$set": {"quantity": quantity, "updated_at": utcnow()}}
            )
            doc = self.db["cart_items"].find_one({"id": item_id})
        except PyMongoError as e:
            raise StorageError("update_quantity", e) from e
        self.cache.invalidate(doc["cart_id"])
        return CartItem.model_validate(serialize_doc(doc))

    def remove_item(self, item_id: str) -> None:
        try:
            doc = self.db["cart_items"].find_one_and_delete({"id": item_id})
        except PyMongoError as e:
            raise StorageError("remove_item", e) from e
        if not doc:
            raise CartItemNotFoundError(item_id)
        self.cache.invalidate(doc["cart_id"])

    def clear_items(self, cart_id: str) -> int:
        try:
            result = self.db["cart_items"].delete_many({"cart_id": cart_id})
        except PyMongoError as e:
            raise StorageError("clear_items", e) from e
        finally:
            self.cache.invalidate(cart_id)
        return result.deleted_count

    def mark_completed(self, cart_id: str) -> None:
        try:
            self.db["carts"].update_one({"id": cart_id}, {"$set": {"status": "completed", "updated_at": utcnow()}})
        except PyMongoError as e:
            raise StorageError("mark_completed", e) from e

    def emergency_clear(self, anonymous_id: str, item_id: Optional[str] = None) -> dict:
        """Removes items from every active cart of an anonymous shopper.

        With ``item_id`` only that item is removed; otherwise each cart is
        emptied and marked cleared.
        """
        try:
            carts = get_documents("carts", {"anonymous_id": anonymous_id, "status": "active"}, database=self.db)
        except PyMongoError as e:
            raise StorageError("emergency_clear", e) from e
        if not carts:
            return {"success": True, "message": "No active carts found", "cleared": 0}

        cleared = 0
        for cart in carts:
            cart_id = cart["id"]
            try:
                if item_id:
                    cleared += self.db["cart_items"].delete_many({"cart_id": cart_id, "id": item_id}).deleted_count
                else:
                    cleared += self.db["cart_items"].delete_many({"cart_id": cart_id}).deleted_count
                    self.db["carts"].update_one(
                        {"id": cart_id}, {"$set": {"status": "cleared", "updated_at": utcnow()}}
                    )
            except PyMongoError as e:
                raise StorageError("emergency_clear", e) from e
            finally:
                self.cache.invalidate(cart_id)

        logger.info("Emergency clear removed %d item(s) across %d cart(s)", cleared, len(carts))
        return {"success": True, "message": f"Cleared {cleared} item(s)", "cleared": cleared}
