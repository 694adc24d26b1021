"""Tests for cart reads, reconciliation and cart mutations."""

from datetime import datetime, timezone

import pytest

from cart_service import CartCache, CartReader, CartService, calculate_subtotal
from conftest import seed_cart
from errors import CartItemNotFoundError, StorageError
from schemas import CartItem


def make_item(product_id="prod-0001-aaaa", quantity=2, price=25.0, cart_id="cart-1"):
    return CartItem(id=f"item-{product_id}", cart_id=cart_id, product_id=product_id, quantity=quantity, price=price)


class TestCalculateSubtotal:
    def test_sums_price_times_quantity(self):
        items = [make_item(quantity=2, price=25.0), make_item(product_id="p2", quantity=3, price=1.1)]
        assert calculate_subtotal(items) == pytest.approx(53.3)

    def test_empty(self):
        assert calculate_subtotal([]) == 0


class TestCartReader:
    def test_direct_rows_with_empty_cache_are_used_and_cached(self, db, seeded_cart):
        cache = CartCache()
        reader = CartReader(db, cache)

        items = reader.get_cart_items(seeded_cart)

        assert [i.quantity for i in items] == [2]
        assert [i.quantity for i in cache.get(seeded_cart)] == [2]

    def test_quantity_discrepancy_prefers_direct(self, db, seeded_cart):
        cache = CartCache()
        cache.put(seeded_cart, [make_item(quantity=5)])

        items = CartReader(db, cache).get_cart_items(seeded_cart)

        assert items[0].quantity == 2
        assert cache.get(seeded_cart)[0].quantity == 2

    def test_matching_cache_is_returned(self, db, seeded_cart):
        cache = CartCache()
        cached = [make_item(quantity=2)]
        cache.put(seeded_cart, cached)

        items = CartReader(db, cache).get_cart_items(seeded_cart)

        assert items[0].id == cached[0].id

    def test_empty_stored_cart_overrides_cache(self, db, seeded_cart):
        cache = CartCache()
        reader = CartReader(db, cache)
        reader.get_cart_items(seeded_cart)
        db["cart_items"].delete_many({"cart_id": seeded_cart})

        assert reader.get_cart_items(seeded_cart) == []
        assert cache.get(seeded_cart) == []

    def test_item_removed_elsewhere_is_not_served_from_cache(self, db):
        seed_cart(db, "cart-9", items=(("prod-a", 25.0, 2), ("prod-b", 10.0, 1)))
        cache = CartCache()
        reader = CartReader(db, cache)
        reader.get_cart_items("cart-9")
        db["cart_items"].delete_one({"cart_id": "cart-9", "product_id": "prod-b"})

        items = reader.get_cart_items("cart-9")

        assert [i.product_id for i in items] == ["prod-a"]
        assert calculate_subtotal(items) == pytest.approx(50.0)

    def test_item_added_elsewhere_is_picked_up(self, db, seeded_cart):
        cache = CartCache()
        reader = CartReader(db, cache)
        reader.get_cart_items(seeded_cart)
        db["cart_items"].insert_one(
            {"id": "item-new", "cart_id": seeded_cart, "product_id": "prod-new", "variant_id": None,
             "quantity": 1, "price": 5.0, "created_at": datetime.now(timezone.utc)}
        )

        assert len(reader.get_cart_items(seeded_cart)) == 2

    def test_storage_error_falls_back_to_cache(self, unreachable_db):
        cache = CartCache()
        cache.put("cart-1", [make_item()])

        items = CartReader(unreachable_db, cache).get_cart_items("cart-1")

        assert len(items) == 1
        assert CartReader(unreachable_db, CartCache()).get_cart_items("cart-1") == []


class TestCartService:
    def test_get_or_create_cart_reuses_active_cart(self, db):
        service = CartService(db)
        first = service.get_or_create_cart(anonymous_id="anon-9")
        second = service.get_or_create_cart(anonymous_id="anon-9")

        assert first.id == second.id
        assert db["carts"].count_documents({"anonymous_id": "anon-9"}) == 1

    def test_add_item_merges_same_product(self, db):
        service = CartService(db)
        cart = service.get_or_create_cart(anonymous_id="anon-2")

        service.add_item(cart.id, "prod-1", 1, 10.0)
        item = service.add_item(cart.id, "prod-1", 2, 10.0)

        assert item.quantity == 3
        assert len(service.get_items(cart.id)) == 1

    def test_add_item_invalidates_cache(self, db, seeded_cart):
        service = CartService(db)
        service.get_items(seeded_cart)

        service.add_item(seeded_cart, "prod-2", 1, 5.0)

        assert len(service.get_items(seeded_cart)) == 2

    def test_update_quantity(self, db, seeded_cart):
        service = CartService(db)
        item = service.get_items(seeded_cart)[0]

        updated = service.update_quantity(item.id, 7)

        assert updated.quantity == 7
        assert service.get_items(seeded_cart)[0].quantity == 7

    def test_update_quantity_zero_removes(self, db, seeded_cart):
        service = CartService(db)
        item = service.get_items(seeded_cart)[0]

        assert service.update_quantity(item.id, 0) is None
        assert db["cart_items"].count_documents({"cart_id": seeded_cart}) == 0

    def test_remove_missing_item(self, db):
        with pytest.raises(CartItemNotFoundError):
            CartService(db).remove_item("nope")

    def test_mutation_on_unreachable_storage(self, unreachable_db):
        with pytest.raises(StorageError):
            CartService(unreachable_db).add_item("cart-1", "prod-1", 1, 10.0)


class TestEmergencyClear:
    def test_clears_every_active_cart(self, db):
        seed_cart(db, "cart-a", anonymous_id="anon-7")
        seed_cart(db, "cart-b", items=(("p1", 1.0, 1), ("p2", 2.0, 1)), anonymous_id="anon-7")

        result = CartService(db).emergency_clear("anon-7")

        assert result["success"] is True
        assert result["cleared"] == 3
        assert db["cart_items"].count_documents({}) == 0
        assert db["carts"].count_documents({"status": "cleared"}) == 2

    def test_single_item(self, db, seeded_cart):
        item_id = db["cart_items"].find_one({"cart_id": seeded_cart})["id"]
        seed_cart(db, "cart-2", items=(("p9", 3.0, 1),), anonymous_id="anon-1")

        result = CartService(db).emergency_clear("anon-1", item_id=item_id)

        assert result["cleared"] == 1
        assert db["cart_items"].count_documents({}) == 1
        assert db["carts"].count_documents({"status": "active"}) == 2

    def test_no_active_carts(self, db):
        result = CartService(db).emergency_clear("anon-unknown")

        assert result == {"success": True, "message": "No active carts found", "cleared": 0}
