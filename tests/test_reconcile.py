"""Tests for merging the guest cart into the upstream cart."""

import pytest

from cartbridge.errors import Upstream4xxError, Upstream5xxError
from cartbridge.guest_cart import GuestCartStore
from cartbridge.models import GuestCartLine
from cartbridge.reconcile import ReconciliationEngine


def guest_cart(*lines):
    return GuestCartStore.from_lines(
        [GuestCartLine(product_id=pid, name=pid, price=100, quantity=qty, slug=pid) for pid, qty in lines]
    )


class TestReconcile:
    @pytest.mark.asyncio
    async def test_empty_guest_cart_makes_no_calls(self, gateway, fake_upstream):
        result = await ReconciliationEngine(gateway).reconcile(GuestCartStore())

        assert result.is_noop
        assert fake_upstream.requests == []

    @pytest.mark.asyncio
    async def test_adds_then_patches_quantities(self, gateway, fake_upstream):
        cart = guest_cart(("p1", 3), ("p3", 1))

        result = await ReconciliationEngine(gateway).reconcile(cart)

        quantities = {line["product_id"]: line["quantity"] for line in fake_upstream.cart}
        assert quantities == {"p1": 3, "p3": 1}
        assert len(fake_upstream.cart) == 2
        assert result.added == ["p1", "p3"]
        assert result.quantity_updates == {"p1": 3}
        assert cart.items() == []
        assert fake_upstream.calls("PATCH", "/u/cart/edit") == 1

    @pytest.mark.asyncio
    async def test_existing_products_keep_upstream_quantity(self, gateway, fake_upstream):
        fake_upstream.add_cart_line("p1", quantity=2)
        cart = guest_cart(("p1", 5), ("p2", 2))

        result = await ReconciliationEngine(gateway).reconcile(cart)

        quantities = {line["product_id"]: line["quantity"] for line in fake_upstream.cart}
        assert quantities == {"p1": 2, "p2": 2}
        assert result.skipped == ["p1"]
        assert result.added == ["p2"]
        assert fake_upstream.calls("POST", "/u/cart/add") == 1

    @pytest.mark.asyncio
    async def test_cart_refetched_even_without_quantity_patches(self, gateway, fake_upstream):
        await ReconciliationEngine(gateway).reconcile(guest_cart(("p3", 1)))

        assert fake_upstream.calls("GET", "/u/cart") == 2
        assert fake_upstream.calls("PATCH", "/u/cart/edit") == 0

    @pytest.mark.asyncio
    async def test_failure_keeps_guest_cart(self, gateway, fake_upstream):
        cart = guest_cart(("p1", 1), ("missing", 1), ("p3", 1))

        with pytest.raises(Upstream4xxError):
            await ReconciliationEngine(gateway).reconcile(cart)

        assert [line.product_id for line in cart.items()] == ["p1", "missing", "p3"]
        # p1 was added before the failure and stays upstream.
        assert [line["product_id"] for line in fake_upstream.cart] == ["p1"]

    @pytest.mark.asyncio
    async def test_patch_failure_keeps_guest_cart(self, gateway, fake_upstream):
        fake_upstream.failures[("PATCH", "/u/cart/edit")] = (502, {"message": "bad gateway"})
        cart = guest_cart(("p1", 2))

        with pytest.raises(Upstream5xxError):
            await ReconciliationEngine(gateway).reconcile(cart)

        assert len(cart) == 1

    @pytest.mark.asyncio
    async def test_retry_after_partial_failure_skips_added_line(self, gateway, fake_upstream):
        fake_upstream.failures[("PATCH", "/u/cart/edit")] = (502, {"message": "bad gateway"})
        cart = guest_cart(("p1", 2))
        with pytest.raises(Upstream5xxError):
            await ReconciliationEngine(gateway).reconcile(cart)

        del fake_upstream.failures[("PATCH", "/u/cart/edit")]
        result = await ReconciliationEngine(gateway).reconcile(cart)

        # The earlier add landed, so the retry treats p1 as already present.
        assert result.skipped == ["p1"]
        assert fake_upstream.cart[0]["quantity"] == 1
