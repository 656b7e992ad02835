"""Tests for the client-local guest cart."""

import json

from cartbridge.guest_cart import STORAGE_KEY, GuestCartStore
from cartbridge.models import GuestCartLine


def line(product_id="p1", quantity=1, **kwargs):
    return GuestCartLine(
        product_id=product_id,
        name=kwargs.pop("name", "Linen Shirt"),
        price=kwargs.pop("price", 4800),
        quantity=quantity,
        slug=product_id,
        **kwargs,
    )


class TestGuestCartStore:
    def test_empty_by_default(self):
        assert GuestCartStore().items() == []

    def test_add_sums_quantities(self):
        store = GuestCartStore()
        store.add(line(quantity=2))
        store.add(line(quantity=3))

        items = store.items()
        assert len(items) == 1
        assert items[0].quantity == 5

    def test_add_replaces_variant_label_only_when_given(self):
        store = GuestCartStore()
        store.add(line(variant_label="White / M"))
        store.add(line(variant_label=""))
        assert store.items()[0].variant_label == "White / M"

        store.add(line(variant_label="Navy / M"))
        assert store.items()[0].variant_label == "Navy / M"

    def test_set_quantity_zero_removes(self):
        store = GuestCartStore.from_lines([line("p1"), line("p2")])
        store.set_quantity("p1", 0)
        assert [i.product_id for i in store.items()] == ["p2"]

        store.set_quantity("p2", -3)
        assert store.items() == []

    def test_set_quantity_updates(self):
        store = GuestCartStore.from_lines([line("p1")])
        store.set_quantity("p1", 4)
        assert store.items()[0].quantity == 4

    def test_update_meta_and_remove(self):
        store = GuestCartStore.from_lines([line("p1"), line("p2")])
        store.update_meta("p2", image="/img/p2.jpg", group_id="g1")
        store.remove("p1")

        (remaining,) = store.items()
        assert remaining.product_id == "p2"
        assert remaining.image == "/img/p2.jpg"
        assert remaining.group_id == "g1"

    def test_clear(self):
        storage = {}
        store = GuestCartStore(storage)
        store.add(line())
        store.clear()
        assert STORAGE_KEY not in storage
        assert len(store) == 0

    def test_storage_format_uses_camel_case(self):
        storage = {}
        GuestCartStore(storage).add(line(group_id="g1", variant_label="White / M"))
        saved = json.loads(storage[STORAGE_KEY])
        assert saved == [
            {
                "productId": "p1",
                "name": "Linen Shirt",
                "price": 4800,
                "quantity": 1,
                "slug": "p1",
                "groupId": "g1",
                "variantLabel": "White / M",
            }
        ]

    def test_corrupt_storage_reads_empty(self):
        assert GuestCartStore({STORAGE_KEY: "{not json"}).items() == []
        assert GuestCartStore({STORAGE_KEY: '{"productId": "p1"}'}).items() == []

    def test_reads_lines_written_by_browser(self):
        raw = json.dumps([{"productId": "p9", "name": "Cap", "price": 1500, "quantity": 2, "slug": "p9"}])
        (item,) = GuestCartStore({STORAGE_KEY: raw}).items()
        assert item.product_id == "p9"
        assert item.quantity == 2
