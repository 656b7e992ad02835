"""Gateway translating internal requests into upstream commerce API calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import quote

import httpx

from .config import Settings
from .credentials import CredentialStore
from .envelopes import (
    addresses_from_body,
    address_payload,
    cart_from_body,
    extract_collection,
    extract_message,
    pick_product,
    product_from_record,
    products_for_listing,
    record_product_id,
)
from .errors import (
    CartbridgeError,
    NotFoundError,
    UnauthenticatedError,
    ValidationError,
    upstream_error,
)
from .http_client import join_url, request_json
from .models import (
    ADDRESS_KINDS,
    PLACEHOLDER_IMAGE,
    Address,
    AddressForm,
    Cart,
    PostalLookup,
    Product,
    pick_kind,
)
from .postal import PostalLookupClient

logger = logging.getLogger(__name__)

LIST_PARAMS = {"page": 1, "size": 100}


class UpstreamGateway:
    """Cart, address, product and postal operations against upstream.

    Authenticated calls resolve a bearer header through the CredentialStore
    first and raise UnauthenticatedError when there is none, so callers can
    switch to guest behaviour.
    """

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient,
        credentials: CredentialStore,
        postal: PostalLookupClient | None = None,
    ):
        self.settings = settings
        self.http = http
        self.credentials = credentials
        self.postal = postal or PostalLookupClient(settings, http)

    @property
    def resource_base(self) -> str:
        return self.settings.product_api_base

    async def _auth_header(self) -> str:
        header = await self.credentials.get_auth_header()
        if not header:
            raise UnauthenticatedError()
        return header

    async def _call(
        self,
        method: str,
        base: str,
        path: str,
        failure: str,
        auth: bool = True,
        **kwargs,
    ) -> Any:
        headers = dict(kwargs.pop("headers", None) or {})
        if auth:
            headers["Authorization"] = await self._auth_header()
        url = join_url(base, path)
        status, body = await request_json(self.http, method, url, headers=headers, **kwargs)
        if status >= 400:
            message = extract_message(body) or failure
            logger.warning("%s %s -> %s: %s", method, path, status, message)
            raise upstream_error(status, message, body)
        return body

    # --- Cart ---

    async def get_cart(self) -> Cart:
        """Fetch the authenticated cart, filling in missing variant labels."""
        body = await self._call("GET", self.settings.cart_api_base, "/u/cart", "Failed to fetch cart")
        cart = cart_from_body(body, self.resource_base)
        missing = sorted({line.product_id for line in cart.lines if line.product_id and not line.variant_label})
        if missing:
            labels = await asyncio.gather(*(self._variant_label(pid) for pid in missing))
            label_map = dict(zip(missing, labels))
            for line in cart.lines:
                if not line.variant_label:
                    line.variant_label = label_map.get(line.product_id, "")
        return cart

    async def _variant_label(self, product_id: str) -> str:
        try:
            product = await self.get_product(product_id)
        except CartbridgeError as e:
            logger.warning("Variant label lookup for %s failed: %s", product_id, e)
            return ""
        return product.variant_label

    async def add_to_cart(self, product_id: str) -> Any:
        """Add one unit of a product. Upstream always adds quantity 1."""
        product_id = str(product_id or "").strip()
        if not product_id:
            raise ValidationError("product_id", "product_id is required")
        return await self._call(
            "POST",
            self.settings.cart_api_base,
            "/u/cart/add",
            "Failed to add to cart",
            json={"product_id": product_id},
        )

    async def set_quantity(self, order_line_id: str, quantity: int) -> Any:
        """Set a cart line's quantity; zero removes the line."""
        order_line_id = str(order_line_id or "").strip()
        if not order_line_id:
            raise ValidationError("order_item_id", "order_item_id and quantity are required")
        if quantity < 0:
            raise ValidationError("quantity", "quantity must not be negative")
        return await self._call(
            "PATCH",
            self.settings.cart_api_base,
            "/u/cart/edit",
            "Failed to update cart",
            json={"order_item_id": order_line_id, "quantity": quantity},
        )

    async def assign_address(self, kind: str, address_id: str) -> Any:
        """Attach a saved address to the pending cart as delivery or bill."""
        address_id = str(address_id or "").strip()
        if not address_id or kind not in ADDRESS_KINDS:
            raise ValidationError("address_id", "address_id and type are required")
        return await self._call(
            "PATCH",
            self.settings.cart_api_base,
            "/u/cart/address",
            "Failed to update cart address",
            json={"address_id": address_id, "type": kind},
        )

    async def confirm(self) -> Any:
        """Turn the pending cart into an order. Returns the raw upstream body."""
        return await self._call(
            "POST", self.settings.cart_api_base, "/u/cart/confirm", "Failed to confirm cart"
        )

    async def clear_cart(self) -> Any:
        return await self._call(
            "DELETE", self.settings.cart_api_base, "/u/cart", "Failed to clear cart"
        )

    # --- Addresses ---

    async def list_addresses(self, kind: str) -> list[Address]:
        body = await self._call(
            "GET", self.settings.cart_api_base, "/u/address", "Failed to fetch addresses"
        )
        return addresses_from_body(body, pick_kind(kind))

    async def save_address(self, form: AddressForm, kind: str, address_id: str | None = None) -> Any:
        """
        Create or update an address through the upsert endpoint.

        Upstream does not echo the stored record; callers that need the id
        re-list and locate it.
        """
        payload = address_payload(form, kind)
        if address_id:
            payload["address_id"] = address_id
        return await self._call(
            "PATCH",
            self.settings.cart_api_base,
            "/u/address/update",
            "Failed to save address",
            json=payload,
        )

    # --- Products ---

    async def get_product(self, product_id: str) -> Product:
        """
        Fetch one product.

        Raises:
            NotFoundError: If upstream has no such product.
        """
        records = await self._product_records(product_id)
        record = pick_product(records, product_id)
        if record is None or not record_product_id(record):
            raise NotFoundError("Product", product_id)
        return product_from_record(record, self.resource_base, placeholder=PLACEHOLDER_IMAGE)

    async def _product_records(self, product_id: str) -> list[dict[str, Any]]:
        try:
            body = await self._call(
                "GET",
                self.resource_base,
                f"/product/{quote(str(product_id), safe='')}",
                "Failed to fetch product",
                auth=False,
            )
        except CartbridgeError as e:
            if getattr(e, "status_code", None) == 404:
                raise NotFoundError("Product", product_id) from e
            raise
        return extract_collection(body)

    async def search_products(self, query: str) -> list[Product]:
        query = (query or "").strip()
        if not query:
            return []
        body = await self._call(
            "GET",
            self.resource_base,
            "/product/search",
            "Failed to search products",
            auth=False,
            params={"q": query, **LIST_PARAMS},
        )
        return products_for_listing(extract_collection(body), self.resource_base)

    async def list_products(self) -> list[Product]:
        body = await self._call(
            "GET",
            self.resource_base,
            "/product/all",
            "Failed to list products",
            auth=False,
            params=LIST_PARAMS,
        )
        return products_for_listing(extract_collection(body), self.resource_base)

    async def get_variants(self, product_id: str) -> list[Product]:
        """
        All products sharing the group of product_id.

        ``/product/{id}`` usually returns the whole group; when it returns a
        single record, a search on the group id fills in the siblings.
        """
        if not product_id:
            return []
        seen: set[str] = set()
        variants: list[Product] = []

        def collect(records: list[dict[str, Any]], group_id: str | None = None) -> None:
            for record in records:
                if group_id is not None and str(record.get("group_id")) != group_id:
                    continue
                rid = record_product_id(record)
                if not rid or rid in seen:
                    continue
                seen.add(rid)
                variants.append(
                    product_from_record(record, self.resource_base, placeholder=PLACEHOLDER_IMAGE)
                )

        collect(await self._product_records(product_id))
        group_id = variants[0].group_id if variants else None
        if len(variants) <= 1 and group_id:
            body = await self._call(
                "GET",
                self.resource_base,
                "/product/search",
                "Failed to search products",
                auth=False,
                params={"q": group_id, **LIST_PARAMS},
            )
            collect(extract_collection(body), group_id)
        return variants

    # --- Postal lookup ---

    async def lookup_postal(self, zip_code: str) -> PostalLookup:
        return await self.postal.lookup(zip_code)
