"""Adapters from upstream response envelopes to internal models.

The upstream API wraps payloads inconsistently: product collections arrive
under ``Products``, ``Items``, ``items`` or as a bare array, ids may be
``product_id``, ``productId`` or ``id``, and images are often relative
paths. Each adapter here owns one endpoint's variants so nothing past the
gateway has to care.
"""

import re
from typing import Any

from .models import (
    PLACEHOLDER_IMAGE,
    Address,
    AddressForm,
    Cart,
    CartLine,
    PostalLookup,
    Product,
    pick_kind,
    variant_label,
)

# Priority order for product collection keys under "data".
COLLECTION_KEYS = ("Products", "Items", "items")

DESCRIPTION_PREVIEW_LENGTH = 100

_DATE_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})")


def extract_collection(body: Any) -> list[dict[str, Any]]:
    """Return the record list from a product-style envelope, or []."""
    data = body.get("data") if isinstance(body, dict) else None
    if isinstance(data, dict):
        for key in COLLECTION_KEYS:
            if isinstance(data.get(key), list):
                return data[key]
    if isinstance(data, list):
        return data
    return []


def extract_message(body: Any) -> str | None:
    """Upstream error text, if the body carries one."""
    if isinstance(body, dict):
        message = body.get("message")
        if isinstance(message, str) and message:
            return message
    return None


def record_product_id(record: dict[str, Any]) -> str:
    for key in ("product_id", "productId", "id"):
        value = record.get(key)
        if value is not None and value != "":
            return str(value)
    return ""


def normalize_image_url(url: str | None, resource_base: str) -> str:
    """Qualify a relative image path against the resource base.

    Absolute http(s) URLs pass through unchanged; empty input yields "".
    """
    if not url:
        return ""
    if url.startswith("http://") or url.startswith("https://"):
        return url
    return f"{resource_base.rstrip('/')}/resource/{url.lstrip('/')}"


def _image_urls(record: dict[str, Any], resource_base: str) -> list[str]:
    images = record.get("images")
    if not isinstance(images, list):
        return []
    urls = []
    for image in images:
        raw = image.get("url") if isinstance(image, dict) else image
        url = normalize_image_url(str(raw or ""), resource_base)
        if url:
            urls.append(url)
    return urls


def product_from_record(
    record: dict[str, Any],
    resource_base: str,
    preview: bool = False,
    placeholder: str = "",
) -> Product:
    """Map one upstream product record.

    Args:
        record: Raw product record.
        resource_base: Base URL images are qualified against.
        preview: Truncate the description for list views.
        placeholder: Image to use when the record has none.
    """
    product_id = record_product_id(record)
    images = _image_urls(record, resource_base)
    description = str(record.get("description") or "")
    if preview:
        description = description[:DESCRIPTION_PREVIEW_LENGTH]
    has_stock = record.get("has_stock")
    point = record.get("point")
    group_id = record.get("group_id")
    return Product(
        id=product_id,
        slug=product_id,
        name=record.get("name") or "",
        description=description,
        price=float(record.get("price") or 0),
        stock=int(record.get("stock") or 0),
        type=record.get("type") or "",
        category=record.get("category") or "",
        dimension1=record.get("dimension1") or "",
        dimension2=record.get("dimension2") or "",
        group_id=str(group_id) if group_id else None,
        has_stock=has_stock if isinstance(has_stock, bool) else None,
        point=point if isinstance(point, (int, float)) and not isinstance(point, bool) else None,
        image=images[0] if images else placeholder,
        images=images,
    )


def pick_product(records: list[dict[str, Any]], product_id: str) -> dict[str, Any] | None:
    """The record matching product_id, else the first one."""
    for record in records:
        if record_product_id(record) == str(product_id):
            return record
    return records[0] if records else None


def products_for_listing(records: list[dict[str, Any]], resource_base: str) -> list[Product]:
    """Map a search/list result, keeping one entry per group variant."""
    seen: set[str] = set()
    products = []
    for record in records:
        product_id = record_product_id(record)
        if not product_id:
            continue
        group_id = record.get("group_id")
        if group_id:
            key = f"{group_id}__{record.get('dimension1') or record.get('dimension2') or product_id}"
        else:
            key = product_id
        if key in seen:
            continue
        seen.add(key)
        products.append(product_from_record(record, resource_base, preview=True))
    return products


def cart_from_body(body: Any, resource_base: str) -> Cart:
    """Map the ``GET /u/cart`` envelope."""
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict):
        return Cart()
    items = data.get("order_items")
    lines = []
    for item in items if isinstance(items, list) else []:
        product_id = str(item.get("product_id") or "")
        images = item.get("images")
        raw_image = ""
        if isinstance(images, list) and images and isinstance(images[0], dict):
            raw_image = str(images[0].get("url") or "")
        lines.append(
            CartLine(
                order_line_id=str(item.get("id") or item.get("order_item_id") or ""),
                product_id=product_id,
                name=item.get("name") or "",
                price=float(item.get("price") or 0),
                quantity=max(1, int(item.get("quantity") or 1)),
                slug=product_id,
                image=normalize_image_url(raw_image, resource_base) or PLACEHOLDER_IMAGE,
                variant_label=variant_label(item.get("dimension1"), item.get("dimension2")),
            )
        )
    return Cart(lines=lines, total=float(data.get("total_price") or 0))


def address_from_record(record: dict[str, Any]) -> Address:
    """Map one ``GET /u/address`` record.

    Upstream stores city, town and street in a single field; it comes back
    in ``city`` and the split parts stay empty.
    """
    return Address(
        id=str(record.get("address_id") or ""),
        kind=pick_kind(record.get("type")),
        first_name=record.get("first_name") or "",
        last_name=record.get("last_name") or "",
        first_name_kana=record.get("kana_first_name") or "",
        last_name_kana=record.get("kana_last_name") or "",
        gender=record.get("gender") or "",
        date_of_birth=record.get("date_of_birth") or "",
        postal_code=record.get("post_code") or "",
        prefecture=record.get("prefecture") or "",
        city=record.get("city_town_village") or "",
        building=record.get("address_details") or "",
        phone=record.get("phone") or "",
        email=record.get("email") or "",
    )


def addresses_from_body(body: Any, kind: str) -> list[Address]:
    data = body.get("data") if isinstance(body, dict) else None
    records = data if isinstance(data, list) else []
    addresses = [
        address_from_record(r) for r in records
        if isinstance(r, dict) and pick_kind(r.get("type")) == kind
    ]
    return [a for a in addresses if a.id]


def normalize_date(value: str | None) -> str | None:
    if not value:
        return None
    match = _DATE_PREFIX.match(str(value))
    return match.group(1) if match else str(value)


def address_payload(form: AddressForm, kind: str) -> dict[str, Any]:
    """Build the ``PATCH /u/address/update`` body."""
    payload: dict[str, Any] = {
        "last_name": form.last_name,
        "first_name": form.first_name,
        "kana_last_name": form.last_name_kana,
        "kana_first_name": form.first_name_kana,
        "phone": form.phone,
        "email": form.email,
        "type": pick_kind(kind),
        "post_code": form.postal_code,
        "prefecture": form.prefecture,
        "city_town_village": "".join(p for p in (form.city, form.town, form.street) if p),
        "address_details": " ".join(p for p in (form.building, form.room) if p),
    }
    if form.gender:
        payload["gender"] = form.gender
    date_of_birth = normalize_date(form.date_of_birth)
    if date_of_birth:
        payload["date_of_birth"] = date_of_birth
    return payload


def postal_from_body(body: Any, zip_code: str) -> PostalLookup | None:
    """First match of a postal search, or None when nothing was found."""
    addresses = body.get("addresses") if isinstance(body, dict) else None
    if not isinstance(addresses, list) or not addresses:
        return None
    first = addresses[0]
    return PostalLookup(
        zip=zip_code,
        prefecture=first.get("pref_name") or "",
        city=first.get("city_name") or "",
        town=first.get("town_name") or "",
    )


def token_from_postal_body(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    return body.get("token") or body.get("access_token") or None


# Probed in order when reading the confirm response.
ORDER_ID_PATHS = (
    ("data", "order_id"),
    ("data", "orderId"),
    ("order_id",),
    ("orderId",),
)


def order_id_from_body(body: Any) -> str | None:
    """The order identifier from a confirm response, if any field has it."""
    for path in ORDER_ID_PATHS:
        value: Any = body
        for key in path:
            value = value.get(key) if isinstance(value, dict) else None
        if value:
            return str(value)
    return None
