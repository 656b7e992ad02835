"""Data models for cartbridge."""

import time
from urllib.parse import quote
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any

ADDRESS_KINDS = ("delivery", "bill")
PLACEHOLDER_IMAGE = "/hero/slide-1.webp"


def _now_ms() -> int:
    """Return the current time as epoch milliseconds."""
    return int(time.time() * 1000)


def pick_kind(value: str | None) -> str:
    """Normalize an address kind, defaulting to delivery."""
    kind = (value or "").lower()
    return kind if kind in ADDRESS_KINDS else "delivery"


def variant_label(*dimensions: str | None) -> str:
    """Join the non-empty variant dimensions for display."""
    return " / ".join(d for d in dimensions if d)


class BillingMode(str, Enum):
    SAME = "same"
    EXISTING = "existing"
    NEW = "new"


class CheckoutState(str, Enum):
    LOADING = "loading"
    GUEST = "guest"
    READY = "ready"
    CONFIRMING = "confirming"
    DONE = "done"
    FAILED = "failed"


@dataclass
class Credential:
    """A bearer credential with its renewal token.

    Timestamps are epoch milliseconds; zero means unset.
    """

    access_token: str | None = None
    refresh_token: str | None = None
    issued_at: int = 0
    expires_at: int = 0

    def is_valid(self, now: int, buffer_ms: int) -> bool:
        return bool(self.access_token and self.expires_at and now < self.expires_at - buffer_ms)

    @property
    def is_empty(self) -> bool:
        return not self.access_token and not self.refresh_token

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Credential":
        return cls(
            access_token=data.get("access_token") or None,
            refresh_token=data.get("refresh_token") or None,
            issued_at=int(data.get("issued_at") or 0),
            expires_at=int(data.get("expires_at") or 0),
        )


@dataclass
class TokenPayload:
    """A token endpoint answer."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int = 0


@dataclass
class GuestCartLine:
    """A cart line held client-side before login."""

    product_id: str
    name: str
    price: float
    quantity: int
    slug: str
    image: str | None = None
    group_id: str | None = None
    variant_label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "productId": self.product_id,
            "name": self.name,
            "price": self.price,
            "quantity": self.quantity,
            "slug": self.slug,
        }
        if self.image is not None:
            result["image"] = self.image
        if self.group_id is not None:
            result["groupId"] = self.group_id
        if self.variant_label is not None:
            result["variantLabel"] = self.variant_label
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GuestCartLine":
        return cls(
            product_id=str(data.get("productId") or data.get("product_id") or ""),
            name=data.get("name", ""),
            price=float(data.get("price") or 0),
            quantity=int(data.get("quantity") or 1),
            slug=data.get("slug") or str(data.get("productId") or data.get("product_id") or ""),
            image=data.get("image"),
            group_id=data.get("groupId") or data.get("group_id"),
            variant_label=data.get("variantLabel") or data.get("variant_label"),
        )


@dataclass
class CartLine:
    """A line of the upstream (authenticated) cart."""

    order_line_id: str
    product_id: str
    name: str
    price: float
    quantity: int
    slug: str
    image: str = PLACEHOLDER_IMAGE
    variant_label: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "orderItemId": self.order_line_id,
            "productId": self.product_id,
            "name": self.name,
            "price": self.price,
            "quantity": self.quantity,
            "slug": self.slug,
            "image": self.image,
            "variantLabel": self.variant_label,
        }


@dataclass
class Cart:
    lines: list[CartLine] = field(default_factory=list)
    total: float = 0

    def find(self, product_id: str) -> CartLine | None:
        for line in self.lines:
            if line.product_id == product_id:
                return line
        return None

    def product_ids(self) -> set[str]:
        return {line.product_id for line in self.lines}


@dataclass
class AddressForm:
    """Address fields as entered in the UI."""

    last_name: str = ""
    first_name: str = ""
    last_name_kana: str = ""
    first_name_kana: str = ""
    gender: str = ""
    date_of_birth: str = ""
    postal_code: str = ""
    prefecture: str = ""
    city: str = ""
    town: str = ""
    street: str = ""
    building: str = ""
    room: str = ""
    phone: str = ""
    email: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AddressForm":
        known = {f.name for f in fields(cls)}
        return cls(**{k: str(v) for k, v in data.items() if k in known and v is not None})


@dataclass
class Address(AddressForm):
    """A saved upstream address."""

    id: str = ""
    kind: str = "delivery"
    is_default: bool = False

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["type"] = self.kind
        return result

    def with_default(self, is_default: bool) -> "Address":
        return replace(self, is_default=is_default)


@dataclass
class Product:
    id: str
    slug: str
    name: str = ""
    description: str = ""
    price: float = 0
    stock: int = 0
    type: str = ""
    category: str = ""
    dimension1: str = ""
    dimension2: str = ""
    group_id: str | None = None
    has_stock: bool | None = None
    point: int | float | None = None
    image: str = ""
    images: list[str] = field(default_factory=list)

    @property
    def variant_label(self) -> str:
        return variant_label(self.dimension1, self.dimension2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "groupId": self.group_id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "stock": self.stock,
            "type": self.type,
            "has_stock": self.has_stock,
            "point": self.point,
            "category": self.category,
            "dimension1": self.dimension1,
            "dimension2": self.dimension2,
            "variantLabel": self.variant_label,
            "image": self.image,
            "images": self.images,
        }


@dataclass
class PostalLookup:
    zip: str
    prefecture: str = ""
    city: str = ""
    town: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "zip": self.zip,
            "prefecture": self.prefecture,
            "city": self.city,
            "town": self.town,
        }


@dataclass
class CheckoutSelection:
    """Choices made on a single checkout page visit. Never persisted."""

    delivery_address_id: str | None = None
    billing_mode: BillingMode = BillingMode.SAME
    billing_address_id: str | None = None
    billing_form: AddressForm | None = None
    billing_email: str = ""
    payment_method_id: str | None = None


@dataclass
class OrderConfirmation:
    order_id: str
    degraded: bool = False

    @property
    def redirect_to(self) -> str:
        return f"/checkout/thanks?order={quote(self.order_id, safe='')}"


@dataclass
class PaymentMethod:
    """A saved card reference. Only the last four digits are kept."""

    id: str
    user_id: str
    brand: str = ""
    last4: str = ""
    nickname: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None
    is_default: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "brand": self.brand,
            "last4": self.last4,
            "nickname": self.nickname,
            "exp_month": self.exp_month,
            "exp_year": self.exp_year,
            "is_default": self.is_default,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaymentMethod":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            brand=data.get("brand", ""),
            last4=data.get("last4", ""),
            nickname=data.get("nickname"),
            exp_month=data.get("exp_month"),
            exp_year=data.get("exp_year"),
            is_default=data.get("is_default", False),
        )


@dataclass
class SessionUser:
    """The identity shown in the UI header."""

    id: str
    name: str
    email: str = ""
    login_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "loginId": self.login_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionUser":
        return cls(
            id=str(data.get("id") or ""),
            name=data.get("name", ""),
            email=data.get("email", ""),
            login_id=data.get("loginId") or data.get("login_id", ""),
        )

    @classmethod
    def from_identifier(cls, identifier: str) -> "SessionUser":
        """Derive a display identity from a login id or email."""
        is_email = "@" in identifier
        name = identifier.split("@")[0] if is_email else identifier
        return cls(
            id=identifier,
            name=name or identifier,
            email=identifier if is_email else "",
            login_id=identifier,
        )
