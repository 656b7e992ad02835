"""Checkout orchestration: address resolution, assignment and confirmation."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from .envelopes import order_id_from_body
from .errors import CartbridgeError, UnauthenticatedError, ValidationError
from .gateway import UpstreamGateway
from .models import (
    Address,
    AddressForm,
    BillingMode,
    Cart,
    CheckoutSelection,
    CheckoutState,
    OrderConfirmation,
    _now_ms,
)

logger = logging.getLogger(__name__)

FALLBACK_ORDER_PREFIX = "EC-"

# Inline billing fields that must be filled, in form order.
REQUIRED_BILLING_FIELDS = (
    "last_name",
    "first_name",
    "last_name_kana",
    "first_name_kana",
    "gender",
    "date_of_birth",
    "postal_code",
    "prefecture",
    "city",
    "town",
    "street",
    "phone",
    "email",
)

MATCH_FIELDS = ("last_name", "first_name", "postal_code", "prefecture")


def apply_default(addresses: list[Address], remembered_id: str | None = None) -> tuple[list[Address], str]:
    """
    Recompute the default flag for one kind of address.

    The remembered id wins when it is still in the list; otherwise the first
    address becomes the default.

    Returns:
        (addresses with is_default set, default id or "")
    """
    if not addresses:
        return [], ""
    ids = {a.id for a in addresses}
    default_id = remembered_id if remembered_id in ids else addresses[0].id
    return [a.with_default(a.id == default_id) for a in addresses], default_id


def _location(form: AddressForm) -> str:
    # Upstream stores city, town and street in one field.
    return "".join(p for p in (form.city, form.town, form.street) if p)


def find_matching_address(addresses: list[Address], form: AddressForm, email: str = "") -> Address | None:
    """Locate the record created from form among freshly listed addresses."""
    for address in addresses:
        if all(getattr(address, f) == getattr(form, f) for f in MATCH_FIELDS) and (
            _location(address) == _location(form)
            and (address.email or "") == (email or "")
        ):
            return address
    return None


def extract_order_confirmation(body: Any, clock: Callable[[], int] = _now_ms) -> OrderConfirmation:
    """
    Read the order id from a confirm response.

    When no known field carries it, an ``EC-<epoch ms>`` id is synthesized.
    The order still went through upstream; only the display id is degraded.
    """
    order_id = order_id_from_body(body)
    if order_id:
        return OrderConfirmation(order_id=order_id)
    order_id = f"{FALLBACK_ORDER_PREFIX}{clock()}"
    logger.warning("Confirm response carried no order id, using %s", order_id)
    return OrderConfirmation(order_id=order_id, degraded=True)


@dataclass
class CheckoutSnapshot:
    """What the checkout page needs to render."""

    state: CheckoutState
    cart: Cart | None = None
    delivery_addresses: list[Address] = field(default_factory=list)
    bill_addresses: list[Address] = field(default_factory=list)
    delivery_address_id: str = ""
    billing_address_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        cart = self.cart or Cart()
        return {
            "state": self.state.value,
            "items": [line.to_dict() for line in cart.lines],
            "total": cart.total,
            "delivery_addresses": [a.to_dict() for a in self.delivery_addresses],
            "bill_addresses": [a.to_dict() for a in self.bill_addresses],
            "delivery_address_id": self.delivery_address_id,
            "billing_address_id": self.billing_address_id,
        }


class CheckoutOrchestrator:
    """Drives one checkout page visit.

    States: LOADING -> {GUEST, READY} -> CONFIRMING -> {DONE, FAILED}.
    A failed confirmation records its message and returns to READY so the
    shopper can retry. Side effects already applied upstream (an address
    pushed to the pending cart, a billing address created) are kept.
    """

    def __init__(self, gateway: UpstreamGateway, clock: Callable[[], int] = _now_ms):
        self.gateway = gateway
        self.clock = clock
        self.state = CheckoutState.LOADING
        self.message: str | None = None

    async def load(self, remembered_delivery_id: str | None = None) -> CheckoutSnapshot:
        """Fetch cart and addresses, preselecting defaults."""
        self.state = CheckoutState.LOADING
        try:
            cart = await self.gateway.get_cart()
            delivery = await self.gateway.list_addresses("delivery")
            bill = await self.gateway.list_addresses("bill")
        except UnauthenticatedError:
            self.state = CheckoutState.GUEST
            return CheckoutSnapshot(state=self.state)

        delivery, delivery_id = apply_default(delivery, remembered_delivery_id)
        bill, bill_id = apply_default(bill)
        self.state = CheckoutState.READY
        return CheckoutSnapshot(
            state=self.state,
            cart=cart,
            delivery_addresses=delivery,
            bill_addresses=bill,
            delivery_address_id=delivery_id,
            billing_address_id=bill_id,
        )

    def validate(self, selection: CheckoutSelection) -> None:
        """
        Check the selection before any upstream call.

        Raises:
            ValidationError: Naming the first missing field.
        """
        if not selection.delivery_address_id:
            raise ValidationError("delivery_address", "Select a delivery address.")
        if selection.billing_mode is BillingMode.EXISTING:
            if not selection.billing_address_id:
                raise ValidationError("billing_address", "Select a saved billing address.")
        elif selection.billing_mode is BillingMode.NEW:
            form = self._billing_form(selection)
            for name in REQUIRED_BILLING_FIELDS:
                if not getattr(form, name):
                    raise ValidationError(name, "Enter the billing address details.")

    @staticmethod
    def _billing_form(selection: CheckoutSelection) -> AddressForm:
        form = selection.billing_form or AddressForm()
        return replace(form, email=selection.billing_email or form.email or "")

    async def resolve_billing_id(self, selection: CheckoutSelection) -> str:
        """
        Billing address id for the selection.

        A new inline address is saved, then located by field matching in
        the refreshed bill list because upstream does not echo the id.
        """
        delivery_id = selection.delivery_address_id or ""
        if selection.billing_mode is BillingMode.SAME:
            return delivery_id
        if selection.billing_mode is BillingMode.EXISTING:
            return selection.billing_address_id or ""

        form = self._billing_form(selection)
        await self.gateway.save_address(form, "bill")
        bills = await self.gateway.list_addresses("bill")
        matched = find_matching_address(bills, form, form.email)
        if matched is None and bills:
            logger.warning("Created billing address not found by fields, using first listed")
            matched = bills[0]
        if matched is None:
            logger.warning("No billing address listed after create, billing to delivery address")
            return delivery_id
        return matched.id

    async def confirm(self, selection: CheckoutSelection) -> OrderConfirmation:
        """
        Finalize the order.

        Raises:
            ValidationError: If the selection is incomplete.
            UnauthenticatedError: If the shopper is a guest.
            CartbridgeError: If any upstream step fails.
        """
        if self.state is CheckoutState.GUEST:
            raise UnauthenticatedError("Log in to place the order")
        if self.state is CheckoutState.CONFIRMING:
            raise ValidationError("checkout", "Order confirmation is already in progress.")
        self.message = None
        self.validate(selection)

        self.state = CheckoutState.CONFIRMING
        try:
            billing_id = await self.resolve_billing_id(selection)
            # Sequential: the bill assignment relies on the delivery one having landed.
            await self.gateway.assign_address("delivery", selection.delivery_address_id or "")
            await self.gateway.assign_address("bill", billing_id)
            body = await self.gateway.confirm()
        except UnauthenticatedError:
            self.state = CheckoutState.GUEST
            raise
        except CartbridgeError as e:
            self.state = CheckoutState.FAILED
            self.message = str(e) or "Failed to confirm the order."
            logger.error("Checkout confirmation failed: %s", self.message)
            self.state = CheckoutState.READY
            raise

        confirmation = extract_order_confirmation(body, self.clock)
        self.state = CheckoutState.DONE
        logger.info("Order %s confirmed", confirmation.order_id)
        return confirmation
