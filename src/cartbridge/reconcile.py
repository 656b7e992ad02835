"""Merge of the guest cart into the authenticated upstream cart."""

import logging
from dataclasses import dataclass, field

from .gateway import UpstreamGateway
from .guest_cart import GuestCartStore

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    """What a reconciliation pass did."""

    added: list[str] = field(default_factory=list)  # product ids
    quantity_updates: dict[str, int] = field(default_factory=dict)  # product id -> quantity
    skipped: list[str] = field(default_factory=list)  # already in the upstream cart

    @property
    def is_noop(self) -> bool:
        return not (self.added or self.quantity_updates or self.skipped)

    def to_dict(self) -> dict:
        return {
            "added": self.added,
            "quantity_updates": self.quantity_updates,
            "skipped": self.skipped,
        }


class ReconciliationEngine:
    """Moves guest cart lines into the authenticated cart once after login.

    Every upstream call is awaited in turn so upstream sees the adds before
    the quantity patches. Any failure propagates immediately and leaves the
    guest cart untouched for a later retry; lines already added are not
    rolled back.
    """

    def __init__(self, gateway: UpstreamGateway):
        self.gateway = gateway

    async def reconcile(self, guest_cart: GuestCartStore) -> ReconciliationResult:
        result = ReconciliationResult()
        guest_lines = guest_cart.items()
        if not guest_lines:
            return result

        # Snapshot taken once; products already upstream keep their quantity.
        existing = (await self.gateway.get_cart()).product_ids()
        pending = []
        for line in guest_lines:
            if line.product_id in existing:
                result.skipped.append(line.product_id)
            else:
                pending.append(line)

        for line in pending:
            await self.gateway.add_to_cart(line.product_id)
            result.added.append(line.product_id)

        # Add only ever creates quantity 1; patch up to the guest quantity.
        cart = await self.gateway.get_cart()
        for line in pending:
            if line.quantity <= 1:
                continue
            match = cart.find(line.product_id)
            if match is None or not match.order_line_id:
                logger.warning("Added product %s missing from refreshed cart", line.product_id)
                continue
            await self.gateway.set_quantity(match.order_line_id, line.quantity)
            result.quantity_updates[line.product_id] = line.quantity

        guest_cart.clear()
        logger.info(
            "Reconciled guest cart: %d added, %d patched, %d skipped",
            len(result.added),
            len(result.quantity_updates),
            len(result.skipped),
        )
        return result
