"""Local account registration and saved payment methods."""

import logging

import bcrypt

from .errors import ValidationError
from .fallback_store import FallbackStore
from .models import PaymentMethod, SessionUser

logger = logging.getLogger(__name__)

USERS_TABLE = "users"
PAYMENTS_TABLE = "payments"
MIN_EXP_YEAR = 2024


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


class AccountRegistry:
    """Accounts created through signup, kept in the fallback store."""

    def __init__(self, store: FallbackStore):
        self.store = store

    def register(self, email: str, password: str, login_id: str = "", name: str = "") -> SessionUser:
        """
        Register a local account.

        Raises:
            ValidationError: If email or password is missing.
            DuplicateEntryError: If the email or login id is taken.
        """
        email = (email or "").strip()
        login_id = (login_id or email).strip()
        if not email or not password or not login_id:
            raise ValidationError("email", "Email and password are required")
        name = (name or "").strip() or (email.split("@")[0] if "@" in email else "user")

        row = self.store.insert(
            USERS_TABLE,
            {
                "name": name,
                "email": email,
                "login_id": login_id,
                "password": hash_password(password),
            },
            unique=("email", "login_id"),
        )
        logger.info("Registered local account %s", row["id"])
        return SessionUser(id=row["id"], name=name, email=email, login_id=login_id)


def _card_fields(payload: dict) -> dict:
    """Validate card details; only the last four digits are kept."""
    digits = str(payload.get("last4") or payload.get("card_number") or "")
    last4 = digits[-4:]
    if len(last4) != 4 or not last4.isdigit():
        raise ValidationError("last4", "Enter the last four digits of the card")
    try:
        exp_month = int(payload.get("exp_month") or 0)
    except (TypeError, ValueError):
        exp_month = 0
    if not 1 <= exp_month <= 12:
        raise ValidationError("exp_month", "Expiry month is invalid")
    try:
        exp_year = int(payload.get("exp_year") or 0)
    except (TypeError, ValueError):
        exp_year = 0
    if exp_year < MIN_EXP_YEAR:
        raise ValidationError("exp_year", "Expiry year is invalid")
    return {
        "nickname": payload.get("nickname") or None,
        "brand": payload.get("brand") or "",
        "last4": last4,
        "exp_month": exp_month,
        "exp_year": exp_year,
        "is_default": bool(payload.get("is_default", False)),
    }


class PaymentMethods:
    """Saved card references per user."""

    def __init__(self, store: FallbackStore):
        self.store = store

    def list_for(self, user_id: str) -> list[PaymentMethod]:
        """Defaults first, then newest first."""
        rows = self.store.fetch_by_user(PAYMENTS_TABLE, user_id)
        rows.sort(key=lambda r: (bool(r.get("is_default")), int(r["id"])), reverse=True)
        return [PaymentMethod.from_dict(r) for r in rows]

    def _clear_default(self, user_id: str) -> None:
        for method in self.list_for(user_id):
            if method.is_default:
                self.store.update(PAYMENTS_TABLE, method.id, user_id, {"is_default": False})

    def create(self, user_id: str, payload: dict) -> PaymentMethod:
        fields = _card_fields(payload)
        if fields["is_default"]:
            self._clear_default(user_id)
        row = self.store.insert(PAYMENTS_TABLE, {"user_id": str(user_id), **fields})
        return PaymentMethod.from_dict(row)

    def update(self, user_id: str, method_id: str, payload: dict) -> PaymentMethod:
        fields = _card_fields(payload)
        if fields["is_default"]:
            self._clear_default(user_id)
        return PaymentMethod.from_dict(self.store.update(PAYMENTS_TABLE, method_id, user_id, fields))

    def set_default(self, user_id: str, method_id: str) -> PaymentMethod:
        self._clear_default(user_id)
        return PaymentMethod.from_dict(
            self.store.update(PAYMENTS_TABLE, method_id, user_id, {"is_default": True})
        )

    def delete(self, user_id: str, method_id: str) -> bool:
        return self.store.delete(PAYMENTS_TABLE, method_id, user_id)
