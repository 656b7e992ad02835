"""Postal-code lookup against the token-gated geocoding service."""

import logging
import re

import httpx

from .config import Settings
from .envelopes import extract_message, postal_from_body, token_from_postal_body
from .errors import (
    ConfigurationError,
    NotFoundError,
    Upstream5xxError,
    ValidationError,
    upstream_error,
)
from .http_client import request_json
from .models import PostalLookup

logger = logging.getLogger(__name__)

MIN_ZIP_DIGITS = 3

_NON_DIGIT = re.compile(r"\D")


def clean_zip(raw: str | None) -> str:
    """Strip everything but digits from a postal code."""
    return _NON_DIGIT.sub("", raw or "")


class PostalLookupClient:
    """Resolves a postal code to prefecture, city and town."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        self.settings = settings
        self.http = http

    async def _fetch_token(self) -> str:
        url = f"https://{self.settings.postal_host}/api/v1/j/token"
        status, body = await request_json(
            self.http,
            "POST",
            url,
            json={
                "grant_type": "client_credentials",
                "client_id": self.settings.postal_client_id,
                "secret_key": self.settings.postal_client_secret,
            },
            headers={
                "Accept": "application/json",
                # Required by the service; it expects the caller address here.
                "x-forwarded-for": "127.0.0.1",
            },
        )
        token = token_from_postal_body(body) if status < 400 else None
        if not token:
            logger.error("Postal token request failed with status %s", status)
            raise Upstream5xxError(502, "Could not obtain a postal lookup token", body)
        return token

    async def lookup(self, raw_zip: str) -> PostalLookup:
        """
        Look up a postal code.

        Each configured search path is tried in order; the first 2xx answer
        wins.

        Raises:
            ValidationError: If fewer than three digits were given.
            ConfigurationError: If the service is not configured.
            NotFoundError: If the code matches no address.
            UpstreamRejectedError: If every search path fails.
        """
        zip_code = clean_zip(raw_zip)
        if len(zip_code) < MIN_ZIP_DIGITS:
            raise ValidationError("zip", "Postal code must have at least 3 digits")
        if not self.settings.postal_configured:
            raise ConfigurationError("JP_API_HOST/JP_API_CLIENT_ID/JP_API_CLIENT_SECRET")

        token = await self._fetch_token()
        last_status = 500
        last_body: object = {}
        for path in self.settings.postal_search_paths():
            url = f"https://{self.settings.postal_host}{path}/{zip_code}"
            status, body = await request_json(
                self.http,
                "GET",
                url,
                params={"page": 1, "limit": 10, "choikitype": 1, "searchtype": 1},
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            )
            if status < 400:
                result = postal_from_body(body, zip_code)
                if result is None:
                    raise NotFoundError("Address for postal code", zip_code)
                return result
            last_status, last_body = status, body
            logger.debug("Postal search %s answered %s", path, status)

        raise upstream_error(last_status, extract_message(last_body), last_body)


def merge_postal_lookup(form: dict[str, str], lookup: PostalLookup) -> dict[str, str]:
    """Fill prefecture/city/town from a lookup.

    A field is overwritten only when the lookup supplies a non-empty value;
    otherwise the existing form value is kept.
    """
    merged = dict(form)
    for key in ("prefecture", "city", "town"):
        value = getattr(lookup, key)
        if value:
            merged[key] = value
    return merged
