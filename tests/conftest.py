"""Pytest fixtures for cartbridge tests."""

import json
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import pytest

from cartbridge.config import Settings
from cartbridge.credentials import CredentialStore, MemoryBackup, RefreshGroup, TokenClient
from cartbridge.gateway import UpstreamGateway
from cartbridge.models import Credential, _now_ms

TOKEN_URL = "https://auth.test/uaa/oauth2/token"
API_BASE = "http://upstream.test"
POSTAL_HOST = "postal.test"
BASIC = "Y2xpZW50OnNlY3JldA=="


def make_product(product_id, name, price, group_id=None, dimension1="", dimension2="", images=None):
    return {
        "product_id": product_id,
        "name": name,
        "description": f"{name} description",
        "price": price,
        "stock": 10,
        "type": "goods",
        "group_id": group_id,
        "dimension1": dimension1,
        "dimension2": dimension2,
        "images": images if images is not None else [{"url": f"img/{product_id}.jpg"}],
    }


class FakeCommerce:
    """In-memory stand-in for the token, commerce and postal services."""

    def __init__(self):
        self.users = {"alice@example.com": "secret", "shopper": "pw"}
        self.products: dict[str, dict] = {}
        self.cart: list[dict] = []
        self.addresses: list[dict] = []
        self.assigned: dict[str, str] = {}
        self.postal = {
            "1000001": {"pref_name": "東京都", "city_name": "千代田区", "town_name": "千代田"},
        }
        self.confirm_body: dict = {"data": {"order_id": "ORD-1001"}}
        self.token_expires_in = 3600
        # When set, a refresh token is retired once used.
        self.rotate_refresh_tokens = False
        # Applied to addresses created through the upsert; returning None drops them.
        self.address_transform = None

        self.access_tokens: set[str] = set()
        self.refresh_tokens: set[str] = set()
        self.requests: list[tuple[str, str]] = []
        self.token_requests: list[dict] = []
        self.failures: dict[tuple[str, str], tuple[int, dict]] = {}
        self.unreachable: set[str] = set()
        self._counter = 0

    # --- helpers for tests ---

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def issue_token(self) -> dict:
        n = self._next()
        access, refresh = f"access-{n}", f"refresh-{n}"
        self.access_tokens.add(access)
        self.refresh_tokens.add(refresh)
        return {"accessToken": access, "refreshToken": refresh, "expiresIn": self.token_expires_in}

    def add_cart_line(self, product_id: str, quantity: int = 1) -> dict:
        product = self.products[product_id]
        line = {
            "id": f"line-{self._next()}",
            "product_id": product_id,
            "name": product["name"],
            "price": product["price"],
            "quantity": quantity,
            "images": product["images"],
        }
        self.cart.append(line)
        return line

    def add_address(self, kind: str = "delivery", **fields) -> dict:
        record = {
            "address_id": f"addr-{self._next()}",
            "type": kind,
            "last_name": "山田",
            "first_name": "太郎",
            "kana_last_name": "ヤマダ",
            "kana_first_name": "タロウ",
            "post_code": "1000001",
            "prefecture": "東京都",
            "city_town_village": "千代田区千代田1-1",
            "address_details": "",
            "phone": "0312345678",
            "email": "alice@example.com",
        }
        record.update(fields)
        self.addresses.append(record)
        return record

    def calls(self, method: str, path: str) -> int:
        return self.requests.count((method, path))

    # --- transport ---

    def handler(self, request: httpx.Request) -> httpx.Response:
        method, host, path = request.method, request.url.host, request.url.path
        if host in self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        self.requests.append((method, path))
        if (method, path) in self.failures:
            status, body = self.failures[(method, path)]
            return httpx.Response(status, json=body)
        if host == "auth.test":
            return self._token(request)
        if host == POSTAL_HOST:
            return self._postal(request, path)
        if path.startswith("/u/"):
            auth = request.headers.get("Authorization", "")
            if not auth.startswith("Bearer ") or auth[7:] not in self.access_tokens:
                return httpx.Response(401, json={"message": "Unauthorized"})
            return self._authenticated(request, method, path)
        if path.startswith("/product/"):
            return self._product(request, path)
        return httpx.Response(404, json={"message": "no route"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.token_requests.append(form)
        if request.headers.get("Authorization") != f"Basic {BASIC}":
            return httpx.Response(401, json={"message": "invalid client"})
        if form.get("grant_type") == "custom-password-grant":
            if self.users.get(form.get("username")) != form.get("credentials"):
                return httpx.Response(400, json={"message": "Bad credentials"})
            return httpx.Response(200, json={"data": self.issue_token()})
        if form.get("grant_type") == "refresh_token":
            if form.get("refresh_token") not in self.refresh_tokens:
                return httpx.Response(400, json={"message": "invalid refresh token"})
            if self.rotate_refresh_tokens:
                self.refresh_tokens.discard(form["refresh_token"])
            return httpx.Response(200, json={"data": self.issue_token()})
        return httpx.Response(400, json={"message": "unsupported grant"})

    def _authenticated(self, request: httpx.Request, method: str, path: str) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        if (method, path) == ("GET", "/u/cart"):
            total = sum(line["price"] * line["quantity"] for line in self.cart)
            return httpx.Response(200, json={"data": {"order_items": self.cart, "total_price": total}})
        if (method, path) == ("POST", "/u/cart/add"):
            product_id = str(body.get("product_id"))
            if product_id not in self.products:
                return httpx.Response(400, json={"message": "unknown product"})
            for line in self.cart:
                if line["product_id"] == product_id:
                    line["quantity"] += 1
                    break
            else:
                self.add_cart_line(product_id)
            return httpx.Response(200, json={"status": "ok"})
        if (method, path) == ("PATCH", "/u/cart/edit"):
            for line in self.cart:
                if line["id"] == body.get("order_item_id"):
                    line["quantity"] = body["quantity"]
            self.cart = [line for line in self.cart if line["quantity"] > 0]
            return httpx.Response(200, json={"status": "ok"})
        if (method, path) == ("PATCH", "/u/cart/address"):
            self.assigned[body["type"]] = body["address_id"]
            return httpx.Response(200, json={"status": "ok"})
        if (method, path) == ("POST", "/u/cart/confirm"):
            self.cart = []
            return httpx.Response(200, json=self.confirm_body)
        if (method, path) == ("DELETE", "/u/cart"):
            self.cart = []
            return httpx.Response(200, json={"status": "ok"})
        if (method, path) == ("GET", "/u/address"):
            return httpx.Response(200, json={"data": self.addresses})
        if (method, path) == ("PATCH", "/u/address/update"):
            for record in self.addresses:
                if record["address_id"] == body.get("address_id"):
                    record.update(body)
                    break
            else:
                record = {**body, "address_id": f"addr-{self._next()}"}
                if self.address_transform is not None:
                    record = self.address_transform(record)
                if record is not None:
                    self.addresses.append(record)
            return httpx.Response(200, json={"status": "ok"})
        return httpx.Response(404, json={"message": "no route"})

    def _product(self, request: httpx.Request, path: str) -> httpx.Response:
        if path == "/product/all":
            return httpx.Response(200, json={"data": list(self.products.values())})
        if path == "/product/search":
            q = request.url.params.get("q", "")
            items = [
                p for p in self.products.values()
                if q in p["name"] or str(p.get("group_id")) == q
            ]
            return httpx.Response(200, json={"data": {"Items": items}})
        product_id = path.rsplit("/", 1)[-1]
        product = self.products.get(product_id)
        if product is None:
            return httpx.Response(404, json={"message": "product not found"})
        return httpx.Response(200, json={"data": {"Products": [product]}})

    def _postal(self, request: httpx.Request, path: str) -> httpx.Response:
        if path == "/api/v1/j/token":
            return httpx.Response(200, json={"token": "postal-token"})
        if request.headers.get("Authorization") != "Bearer postal-token":
            return httpx.Response(401, json={"message": "bad token"})
        zip_code = path.rsplit("/", 1)[-1]
        match = self.postal.get(zip_code)
        return httpx.Response(200, json={"addresses": [match] if match else []})


@pytest.fixture
def fake_upstream():
    """Fake upstream seeded with a small catalog."""
    fake = FakeCommerce()
    fake.products = {
        "p1": make_product("p1", "Linen Shirt", 4800, group_id="g1", dimension1="White", dimension2="M"),
        "p2": make_product("p2", "Linen Shirt", 4800, group_id="g1", dimension1="Navy", dimension2="M"),
        "p3": make_product("p3", "Canvas Tote", 2200, images=[{"url": "https://cdn.test/tote.jpg"}]),
        "p4": make_product("p4", "Wool Socks", 900, images=[]),
    }
    return fake


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        token_url=TOKEN_URL,
        auth_basic=BASIC,
        cart_api_base=API_BASE,
        product_api_base=API_BASE,
        postal_host=POSTAL_HOST,
        postal_client_id="client-id",
        postal_client_secret="client-secret",
        data_dir=tmp_path / "data",
    )


@pytest.fixture
def http_client(fake_upstream) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_upstream.handler))


@pytest.fixture
def token_client(settings, http_client) -> TokenClient:
    return TokenClient(settings, http_client)


@pytest.fixture
def credential_store(token_client) -> CredentialStore:
    """A store with no credential (guest)."""
    return CredentialStore(token_client, MemoryBackup(), RefreshGroup())


@pytest.fixture
def logged_in_store(token_client, fake_upstream) -> CredentialStore:
    """A store holding a valid credential issued by the fake upstream."""
    token = fake_upstream.issue_token()
    now = _now_ms()
    backup = MemoryBackup(
        Credential(
            access_token=token["accessToken"],
            refresh_token=token["refreshToken"],
            issued_at=now,
            expires_at=now + token["expiresIn"] * 1000,
        )
    )
    return CredentialStore(token_client, backup, RefreshGroup())


@pytest.fixture
def gateway(settings, http_client, logged_in_store) -> UpstreamGateway:
    return UpstreamGateway(settings, http_client, logged_in_store)


@pytest.fixture
def guest_gateway(settings, http_client, credential_store) -> UpstreamGateway:
    return UpstreamGateway(settings, http_client, credential_store)
