"""FastAPI backend-for-frontend for the storefront UI."""

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Optional
from urllib.parse import quote, unquote

import httpx
from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from . import __version__
from .accounts import AccountRegistry, PaymentMethods
from .checkout import CheckoutOrchestrator, apply_default, find_matching_address
from .config import Settings, parse_cors_origins
from .credentials import CookieBackup, CredentialStore, RefreshGroup, TokenClient
from .errors import (
    CartbridgeError,
    ConfigurationError,
    DuplicateEntryError,
    NetworkFailureError,
    NotFoundError,
    UnauthenticatedError,
    ValidationError,
)
from .fallback_store import JsonFallbackStore
from .gateway import UpstreamGateway
from .guest_cart import GuestCartStore
from .http_client import create_client
from .models import (
    Address,
    AddressForm,
    BillingMode,
    CheckoutSelection,
    CheckoutState,
    GuestCartLine,
    SessionUser,
    pick_kind,
)
from .postal import PostalLookupClient, merge_postal_lookup
from .reconcile import ReconciliationEngine
from .session_store import SESSION_COOKIE, SessionBackup, SessionStore

logger = logging.getLogger(__name__)

SESSION_USER_COOKIE = "session_user"
SESSION_USER_MAX_AGE = 60 * 60 * 24 * 7
DEFAULT_DELIVERY_COOKIE = "default_delivery_address_id"


# --- Pydantic Schemas ---


class GuestItemsRequest(BaseModel):
    """Guest cart lines the browser holds in sessionStorage."""

    guest_items: list[dict[str, Any]] = Field(default_factory=list)


class LoginRequest(GuestItemsRequest):
    login_id: Optional[str] = Field(None, validation_alias=AliasChoices("login_id", "loginId"))
    email: Optional[str] = None
    password: str = ""


class SignupRequest(GuestItemsRequest):
    email: str = ""
    password: str = ""
    login_id: Optional[str] = Field(None, validation_alias=AliasChoices("login_id", "loginId"))
    name: Optional[str] = None


class CartAddRequest(BaseModel):
    product_id: str = Field(..., validation_alias=AliasChoices("product_id", "productId"))


class CartQuantityRequest(BaseModel):
    order_item_id: str = Field(..., validation_alias=AliasChoices("order_item_id", "orderItemId"))
    quantity: int


class CartAddressRequest(BaseModel):
    address_id: str
    type: str = "delivery"


class AddressRequest(BaseModel):
    id: Optional[str] = None
    type: str = "delivery"
    is_default: bool = False
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

    def to_form(self) -> AddressForm:
        return AddressForm.from_dict(self.model_dump())


class CheckoutConfirmRequest(BaseModel):
    delivery_address_id: Optional[str] = None
    billing_mode: BillingMode = BillingMode.SAME
    billing_address_id: Optional[str] = None
    billing_form: Optional[dict[str, Any]] = None
    billing_email: str = ""
    payment_method_id: Optional[str] = None

    def to_selection(self) -> CheckoutSelection:
        return CheckoutSelection(
            delivery_address_id=self.delivery_address_id,
            billing_mode=self.billing_mode,
            billing_address_id=self.billing_address_id,
            billing_form=AddressForm.from_dict(self.billing_form) if self.billing_form else None,
            billing_email=self.billing_email,
            payment_method_id=self.payment_method_id,
        )


class PaymentRequest(BaseModel):
    id: Optional[str] = None
    nickname: Optional[str] = None
    brand: Optional[str] = None
    card_number: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    is_default: bool = False


# --- Wiring ---


class Services:
    """Process-wide collaborators shared by every request."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None):
        self.settings = settings
        self.http = http or create_client(settings)
        self.refresh_group = RefreshGroup()
        self.token_client = TokenClient(settings, self.http)
        self.postal = PostalLookupClient(settings, self.http)
        self.sessions = SessionStore(settings.data_dir)
        fallback = JsonFallbackStore(settings.data_dir)
        self.accounts = AccountRegistry(fallback)
        self.payments = PaymentMethods(fallback)


_services: Services | None = None


def configure(settings: Settings | None = None, http: httpx.AsyncClient | None = None) -> Services:
    """Install the services used by the app (tests pass a mock transport client)."""
    global _services
    _services = Services(settings or Settings.from_env(), http)
    return _services


def get_services() -> Services:
    """Get the global Services, building them from the environment on first use."""
    if _services is None:
        return configure()
    return _services


class RequestContext:
    """Per-request credential store and gateway bound to the caller's cookies."""

    def __init__(self, services: Services, request: Request, response: Response):
        self.services = services
        self.request = request
        self.response = response
        if services.settings.session_backend == "server":
            self.backup = SessionBackup(services.sessions, request.cookies.get(SESSION_COOKIE))
        else:
            self.backup = CookieBackup(request.cookies)
        self.credentials = CredentialStore(
            services.token_client, self.backup, services.refresh_group
        )
        self.gateway = UpstreamGateway(
            services.settings, services.http, self.credentials, services.postal
        )

    def reply(self, content: dict[str, Any]) -> dict[str, Any]:
        """Flush pending credential cookies onto the response and return content."""
        self.backup.apply(self.response)
        return content

    def session_user(self) -> SessionUser | None:
        raw = self.request.cookies.get(SESSION_USER_COOKIE)
        if not raw:
            return None
        try:
            data = json.loads(unquote(raw))
        except ValueError:
            return None
        if not isinstance(data, dict) or not data.get("id"):
            return None
        return SessionUser.from_dict(data)

    def set_session_user(self, user: SessionUser) -> None:
        self.response.set_cookie(
            SESSION_USER_COOKIE,
            quote(json.dumps(user.to_dict())),
            max_age=SESSION_USER_MAX_AGE,
            path="/",
            httponly=True,
            samesite="lax",
        )

    def require_user(self) -> SessionUser:
        user = self.session_user()
        if user is None:
            raise UnauthenticatedError("Login required")
        return user

    def remembered_delivery_id(self) -> str:
        return self.request.cookies.get(DEFAULT_DELIVERY_COOKIE, "")

    def remember_delivery_id(self, address_id: str) -> None:
        self.response.set_cookie(DEFAULT_DELIVERY_COOKIE, address_id, path="/", samesite="lax")


def get_context(request: Request, response: Response) -> RequestContext:
    ctx = RequestContext(get_services(), request, response)
    # The error handler flushes credential writes from here.
    request.state.context = ctx
    return ctx


def guest_cart_from_items(items: list[dict[str, Any]]) -> GuestCartStore:
    lines = [GuestCartLine.from_dict(item) for item in items if isinstance(item, dict)]
    return GuestCartStore.from_lines([line for line in lines if line.product_id])


async def reconcile_guest_items(ctx: RequestContext, items: list[dict[str, Any]]) -> dict[str, Any]:
    """
    Merge guest items into the upstream cart right after login.

    A failure leaves the guest items with the browser for a later retry.
    """
    guest_cart = guest_cart_from_items(items)
    try:
        result = await ReconciliationEngine(ctx.gateway).reconcile(guest_cart)
    except CartbridgeError as e:
        logger.warning("Guest cart reconciliation failed: %s", e)
        return {
            "guest_items": [line.to_dict() for line in guest_cart.items()],
            "reconciliation": None,
            "reconciliation_error": str(e),
        }
    return {
        "guest_items": [line.to_dict() for line in guest_cart.items()],
        "reconciliation": result.to_dict(),
    }


def with_default(
    ctx: RequestContext, kind: str, items: list[Address], remembered: str | None = None
) -> tuple[list[Address], str]:
    """Recompute the default of one kind of address; delivery remembers it in a cookie."""
    if kind != "delivery":
        return apply_default(items, remembered)
    cookie_value = ctx.remembered_delivery_id()
    items, default_id = apply_default(items, remembered or cookie_value)
    if default_id and default_id != cookie_value:
        ctx.remember_delivery_id(default_id)
    return items, default_id


# --- FastAPI App ---


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = get_services()
    if services.settings.session_backend == "server":
        purged = services.sessions.purge_expired()
        if purged:
            logger.info("Purged %s expired sessions", purged)
    yield
    await services.http.aclose()


app = FastAPI(
    title="cartbridge API",
    description="Storefront backend-for-frontend over the upstream commerce API",
    version=__version__,
    lifespan=lifespan,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=parse_cors_origins(os.environ.get("CARTBRIDGE_CORS_ORIGINS")),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Global Exception Handler ---


# Map exception types to HTTP status codes; upstream errors carry their own.
ERROR_STATUS_CODES: dict[type, int] = {
    UnauthenticatedError: 401,
    ValidationError: 400,
    NotFoundError: 404,
    NetworkFailureError: 502,
    ConfigurationError: 500,
    DuplicateEntryError: 409,
}


@app.exception_handler(CartbridgeError)
async def cartbridge_error_handler(request: Request, exc: CartbridgeError) -> JSONResponse:
    """Map CartbridgeError subclasses to appropriate HTTP responses."""
    status_code = getattr(exc, "status_code", None) or ERROR_STATUS_CODES.get(type(exc), 500)
    content: dict[str, Any] = {
        "status": "guest" if isinstance(exc, UnauthenticatedError) else "error",
        "message": str(exc),
        "error_type": type(exc).__name__,
    }
    if isinstance(exc, ValidationError):
        content["field"] = exc.field
    payload = getattr(exc, "payload", None)
    if payload:
        content["data"] = payload
    response = JSONResponse(status_code=status_code, content=content)
    # A token refreshed before the failure must still reach the browser.
    ctx = getattr(request.state, "context", None)
    if ctx is not None:
        ctx.backup.apply(response)
    return response


# --- Endpoints ---


@app.get("/api/health")
def health_check(services: Services = Depends(get_services)):
    """Liveness plus the settings the UI cares about."""
    return {
        "status": "ok",
        "version": __version__,
        "session_backend": services.settings.session_backend,
        "postal_lookup": services.settings.postal_configured,
    }


# --- Session Endpoints ---


@app.post("/api/login")
async def login(body: LoginRequest, ctx: RequestContext = Depends(get_context)):
    """Run the password grant, open the session and merge the guest cart."""
    identifier = (body.login_id or body.email or "").strip()
    if not identifier or not body.password:
        raise ValidationError("login_id", "Login id or email and password are required")

    await ctx.credentials.login(identifier, body.password)
    user = SessionUser.from_identifier(identifier)
    ctx.set_session_user(user)
    merged = await reconcile_guest_items(ctx, body.guest_items)
    return ctx.reply({"status": "ok", "user": user.to_dict(), **merged})


@app.post("/api/signup", status_code=201)
async def signup(body: SignupRequest, ctx: RequestContext = Depends(get_context)):
    """
    Register a local account, then try to sign in upstream with it.

    The local account stands even when the upstream login is refused.
    """
    user = ctx.services.accounts.register(
        body.email, body.password, login_id=body.login_id or "", name=body.name or ""
    )
    ctx.set_session_user(user)
    try:
        await ctx.credentials.login(user.login_id, body.password)
    except CartbridgeError as e:
        logger.warning("Upstream login after signup failed: %s", e)
        return ctx.reply(
            {
                "status": "ok",
                "user": user.to_dict(),
                "authenticated": False,
                "guest_items": body.guest_items,
            }
        )
    merged = await reconcile_guest_items(ctx, body.guest_items)
    return ctx.reply({"status": "ok", "user": user.to_dict(), "authenticated": True, **merged})


@app.post("/api/logout")
def logout(ctx: RequestContext = Depends(get_context)):
    user = ctx.session_user()
    ctx.credentials.clear()
    ctx.response.delete_cookie(SESSION_USER_COOKIE, path="/")
    logger.info("Logged out %s", user.id if user else "anonymous session")
    return ctx.reply({"status": "ok"})


@app.get("/api/session")
def get_session(ctx: RequestContext = Depends(get_context)):
    user = ctx.session_user()
    if user is None:
        return {"status": "guest"}
    return {"status": "ok", "user": user.to_dict()}


@app.post("/api/auth/refresh")
async def refresh_auth(ctx: RequestContext = Depends(get_context)):
    """Renew the credential if needed: ok, expired (refresh failed) or guest."""
    stored = ctx.backup.load()
    if stored is None or stored.is_empty:
        return {"status": "guest"}
    state = await ctx.credentials.state()
    if not state.access_token:
        return ctx.reply({"status": "expired"})
    return ctx.reply({"status": "ok", "expires_at": state.expires_at})


# --- Cart Endpoints ---


@app.get("/api/cart")
async def get_cart(ctx: RequestContext = Depends(get_context)):
    cart = await ctx.gateway.get_cart()
    return ctx.reply(
        {
            "status": "ok",
            "source": "external",
            "items": [line.to_dict() for line in cart.lines],
            "total": cart.total,
        }
    )


@app.post("/api/cart")
async def add_to_cart(body: CartAddRequest, ctx: RequestContext = Depends(get_context)):
    data = await ctx.gateway.add_to_cart(body.product_id)
    return ctx.reply({"status": "ok", "data": data})


@app.put("/api/cart")
async def set_cart_quantity(body: CartQuantityRequest, ctx: RequestContext = Depends(get_context)):
    data = await ctx.gateway.set_quantity(body.order_item_id, body.quantity)
    return ctx.reply({"status": "ok", "data": data})


@app.patch("/api/cart")
async def assign_cart_address(body: CartAddressRequest, ctx: RequestContext = Depends(get_context)):
    data = await ctx.gateway.assign_address(pick_kind(body.type), body.address_id)
    return ctx.reply({"status": "ok", "data": data})


@app.delete("/api/cart")
async def clear_cart(ctx: RequestContext = Depends(get_context)):
    data = await ctx.gateway.clear_cart()
    return ctx.reply({"status": "ok", "data": data})


@app.post("/api/cart/confirm")
async def confirm_cart(ctx: RequestContext = Depends(get_context)):
    data = await ctx.gateway.confirm()
    return ctx.reply({"status": "ok", "data": data})


@app.post("/api/cart/reconcile")
async def reconcile_cart(body: GuestItemsRequest, ctx: RequestContext = Depends(get_context)):
    """Merge guest items into the upstream cart; failures propagate."""
    guest_cart = guest_cart_from_items(body.guest_items)
    result = await ReconciliationEngine(ctx.gateway).reconcile(guest_cart)
    return ctx.reply(
        {
            "status": "ok",
            "reconciliation": result.to_dict(),
            "guest_items": [line.to_dict() for line in guest_cart.items()],
        }
    )


# --- Address Endpoints ---


@app.get("/api/addresses")
async def list_addresses(
    type: str = Query(default="delivery"),
    ctx: RequestContext = Depends(get_context),
):
    kind = pick_kind(type)
    items, default_id = with_default(ctx, kind, await ctx.gateway.list_addresses(kind))
    return ctx.reply(
        {"status": "ok", "default_id": default_id, "items": [a.to_dict() for a in items]}
    )


@app.post("/api/addresses")
async def create_address(body: AddressRequest, ctx: RequestContext = Depends(get_context)):
    """
    Create an address.

    Upstream does not return the new id, so it is located in the refreshed
    list by its fields.
    """
    kind = pick_kind(body.type)
    form = body.to_form()
    await ctx.gateway.save_address(form, kind)
    items = await ctx.gateway.list_addresses(kind)
    created = find_matching_address(items, form, form.email)
    remembered = created.id if body.is_default and created else None
    items, default_id = with_default(ctx, kind, items, remembered)
    return ctx.reply(
        {
            "status": "ok",
            "id": created.id if created else "",
            "default_id": default_id,
            "items": [a.to_dict() for a in items],
        }
    )


@app.put("/api/addresses")
async def update_address(body: AddressRequest, ctx: RequestContext = Depends(get_context)):
    """Update an address, or only mark it as the default when no other field is sent."""
    kind = pick_kind(body.type)
    if not body.id:
        raise ValidationError("id", "Address id is required")
    default_only = body.is_default and body.model_fields_set <= {"id", "is_default", "type"}
    if not default_only:
        await ctx.gateway.save_address(body.to_form(), kind, address_id=body.id)
    remembered = body.id if body.is_default else None
    items, default_id = with_default(ctx, kind, await ctx.gateway.list_addresses(kind), remembered)
    return ctx.reply(
        {"status": "ok", "default_id": default_id, "items": [a.to_dict() for a in items]}
    )


# --- Catalog Endpoints ---


@app.get("/api/products")
async def list_products(
    q: str = Query(default="", description="Search keyword; empty lists all"),
    ctx: RequestContext = Depends(get_context),
):
    if q.strip():
        products = await ctx.gateway.search_products(q)
    else:
        products = await ctx.gateway.list_products()
    return {"status": "ok", "items": [p.to_dict() for p in products]}


@app.get("/api/products/{product_id}")
async def get_product(product_id: str, ctx: RequestContext = Depends(get_context)):
    product = await ctx.gateway.get_product(product_id)
    return {"status": "ok", "product": product.to_dict()}


@app.get("/api/products/{product_id}/variants")
async def get_product_variants(product_id: str, ctx: RequestContext = Depends(get_context)):
    variants = await ctx.gateway.get_variants(product_id)
    return {"status": "ok", "items": [p.to_dict() for p in variants]}


@app.get("/api/postcode")
async def lookup_postcode(
    zip: str = Query(default=""),
    prefecture: str = Query(default="", description="Current form value"),
    city: str = Query(default="", description="Current form value"),
    town: str = Query(default="", description="Current form value"),
    ctx: RequestContext = Depends(get_context),
):
    """Look up a postal code; ``form`` is the current form with the lookup merged in."""
    result = await ctx.gateway.lookup_postal(zip)
    form = merge_postal_lookup({"prefecture": prefecture, "city": city, "town": town}, result)
    return {"status": "ok", **result.to_dict(), "form": form}


# --- Checkout Endpoints ---


@app.get("/api/checkout")
async def load_checkout(ctx: RequestContext = Depends(get_context)):
    """Cart and addresses for the checkout page, or a guest marker."""
    orchestrator = CheckoutOrchestrator(ctx.gateway)
    snapshot = await orchestrator.load(ctx.remembered_delivery_id() or None)
    status = "guest" if snapshot.state is CheckoutState.GUEST else "ok"
    return ctx.reply({"status": status, **snapshot.to_dict()})


@app.post("/api/checkout/confirm")
async def confirm_checkout(body: CheckoutConfirmRequest, ctx: RequestContext = Depends(get_context)):
    orchestrator = CheckoutOrchestrator(ctx.gateway)
    confirmation = await orchestrator.confirm(body.to_selection())
    return ctx.reply(
        {
            "status": "ok",
            "order_id": confirmation.order_id,
            "degraded": confirmation.degraded,
            "redirect_to": confirmation.redirect_to,
        }
    )


# --- Payment Method Endpoints ---


def _payments_response(ctx: RequestContext, user: SessionUser) -> dict[str, Any]:
    items = ctx.services.payments.list_for(user.id)
    return {"status": "ok", "items": [m.to_dict() for m in items]}


@app.get("/api/payments")
def list_payments(ctx: RequestContext = Depends(get_context)):
    return _payments_response(ctx, ctx.require_user())


@app.post("/api/payments", status_code=201)
def create_payment(body: PaymentRequest, ctx: RequestContext = Depends(get_context)):
    user = ctx.require_user()
    ctx.services.payments.create(user.id, body.model_dump())
    return _payments_response(ctx, user)


@app.put("/api/payments")
def update_payment(body: PaymentRequest, ctx: RequestContext = Depends(get_context)):
    """Update a saved card, or only make it the default when no other field is sent."""
    user = ctx.require_user()
    if not body.id:
        raise ValidationError("id", "Payment method id is required")
    if body.is_default and body.model_fields_set <= {"id", "is_default"}:
        ctx.services.payments.set_default(user.id, body.id)
    else:
        ctx.services.payments.update(user.id, body.id, body.model_dump())
    return _payments_response(ctx, user)


@app.delete("/api/payments")
def delete_payment(
    id: str = Query(..., description="Payment method ID"),
    ctx: RequestContext = Depends(get_context),
):
    user = ctx.require_user()
    if not ctx.services.payments.delete(user.id, id):
        raise NotFoundError("Payment method", id)
    return _payments_response(ctx, user)
