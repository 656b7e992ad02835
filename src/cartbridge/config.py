"""Runtime settings for cartbridge, read from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError

DEFAULT_TOKEN_URL = "https://api-dev-pg.altech.hk/uaa/oauth2/token"
DEFAULT_API_BASE = "http://192.168.0.25:4649"
DEFAULT_SEARCH_PATH = "/api/v1/searchcode"

# Can be overridden via CARTBRIDGE_DATA_DIR environment variable
_default_data_dir = Path(__file__).parent.parent.parent / "data"

SESSION_BACKENDS = ("cookie", "server")

_default_cors_origins = [
    "http://localhost:5173",
    "http://localhost:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
]


def parse_cors_origins(value: str | None) -> list[str]:
    """Comma-separated origins, or the local development defaults."""
    origins = [o.strip() for o in (value or "").split(",") if o.strip()]
    return origins or list(_default_cors_origins)


@dataclass
class Settings:
    """Endpoint bases, client credentials and tunables."""

    token_url: str = DEFAULT_TOKEN_URL
    auth_basic: str | None = None
    cart_api_base: str = DEFAULT_API_BASE
    product_api_base: str = DEFAULT_API_BASE
    postal_host: str = ""
    postal_client_id: str = ""
    postal_client_secret: str = ""
    postal_search_path: str = DEFAULT_SEARCH_PATH
    data_dir: Path = field(default_factory=lambda: _default_data_dir)
    session_backend: str = "cookie"
    http_timeout: float = 30.0
    log_level: str = "INFO"
    cors_origins: list[str] = field(default_factory=lambda: list(_default_cors_origins))

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        product_base = env.get("EXTERNAL_PRODUCT_API_BASE") or DEFAULT_API_BASE
        settings = cls(
            token_url=env.get("EXTERNAL_AUTH_TOKEN_URL") or DEFAULT_TOKEN_URL,
            auth_basic=env.get("EXTERNAL_AUTH_BASIC") or None,
            cart_api_base=env.get("EXTERNAL_CART_API_BASE") or product_base,
            product_api_base=product_base,
            postal_host=env.get("JP_API_HOST", ""),
            postal_client_id=env.get("JP_API_CLIENT_ID", ""),
            postal_client_secret=env.get("JP_API_CLIENT_SECRET", ""),
            postal_search_path=env.get("JP_API_SEARCH_PATH") or DEFAULT_SEARCH_PATH,
            data_dir=Path(env.get("CARTBRIDGE_DATA_DIR") or _default_data_dir),
            session_backend=(env.get("CARTBRIDGE_SESSION_BACKEND") or "cookie").lower(),
            http_timeout=float(env.get("CARTBRIDGE_HTTP_TIMEOUT") or 30.0),
            log_level=(env.get("CARTBRIDGE_LOG_LEVEL") or "INFO").upper(),
            cors_origins=parse_cors_origins(env.get("CARTBRIDGE_CORS_ORIGINS")),
        )
        if settings.session_backend not in SESSION_BACKENDS:
            raise ConfigurationError(
                f"CARTBRIDGE_SESSION_BACKEND (expected one of {', '.join(SESSION_BACKENDS)})"
            )
        return settings

    @property
    def basic_header(self) -> str | None:
        """Client credentials as an Authorization header value."""
        if not self.auth_basic:
            return None
        if self.auth_basic.startswith("Basic "):
            return self.auth_basic
        return f"Basic {self.auth_basic}"

    @property
    def postal_configured(self) -> bool:
        return bool(self.postal_host and self.postal_client_id and self.postal_client_secret)

    def postal_search_paths(self) -> list[str]:
        """Search paths to try in order, configured one first, de-duplicated."""
        paths = [self.postal_search_path, DEFAULT_SEARCH_PATH]
        return list(dict.fromkeys(paths))
