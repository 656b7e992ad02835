"""Custom exceptions for cartbridge."""


class CartbridgeError(Exception):
    """Base exception for all cartbridge errors."""

    pass


class UnauthenticatedError(CartbridgeError):
    """Raised when no usable credential is available.

    Callers fall back to guest behaviour instead of showing an error.
    """

    def __init__(self, message: str = "Auth token is not set"):
        super().__init__(message)


class ValidationError(CartbridgeError):
    """Raised when a required field is missing or malformed."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


class UpstreamRejectedError(CartbridgeError):
    """Raised when the upstream API answers with a non-2xx status."""

    default_message = "Upstream request failed"

    def __init__(self, status_code: int, message: str | None = None, payload: object = None):
        self.status_code = status_code
        self.payload = payload
        super().__init__(message or self.default_message)


class Upstream4xxError(UpstreamRejectedError):
    """Upstream rejected the request (4xx)."""

    default_message = "Upstream rejected the request"


class Upstream5xxError(UpstreamRejectedError):
    """Upstream failed to process the request (5xx)."""

    default_message = "Upstream service error"


class NotFoundError(CartbridgeError):
    """Raised when a referenced order or resource is absent."""

    def __init__(self, resource: str, key: str | None = None):
        self.resource = resource
        self.key = key
        msg = f"{resource} not found"
        if key:
            msg = f"{resource} not found: {key}"
        super().__init__(msg)


class NetworkFailureError(CartbridgeError):
    """Raised when the transport to an upstream service fails."""

    def __init__(self, url: str, reason: str | None = None):
        self.url = url
        self.reason = reason
        super().__init__("Could not reach the upstream service")


class ConfigurationError(CartbridgeError):
    """Raised when a required setting is missing."""

    def __init__(self, setting: str):
        self.setting = setting
        super().__init__(f"Missing configuration: {setting}")


class DuplicateEntryError(CartbridgeError):
    """Raised when a fallback store record collides with an existing one."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Already registered: {key}")


def upstream_error(status_code: int, message: str | None = None, payload: object = None) -> UpstreamRejectedError:
    """Build the 4xx/5xx error matching an upstream status code."""
    if 400 <= status_code < 500:
        return Upstream4xxError(status_code, message, payload)
    return Upstream5xxError(status_code, message, payload)
