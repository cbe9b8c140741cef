"""Error taxonomy for calls against the 1claw API.

Every failure the core can produce is one of these classes, so the tool layer
can pattern-match on the type (and on ``ApiError.status_code``) without knowing
anything about HTTP:

  - ``TransportError``: no HTTP status was ever received.
  - ``ApiError``: the upstream answered with a non-2xx status.
  - ``AuthenticationError``: the agent-token exchange itself failed.
  - ``UnresolvedSessionError``: no credentials could be bound to the call.
  - ``MalformedResponseError``: a 2xx response whose body was not the
    expected JSON.

The only rewrite applied here is the billing guidance for quota and resource
limit responses; the original status code is always kept.
"""

from __future__ import annotations

from pydantic import ValidationError

from oneclaw_mcp.vault.models import ErrorEnvelope

BILLING_URL = "https://1claw.xyz/settings/billing"

QUOTA_EXHAUSTED_MESSAGE = (
    "Free tier quota exhausted. Upgrade your plan or add payment at " + BILLING_URL
)

RESOURCE_LIMIT_TYPE = "resource_limit_exceeded"

AUTH_FAILED_PREFIX = "Authentication failed: "


class OneClawError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(OneClawError):
    """Raised when required configuration is missing or invalid."""


class ApiError(OneClawError):
    """The upstream API answered with a non-2xx status.

    Attributes:
        status_code: HTTP status, never rewritten.
        detail:      Human-readable message (possibly remapped for billing).
        error_kind:  The ``type`` field of the error envelope, if any.
    """

    def __init__(self, status_code: int, detail: str, error_kind: str | None = None) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail
        self.error_kind = error_kind

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(status_code={self.status_code}, detail={self.detail!r})"


class AuthenticationError(ApiError):
    """The agent-token exchange was rejected."""

    def __init__(self, status_code: int, detail: str, error_kind: str | None = None) -> None:
        super().__init__(status_code, AUTH_FAILED_PREFIX + detail, error_kind)


class TransportError(OneClawError):
    """Network, DNS or timeout failure before any HTTP status was known."""

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.__cause__ = cause


class UnresolvedSessionError(OneClawError):
    """A call arrived with no session credentials and no shared identity."""


class MalformedResponseError(OneClawError):
    """A success response whose body could not be decoded as expected."""


def parse_error_envelope(body: bytes) -> ErrorEnvelope:
    """Decode *body* as an error envelope, or return an empty one.

    Error bodies are best-effort: proxies and load balancers return HTML or
    nothing at all.  Anything that is not a JSON object of the right shape
    yields ``ErrorEnvelope()``.
    """
    if not body:
        return ErrorEnvelope()
    try:
        return ErrorEnvelope.model_validate_json(body)
    except ValidationError:
        return ErrorEnvelope()


def remap_detail(status_code: int, envelope: ErrorEnvelope) -> str:
    """Return the human-readable detail for a failed response."""
    detail = envelope.detail or f"HTTP {status_code}"
    if status_code == 402:
        return QUOTA_EXHAUSTED_MESSAGE
    if status_code == 403 and envelope.type == RESOURCE_LIMIT_TYPE:
        return f"Resource limit reached: {detail}. Upgrade your plan at {BILLING_URL}"
    return detail


def api_error_from_response(
    status_code: int,
    body: bytes,
    error_cls: type[ApiError] = ApiError,
) -> ApiError:
    """Build the ``ApiError`` (or subclass) for a non-2xx response."""
    envelope = parse_error_envelope(body)
    return error_cls(status_code, remap_detail(status_code, envelope), envelope.type)
