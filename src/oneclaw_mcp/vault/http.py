"""Request execution against the 1claw API.

Pattern: Request Executor
--------------------------
``RequestExecutor.execute`` is the one place where an HTTP call is made on
behalf of a tool.  It:

  1. asks the ``CredentialResolver`` for a current bearer token (which may
     trigger a token exchange),
  2. issues the request on a client that lives only for this call,
  3. turns request failures into ``TransportError`` (or
     ``MalformedResponseError`` for an undecodable body) and non-2xx
     responses into ``ApiError``,
  4. decodes success bodies, optionally into a pydantic model.

There is no retry at this layer, for any status or failure.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, Any, Optional, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from oneclaw_mcp.vault.errors import (
    MalformedResponseError,
    TransportError,
    api_error_from_response,
)

if TYPE_CHECKING:
    from oneclaw_mcp.auth.resolver import CredentialResolver

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Characters encodeURIComponent leaves alone besides the RFC 3986 unreserved set.
_SEGMENT_SAFE = "!~*'()"


def encode_segment(segment: str) -> str:
    """Percent-encode a single path segment, including any ``/`` inside it."""
    return quote(segment, safe=_SEGMENT_SAFE)


def encode_path(path: str) -> str:
    """Encode a ``/``-delimited secret path one component at a time.

    ``"a b/c#d"`` becomes ``"a%20b/c%23d"``: the slash stays a separator while
    everything inside a component is escaped.
    """
    return "/".join(encode_segment(part) for part in path.split("/"))


@dataclasses.dataclass(frozen=True)
class RequestTarget:
    """An immutable description of one upstream call."""

    base_url: str
    path_segments: tuple[str, ...]
    method: str = "GET"
    body: Optional[Any] = None

    @property
    def url(self) -> str:
        path = "/".join(encode_segment(s) for s in self.path_segments)
        return f"{self.base_url.rstrip('/')}/{path}"


def decode_success(response: httpx.Response, shape: type[ModelT] | None = None) -> Any:
    """Decode a 2xx response body.

    Returns ``None`` for 204 without touching the body.  Raises
    ``MalformedResponseError`` when the body is not JSON or does not fit
    *shape*.
    """
    if response.status_code == 204:
        return None
    try:
        data = response.json()
    except ValueError as exc:
        raise MalformedResponseError(
            f"Malformed response from {response.request.method} {response.request.url}: "
            f"body is not valid JSON"
        ) from exc
    if shape is None:
        return data
    try:
        return shape.model_validate(data)
    except ValidationError as exc:
        raise MalformedResponseError(
            f"Malformed response from {response.request.method} {response.request.url}: "
            f"expected {shape.__name__}"
        ) from exc


async def send(
    method: str,
    url: str,
    *,
    headers: dict[str, str],
    body: Any = None,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout: float | None = None,
) -> httpx.Response:
    """Send one request on a short-lived client; map httpx request failures.

    A body that cannot be content-decoded is ``MalformedResponseError``;
    every other ``httpx.RequestError`` is ``TransportError``.
    """
    try:
        async with httpx.AsyncClient(transport=transport, timeout=timeout) as client:
            if body is None:
                return await client.request(method, url, headers=headers)
            return await client.request(method, url, headers=headers, json=body)
    except httpx.DecodingError as exc:
        logger.warning("Undecodable response body: %s %s", method, url)
        raise MalformedResponseError(f"Malformed response from {method} {url}: {exc}") from exc
    except httpx.RequestError as exc:
        logger.warning("Transport failure: %s %s (%s)", method, url, type(exc).__name__)
        raise TransportError(f"Request to {url} failed: {exc}", cause=exc) from exc


class RequestExecutor:
    """Executes authorised calls against the upstream API."""

    def __init__(
        self,
        resolver: CredentialResolver,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = 30.0,
    ) -> None:
        self._resolver = resolver
        self._transport = transport
        self._timeout = timeout

    @property
    def resolver(self) -> CredentialResolver:
        return self._resolver

    async def execute(self, target: RequestTarget, shape: type[ModelT] | None = None) -> Any:
        """Perform *target* and return the decoded body.

        Raises ``TransportError``, ``ApiError`` (including
        ``AuthenticationError`` from a failed refresh) or
        ``MalformedResponseError``.
        """
        token = await self._resolver.resolve()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        url = target.url
        response = await send(
            target.method,
            url,
            headers=headers,
            body=target.body,
            transport=self._transport,
            timeout=self._timeout,
        )
        logger.debug("%s %s -> %d", target.method, url, response.status_code)

        if not response.is_success:
            raise api_error_from_response(response.status_code, response.content)
        return decode_success(response, shape)
