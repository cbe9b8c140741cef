"""Bearer-token resolution for upstream calls.

Pattern: Credential Brokering
------------------------------
Agents configured with an API key never send that key on ordinary requests.
Instead the resolver exchanges ``agent_id`` + ``api_key`` at
``/v1/auth/agent-token`` for a short-lived access token, caches it, and hands
out the cached value until it is within ``REFRESH_BUFFER`` of expiry.  The
next ``resolve()`` after that point performs a fresh exchange.

Static tokens skip all of this: they are returned as-is, forever.

Refreshes are serialised behind one lock per resolver and re-checked after the
lock is taken, so concurrent callers that all see a stale token share a single
exchange instead of each issuing one.
"""

from __future__ import annotations

import asyncio
import datetime
import logging

import httpx

from oneclaw_mcp.auth.credentials import (
    AccessToken,
    Credentials,
    ExchangeableIdentity,
    StaticToken,
)
from oneclaw_mcp.vault.errors import (
    AuthenticationError,
    MalformedResponseError,
    api_error_from_response,
)
from oneclaw_mcp.vault.http import RequestTarget, decode_success, send
from oneclaw_mcp.vault.models import AgentTokenResponse

logger = logging.getLogger(__name__)

REFRESH_BUFFER = datetime.timedelta(seconds=60)

_TOKEN_PATH = ("v1", "auth", "agent-token")


class CredentialResolver:
    """Produces a currently-valid bearer token for one set of credentials."""

    def __init__(
        self,
        credentials: Credentials,
        base_url: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = 30.0,
    ) -> None:
        self._credentials = credentials
        self._base_url = base_url
        self._transport = transport
        self._timeout = timeout
        self._access_token: AccessToken | None = None
        self._refresh_lock = asyncio.Lock()

    @property
    def identity_id(self) -> str | None:
        """The exchangeable identity's agent id, or None for a static token."""
        if isinstance(self._credentials, ExchangeableIdentity):
            return self._credentials.identity_id
        return None

    @property
    def access_token(self) -> AccessToken | None:
        """The cached token, if an exchange has happened."""
        return self._access_token

    async def resolve(self) -> str:
        """Return a bearer token, exchanging credentials when needed."""
        if isinstance(self._credentials, StaticToken):
            return self._credentials.token

        if not self._needs_refresh():
            return self._access_token.value

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited.
            if self._needs_refresh():
                self._access_token = await self._exchange(self._credentials)
        return self._access_token.value

    # -- private helpers -----------------------------------------------------

    def _needs_refresh(self) -> bool:
        return self._access_token is None or self._access_token.expires_within(REFRESH_BUFFER)

    async def _exchange(self, identity: ExchangeableIdentity) -> AccessToken:
        target = RequestTarget(
            base_url=self._base_url,
            path_segments=_TOKEN_PATH,
            method="POST",
            body={"agent_id": identity.identity_id, "api_key": identity.secret},
        )
        response = await send(
            target.method,
            target.url,
            headers={"Content-Type": "application/json"},
            body=target.body,
            transport=self._transport,
            timeout=self._timeout,
        )
        if not response.is_success:
            logger.warning(
                "Agent token exchange rejected: agent=%s, status=%d",
                identity.identity_id,
                response.status_code,
            )
            raise api_error_from_response(
                response.status_code, response.content, error_cls=AuthenticationError
            )

        issued: AgentTokenResponse | None = decode_success(response, AgentTokenResponse)
        if issued is None:
            raise MalformedResponseError("Agent token exchange returned no body")
        expires_at = datetime.datetime.now(datetime.UTC) + datetime.timedelta(
            seconds=issued.expires_in
        )
        logger.info(
            "Exchanged agent credentials: agent=%s, expires_in=%ds",
            identity.identity_id,
            issued.expires_in,
        )
        return AccessToken(value=issued.access_token, expires_at=expires_at)
