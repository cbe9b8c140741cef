"""Binds each tool call to the client that carries its identity.

Pattern: Keyed Session Table
-----------------------------
Two topologies, one lookup:

  - **local** (stdio): a single ``OneClawClient`` is built at startup from the
    environment and every call uses it.
  - **hosted** (Streamable HTTP): every MCP session presents its own bearer
    token and vault id.  The first call in a session builds a client from
    those credentials and stores it under the session id; later calls in the
    same session reuse it.  Two sessions never share a client, so they can
    never observe each other's token state.

The table is the only shared state.  Entries are removed when the transport
reports that a session ended; nothing is persisted.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Callable, Collection, Optional

from oneclaw_mcp.auth.session import SessionAuth
from oneclaw_mcp.vault.client import OneClawClient, VaultApi
from oneclaw_mcp.vault.errors import UnresolvedSessionError

logger = logging.getLogger(__name__)

ClientFactory = Callable[[SessionAuth], VaultApi]

NOT_AUTHENTICATED = "Not authenticated. Provide Authorization and X-Vault-ID headers."


@dataclasses.dataclass(frozen=True)
class SessionContext:
    """One row of the session table."""

    auth: SessionAuth
    client: VaultApi


def default_client_factory(
    base_url: str, timeout: float | None = 30.0
) -> ClientFactory:
    """Return a factory that builds a static-token client per session."""

    def build(auth: SessionAuth) -> VaultApi:
        return OneClawClient(auth.credentials, auth.vault_id, base_url=base_url, timeout=timeout)

    return build


class SessionRouter:
    """Resolves the ``VaultApi`` for a call."""

    def __init__(
        self,
        *,
        shared_client: VaultApi | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._shared_client = shared_client
        self._client_factory = client_factory
        self._sessions: dict[str, SessionContext] = {}

    @classmethod
    def local(cls, client: VaultApi) -> SessionRouter:
        return cls(shared_client=client)

    @classmethod
    def hosted(cls, client_factory: ClientFactory) -> SessionRouter:
        return cls(client_factory=client_factory)

    @property
    def is_hosted(self) -> bool:
        return self._client_factory is not None

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def client_for(
        self,
        session_id: Optional[str] = None,
        auth: Optional[SessionAuth] = None,
    ) -> VaultApi:
        """Return the client for this call.

        Raises ``UnresolvedSessionError`` when there are no session
        credentials and no shared client.
        """
        if auth is None or self._client_factory is None:
            if self._shared_client is not None:
                return self._shared_client
            raise UnresolvedSessionError(NOT_AUTHENTICATED)

        if session_id is None:
            # Stateless request: nothing to key on, so the client lives for this call only.
            return self._client_factory(auth)

        entry = self._sessions.get(session_id)
        if entry is not None and entry.auth == auth:
            return entry.client

        if entry is not None:
            logger.info("Session %s presented new credentials; rebuilding client", session_id)
        client = self._client_factory(auth)
        self._sessions[session_id] = SessionContext(auth=auth, client=client)
        logger.debug("Bound session %s to %s", session_id, auth)
        return client

    def drop(self, session_id: str) -> bool:
        """Forget *session_id*; returns True if it was bound."""
        removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.debug("Dropped session %s", session_id)
        return removed

    def retain(self, live_session_ids: Collection[str]) -> int:
        """Drop every bound session the transport no longer knows about.

        Returns the number of entries dropped.
        """
        stale = [sid for sid in self._sessions if sid not in live_session_ids]
        for session_id in stale:
            self.drop(session_id)
        return len(stale)
