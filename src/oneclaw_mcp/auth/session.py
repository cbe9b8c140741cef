"""Per-connection credentials presented by a hosted MCP session.

In the hosted (Streamable HTTP) topology every inbound session carries its own
identity: a bearer token in ``Authorization`` and the vault it is scoped to in
``X-Vault-ID``.  ``SessionAuth`` is the immutable snapshot of those two
headers.  It is created when a request arrives and handed to the session
router, which binds it to a client for that session only.

Sessions never get the refreshable identity flow: the token presented is used
as a static token for the whole session.
"""

from __future__ import annotations

import dataclasses
import re
from typing import Mapping

from oneclaw_mcp.auth.credentials import StaticToken
from oneclaw_mcp.vault.errors import UnresolvedSessionError

AUTHORIZATION_HEADER = "authorization"
VAULT_ID_HEADER = "x-vault-id"
SESSION_ID_HEADER = "mcp-session-id"

_BEARER_PREFIX = re.compile(r"^Bearer\s+", re.IGNORECASE)


@dataclasses.dataclass(frozen=True)
class SessionAuth:
    """Credentials presented by one inbound session.

    Attributes:
        token:    Bearer token for the upstream API (already valid, not refreshed).
        vault_id: Vault the session is scoped to.
    """

    token: str
    vault_id: str

    @property
    def credentials(self) -> StaticToken:
        return StaticToken(self.token)

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> SessionAuth:
        """Build a ``SessionAuth`` from request headers.

        *headers* must be case-insensitive or use lower-case keys (Starlette's
        ``Headers`` is both).  Raises ``UnresolvedSessionError`` naming the
        missing header.
        """
        raw = headers.get(AUTHORIZATION_HEADER) or ""
        token = _BEARER_PREFIX.sub("", raw).strip()
        vault_id = (headers.get(VAULT_ID_HEADER) or "").strip()

        if not token:
            raise UnresolvedSessionError("Missing Authorization header (Bearer <agent-token>)")
        if not vault_id:
            raise UnresolvedSessionError("Missing X-Vault-ID header")
        return cls(token=token, vault_id=vault_id)

    def __str__(self) -> str:
        return f"SessionAuth(vault={self.vault_id})"

    def __repr__(self) -> str:
        return f"SessionAuth(token=***, vault_id={self.vault_id!r})"
