"""Upstream credentials and the short-lived access token derived from them.

Pattern: Credential Variants
-----------------------------
An agent reaches the 1claw API with one of two kinds of credential:

  - ``StaticToken``: an already-issued bearer token.  It is used verbatim and
    never refreshed; when it expires the upstream answers 401 and the caller
    has to supply a new one.
  - ``ExchangeableIdentity``: an agent id plus its long-lived API key.  The
    pair is exchanged for a short-lived ``AccessToken`` that the resolver
    refreshes on demand.

Both are frozen: credentials never change for the lifetime of the client
that owns them.  A new identity means a new client.
"""

from __future__ import annotations

import dataclasses
import datetime
from typing import Union


@dataclasses.dataclass(frozen=True)
class StaticToken:
    """A bearer token with no refresh capability."""

    token: str

    def __repr__(self) -> str:
        return "StaticToken(token=***)"


@dataclasses.dataclass(frozen=True)
class ExchangeableIdentity:
    """An agent identity that can be exchanged for short-lived tokens.

    Attributes:
        identity_id: The agent id registered with 1claw.
        secret:      The agent's long-lived API key.
    """

    identity_id: str
    secret: str

    def __repr__(self) -> str:
        return f"ExchangeableIdentity(identity_id={self.identity_id!r}, secret=***)"


Credentials = Union[StaticToken, ExchangeableIdentity]


@dataclasses.dataclass(frozen=True)
class AccessToken:
    """A short-lived token issued by the agent-token exchange."""

    value: str
    expires_at: datetime.datetime

    def expires_within(self, buffer: datetime.timedelta) -> bool:
        """True when the token expires less than *buffer* from now."""
        return self.expires_at - datetime.datetime.now(datetime.UTC) <= buffer

    def __repr__(self) -> str:
        return f"AccessToken(value=***, expires_at={self.expires_at.isoformat()})"
