"""Shared fixtures for tests."""

from __future__ import annotations

import datetime
import itertools
import json
from typing import Any, Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from oneclaw_mcp.auth.credentials import ExchangeableIdentity, StaticToken
from oneclaw_mcp.vault.client import OneClawClient
from oneclaw_mcp.vault.models import SecretListResponse, SecretMetadata, SecretWithValue

BASE_URL = "https://api.test.1claw.xyz"
VAULT_ID = "vault-1"

Override = Callable[[httpx.Request], httpx.Response]


class FakeUpstream:
    """In-memory stand-in for the 1claw API, served through ``httpx.MockTransport``.

    Implements the agent-token exchange and the secret CRUD endpoints.  Any
    ``(method, path)`` registered in ``overrides`` short-circuits the default
    behaviour, which is how tests inject error responses.
    """

    def __init__(self, expires_in: int = 3600) -> None:
        self.expires_in = expires_in
        self.requests: list[httpx.Request] = []
        self.exchange_count = 0
        self.secrets: dict[str, dict[str, Any]] = {}
        self.overrides: dict[tuple[str, str], Override] = {}
        self._ids = itertools.count(1)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def respond(self, method: str, path: str, response: httpx.Response | Override) -> None:
        if isinstance(response, httpx.Response):
            self.overrides[(method, path)] = lambda request: response
        else:
            self.overrides[(method, path)] = response

    @property
    def api_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path != "/v1/auth/agent-token"]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        override = self.overrides.get((request.method, path))
        if override is not None:
            return override(request)

        if path == "/v1/auth/agent-token" and request.method == "POST":
            return self._exchange(request)

        prefix = f"/v1/vaults/{VAULT_ID}/secrets"
        if path == prefix and request.method == "GET":
            listed = [{k: v for k, v in s.items() if k != "value"} for s in self.secrets.values()]
            return httpx.Response(200, json={"secrets": listed})
        if path.startswith(prefix + "/"):
            return self._secret(request, path[len(prefix) + 1:])

        return httpx.Response(404, json={"type": "not_found", "detail": "Not found"})

    # -- endpoints ------------------------------------------------------------

    def _exchange(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body.get("api_key") != "good-key":
            return httpx.Response(401, json={"type": "unauthorized", "detail": "Invalid API key"})
        self.exchange_count += 1
        return httpx.Response(
            200,
            json={"access_token": f"access-{self.exchange_count}", "expires_in": self.expires_in},
        )

    def _secret(self, request: httpx.Request, secret_path: str) -> httpx.Response:
        if request.method == "GET":
            secret = self.secrets.get(secret_path)
            if secret is None:
                return httpx.Response(404, json={"detail": f"Secret '{secret_path}' not found"})
            return httpx.Response(200, json=secret)

        if request.method == "PUT":
            body = json.loads(request.content)
            previous = self.secrets.get(secret_path)
            secret = {
                "id": previous["id"] if previous else f"sec-{next(self._ids)}",
                "path": secret_path,
                "type": body["type"],
                "version": previous["version"] + 1 if previous else 1,
                "metadata": body.get("metadata", {}),
                "created_at": datetime.datetime.now(datetime.UTC).isoformat(),
                "expires_at": body.get("expires_at"),
                "value": body["value"],
            }
            self.secrets[secret_path] = secret
            return httpx.Response(201, json={k: v for k, v in secret.items() if k != "value"})

        if request.method == "DELETE":
            if self.secrets.pop(secret_path, None) is None:
                return httpx.Response(404, json={"detail": "Not found"})
            return httpx.Response(204)

        return httpx.Response(405)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def static_client(upstream: FakeUpstream) -> OneClawClient:
    return OneClawClient(
        StaticToken("static-token"), VAULT_ID, base_url=BASE_URL, transport=upstream.transport
    )


@pytest.fixture
def agent_client(upstream: FakeUpstream) -> OneClawClient:
    return OneClawClient(
        ExchangeableIdentity(identity_id="agent-7", secret="good-key"),
        VAULT_ID,
        base_url=BASE_URL,
        transport=upstream.transport,
    )


def make_secret(
    path: str = "api-keys/stripe",
    *,
    type: str = "api_key",
    version: int = 1,
    value: Optional[str] = None,
) -> SecretMetadata:
    fields = {
        "id": "sec-1",
        "path": path,
        "type": type,
        "version": version,
        "metadata": {},
        "created_at": "2026-01-01T00:00:00Z",
        "expires_at": None,
    }
    if value is None:
        return SecretMetadata(**fields)
    return SecretWithValue(value=value, **fields)


@pytest.fixture
def fake_api() -> MagicMock:
    """A ``VaultApi`` double with async methods and an agent id."""
    api = MagicMock()
    api.agent_id = "agent-7"
    api.vault_id = VAULT_ID
    for name in (
        "list_secrets", "get_secret", "put_secret", "delete_secret", "create_vault",
        "list_vaults", "share_secret", "create_policy", "simulate_transaction",
        "simulate_bundle", "submit_transaction",
    ):
        setattr(api, name, AsyncMock())
    api.list_secrets.return_value = SecretListResponse(secrets=[])
    return api
