"""Tests for the vault MCP server: tool handlers, client resolution and HTTP wiring."""

from __future__ import annotations

import asyncio
import json
import time
import types
from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.testclient import TestClient

from oneclaw_mcp.auth.session import SessionAuth
from oneclaw_mcp.mcp.base_server import ToolError, _AuthenticatedMCPEndpoint
from oneclaw_mcp.mcp.session_router import SessionRouter
from oneclaw_mcp.mcp.vault_server import SECRETS_RESOURCE_URI, VaultMCPServer, parse_env_bundle
from oneclaw_mcp.vault.errors import ApiError, UnresolvedSessionError
from oneclaw_mcp.vault.models import (
    BalanceChange,
    BundleSimulationResponse,
    SecretListResponse,
    ShareLinkResponse,
    SimulationResponse,
    TransactionResponse,
)

from conftest import make_secret


def _server(api) -> VaultMCPServer:
    return VaultMCPServer(SessionRouter.local(api))


def _call(server: VaultMCPServer, name: str, args: dict, api) -> str:
    result = asyncio.run(server._get_handler(name)(args, api))
    assert len(result) == 1
    return result[0].text


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

class TestRegistration:
    def test_all_tools_registered(self, fake_api) -> None:
        server = _server(fake_api)
        assert set(server._tools) == {
            "list_secrets", "get_secret", "put_secret", "delete_secret", "describe_secret",
            "create_vault", "list_vaults", "grant_access", "share_secret",
            "simulate_transaction", "simulate_bundle", "submit_transaction",
            "rotate_and_store", "get_env_bundle",
        }

    def test_unknown_tool(self, fake_api) -> None:
        with pytest.raises(ToolError, match="Unknown tool: nope"):
            _server(fake_api)._get_handler("nope")

    def test_secrets_resource_registered(self, fake_api) -> None:
        assert SECRETS_RESOURCE_URI in _server(fake_api)._resources


# ---------------------------------------------------------------------------
# Secret tools
# ---------------------------------------------------------------------------

class TestSecretTools:
    def test_list_filters_by_prefix(self, fake_api) -> None:
        fake_api.list_secrets.return_value = SecretListResponse(
            secrets=[make_secret("api-keys/stripe"), make_secret("db/password", type="password")]
        )
        text = _call(_server(fake_api), "list_secrets", {"prefix": "api-keys/"}, fake_api)

        assert text.startswith("Found 1 secret(s):")
        assert "api-keys/stripe" in text
        assert "db/password" not in text

    def test_list_empty(self, fake_api) -> None:
        text = _call(_server(fake_api), "list_secrets", {}, fake_api)
        assert text == "No secrets found in this vault."

    def test_get_returns_value(self, fake_api) -> None:
        fake_api.get_secret.return_value = make_secret(value="sk_live")
        text = _call(_server(fake_api), "get_secret", {"path": "api-keys/stripe"}, fake_api)
        assert json.loads(text)["value"] == "sk_live"

    def test_get_404(self, fake_api) -> None:
        fake_api.get_secret.side_effect = ApiError(404, "Not found")
        with pytest.raises(ToolError, match="No secret found at path 'x'"):
            _call(_server(fake_api), "get_secret", {"path": "x"}, fake_api)

    def test_get_410(self, fake_api) -> None:
        fake_api.get_secret.side_effect = ApiError(410, "Gone")
        with pytest.raises(ToolError, match="expired or has exceeded"):
            _call(_server(fake_api), "get_secret", {"path": "x"}, fake_api)

    def test_get_other_errors_propagate(self, fake_api) -> None:
        fake_api.get_secret.side_effect = ApiError(500, "boom")
        with pytest.raises(ApiError):
            _call(_server(fake_api), "get_secret", {"path": "x"}, fake_api)

    def test_put_defaults_type(self, fake_api) -> None:
        fake_api.put_secret.return_value = make_secret(version=3)
        text = _call(_server(fake_api), "put_secret", {"path": "k", "value": "v"}, fake_api)

        assert text == "Secret stored at 'k' (version 3, type: api_key)."
        fake_api.put_secret.assert_awaited_once_with(
            "k", "v", "api_key", metadata=None, expires_at=None, max_access_count=None
        )

    def test_delete_404(self, fake_api) -> None:
        fake_api.delete_secret.side_effect = ApiError(404, "Not found")
        with pytest.raises(ToolError, match="No secret found"):
            _call(_server(fake_api), "delete_secret", {"path": "k"}, fake_api)

    def test_describe_from_listing(self, fake_api) -> None:
        fake_api.list_secrets.return_value = SecretListResponse(secrets=[make_secret("k", version=4)])
        summary = json.loads(_call(_server(fake_api), "describe_secret", {"path": "k"}, fake_api))

        assert summary["version"] == 4
        assert "value" not in summary
        fake_api.get_secret.assert_not_awaited()

    def test_describe_falls_back_to_read(self, fake_api) -> None:
        fake_api.get_secret.return_value = make_secret("k", value="secret")
        summary = json.loads(_call(_server(fake_api), "describe_secret", {"path": "k"}, fake_api))

        assert summary["path"] == "k"
        assert "value" not in summary

    def test_rotate(self, fake_api) -> None:
        fake_api.put_secret.return_value = make_secret(version=7)
        text = _call(_server(fake_api), "rotate_and_store", {"path": "k", "value": "new"}, fake_api)
        assert text == "Rotated secret at 'k'. New version: 7."


class TestEnvBundle:
    def test_parse_skips_comments_and_malformed_lines(self) -> None:
        text = "# comment\nA=1\n\n  B = two=2 \nnot a pair\nC="
        assert parse_env_bundle(text) == {"A": "1", "B ": " two=2", "C": ""}

    def test_tool_returns_json(self, fake_api) -> None:
        fake_api.get_secret.return_value = make_secret(type="env_bundle", value="A=1\nB=2")
        text = _call(_server(fake_api), "get_env_bundle", {"path": "env/app"}, fake_api)
        assert json.loads(text) == {"A": "1", "B": "2"}

    def test_wrong_type(self, fake_api) -> None:
        fake_api.get_secret.return_value = make_secret(type="api_key", value="A=1")
        with pytest.raises(ToolError, match="not 'env_bundle'"):
            _call(_server(fake_api), "get_env_bundle", {"path": "env/app"}, fake_api)


# ---------------------------------------------------------------------------
# Sharing
# ---------------------------------------------------------------------------

class TestSharing:
    def test_user_recipient_requires_id(self, fake_api) -> None:
        args = {"secret_id": "s", "recipient_type": "user", "expires_at": "2026-12-31T00:00:00Z"}
        with pytest.raises(ToolError, match="recipient_id is required"):
            _call(_server(fake_api), "share_secret", args, fake_api)
        fake_api.share_secret.assert_not_awaited()

    def test_creator_share(self, fake_api) -> None:
        fake_api.share_secret.return_value = ShareLinkResponse(
            id="sh-1",
            share_url="https://1claw.xyz/s/sh-1",
            recipient_type="creator",
            expires_at="2026-12-31T00:00:00Z",
            max_access_count=5,
        )
        args = {"secret_id": "s", "recipient_type": "creator", "expires_at": "2026-12-31T00:00:00Z"}
        text = _call(_server(fake_api), "share_secret", args, fake_api)

        assert "your creator" in text
        fake_api.share_secret.assert_awaited_once_with(
            "s", "creator", "2026-12-31T00:00:00Z", recipient_id=None, max_access_count=5
        )


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

_TX = {"to": "0xabc", "value": "0.01", "chain": "base"}


class TestTransactions:
    def test_requires_agent(self, fake_api) -> None:
        fake_api.agent_id = None
        with pytest.raises(ToolError, match="requires agent authentication"):
            _call(_server(fake_api), "simulate_transaction", _TX, fake_api)

    def test_simulate(self, fake_api) -> None:
        fake_api.simulate_transaction.return_value = SimulationResponse(
            status="success",
            gas_used=21000,
            balance_changes=[BalanceChange(address="0xme", change="-0.01", token_symbol="ETH")],
        )
        text = _call(_server(fake_api), "simulate_transaction", dict(_TX, data=None), fake_api)

        assert text.startswith("Simulation SUCCESS")
        assert "0xme: -0.01 ETH" in text
        fake_api.simulate_transaction.assert_awaited_once_with("agent-7", _TX)

    def test_simulate_bundle(self, fake_api) -> None:
        fake_api.simulate_bundle.return_value = BundleSimulationResponse(
            status="reverted",
            simulations=[
                SimulationResponse(status="success", gas_used=40000),
                SimulationResponse(status="reverted", gas_used=0, error_human_readable="Out of gas"),
            ],
        )
        text = _call(_server(fake_api), "simulate_bundle", {"transactions": [_TX, _TX]}, fake_api)

        assert text.splitlines()[0] == "Bundle simulation REVERTED"
        assert "#2: reverted (gas: 0) - Out of gas" in text

    def test_submit_defaults_simulate_first(self, fake_api) -> None:
        fake_api.submit_transaction.return_value = TransactionResponse(
            id="tx-1", status="signed", chain="base", chain_id=8453, to="0xabc", value_wei="1"
        )
        text = _call(_server(fake_api), "submit_transaction", _TX, fake_api)

        assert "Transaction SIGNED" in text
        sent = fake_api.submit_transaction.await_args.args[1]
        assert sent["simulate_first"] is True

    @pytest.mark.parametrize(
        ("status", "message"),
        [
            (400, "bad chain"),
            (403, "Access denied: bad chain"),
            (422, "Transaction rejected: bad chain"),
        ],
    )
    def test_error_wording(self, fake_api, status: int, message: str) -> None:
        fake_api.submit_transaction.side_effect = ApiError(status, "bad chain")
        with pytest.raises(ToolError) as excinfo:
            _call(_server(fake_api), "submit_transaction", _TX, fake_api)
        assert str(excinfo.value) == message


# ---------------------------------------------------------------------------
# Vaults and policies
# ---------------------------------------------------------------------------

class TestVaultTools:
    def test_list_vaults_empty(self, fake_api) -> None:
        fake_api.list_vaults.return_value = MagicMock(vaults=[])
        text = _call(_server(fake_api), "list_vaults", {}, fake_api)
        assert text == "No vaults found. Create one with create_vault."

    def test_grant_defaults(self, fake_api) -> None:
        fake_api.create_policy.return_value = MagicMock(
            id="p-1", vault_id="v-2", principal_type="user", principal_id="u-1",
            permissions=["read"], secret_path_pattern="**",
        )
        args = {"vault_id": "v-2", "principal_type": "user", "principal_id": "u-1"}
        text = _call(_server(fake_api), "grant_access", args, fake_api)

        assert "Permissions: read" in text
        fake_api.create_policy.assert_awaited_once_with("v-2", "user", "u-1", ["read"], "**")


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------

class TestSecretsResource:
    def test_listing_has_no_values(self, fake_api) -> None:
        fake_api.list_secrets.return_value = SecretListResponse(secrets=[make_secret("k")])
        server = _server(fake_api)

        listing = json.loads(asyncio.run(server._resource_loaders[SECRETS_RESOURCE_URI](fake_api)))

        assert listing == [{"path": "k", "type": "api_key", "version": 1, "expires_at": None}]


# ---------------------------------------------------------------------------
# Client resolution
# ---------------------------------------------------------------------------

class TestClientForRequest:
    def test_stdio_uses_shared_client(self, fake_api) -> None:
        assert _server(fake_api)._client_for_request(None) is fake_api

    def test_hosted_binds_headers_to_session(self) -> None:
        factory = MagicMock(side_effect=lambda auth: MagicMock(vault_id=auth.vault_id))
        server = VaultMCPServer(SessionRouter.hosted(factory))
        request = types.SimpleNamespace(headers={
            "authorization": "Bearer tok-1",
            "x-vault-id": "v-9",
            "mcp-session-id": "s-1",
        })

        first = server._client_for_request(request)
        second = server._client_for_request(request)

        assert first is second
        assert first.vault_id == "v-9"
        factory.assert_called_once_with(SessionAuth(token="tok-1", vault_id="v-9"))

    def test_hosted_missing_vault(self) -> None:
        server = VaultMCPServer(SessionRouter.hosted(MagicMock()))
        request = types.SimpleNamespace(headers={"authorization": "Bearer tok-1"})
        with pytest.raises(UnresolvedSessionError, match="X-Vault-ID"):
            server._client_for_request(request)


# ---------------------------------------------------------------------------
# HTTP wiring
# ---------------------------------------------------------------------------

class TestHttpApp:
    def test_health(self, fake_api) -> None:
        client = TestClient(_server(fake_api).build_http_app())
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_missing_headers_rejected(self) -> None:
        client = TestClient(VaultMCPServer(SessionRouter.hosted(MagicMock())).build_http_app())
        response = client.post("/mcp", json={})
        assert response.status_code == 401
        assert "Authorization" in response.json()["error"]

    def test_delete_drops_session(self) -> None:
        router = SessionRouter.hosted(MagicMock())
        router.client_for("s-1", SessionAuth(token="tok", vault_id="v"))
        manager = MagicMock()
        manager.handle_request = AsyncMock()
        manager._server_instances = {}
        endpoint = _AuthenticatedMCPEndpoint(manager, router)
        scope = {
            "type": "http",
            "method": "DELETE",
            "path": "/mcp",
            "headers": [
                (b"authorization", b"Bearer tok"),
                (b"x-vault-id", b"v"),
                (b"mcp-session-id", b"s-1"),
            ],
        }

        asyncio.run(endpoint(scope, AsyncMock(), AsyncMock()))

        manager.handle_request.assert_awaited_once()
        assert router.active_sessions == 0

    def test_request_drops_sessions_the_transport_already_ended(self) -> None:
        router = SessionRouter.hosted(MagicMock())
        router.client_for("s-live", SessionAuth(token="tok", vault_id="v"))
        router.client_for("s-reaped", SessionAuth(token="tok", vault_id="v"))
        manager = MagicMock()
        manager.handle_request = AsyncMock()
        manager._server_instances = {"s-live": object()}
        endpoint = _AuthenticatedMCPEndpoint(manager, router)
        scope = {
            "type": "http",
            "method": "POST",
            "path": "/mcp",
            "headers": [
                (b"authorization", b"Bearer tok"),
                (b"x-vault-id", b"v"),
                (b"mcp-session-id", b"s-live"),
            ],
        }

        asyncio.run(endpoint(scope, AsyncMock(), AsyncMock()))

        assert router.active_sessions == 1
        assert router.retain({"s-live"}) == 0


# ---------------------------------------------------------------------------
# Streamable HTTP sessions, end to end
# ---------------------------------------------------------------------------

_PROTOCOL_VERSION = "2025-03-26"

_AUTH_HEADERS = {
    "Authorization": "Bearer tok-1",
    "X-Vault-ID": "v-9",
    "Accept": "application/json, text/event-stream",
    "MCP-Protocol-Version": _PROTOCOL_VERSION,
}


def _rpc_message(response) -> dict:
    """Decode a JSON-RPC reply sent either as JSON or as a single SSE event."""
    if response.headers["content-type"].startswith("application/json"):
        return response.json()
    for line in response.text.splitlines():
        if line.startswith("data:"):
            return json.loads(line[len("data:"):])
    raise AssertionError(f"no JSON-RPC message in response: {response.text!r}")


def _open_session(client: TestClient) -> dict[str, str]:
    response = client.post(
        "/mcp",
        headers=_AUTH_HEADERS,
        json={
            "jsonrpc": "2.0",
            "id": 1,
            "method": "initialize",
            "params": {
                "protocolVersion": _PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": "pytest", "version": "0"},
            },
        },
    )
    assert response.status_code == 200
    headers = dict(_AUTH_HEADERS, **{"mcp-session-id": response.headers["mcp-session-id"]})
    initialized = client.post(
        "/mcp", headers=headers, json={"jsonrpc": "2.0", "method": "notifications/initialized"}
    )
    assert initialized.status_code == 202
    return headers


def _call_list_secrets(client: TestClient, headers: dict[str, str]) -> dict:
    response = client.post(
        "/mcp",
        headers=headers,
        json={
            "jsonrpc": "2.0",
            "id": 2,
            "method": "tools/call",
            "params": {"name": "list_secrets", "arguments": {}},
        },
    )
    assert response.status_code == 200
    return _rpc_message(response)


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


class TestStreamableHttpSessions:
    def test_tool_call_binds_session_client_then_delete_drops_it(self, fake_api) -> None:
        factory = MagicMock(return_value=fake_api)
        router = SessionRouter.hosted(factory)
        app = VaultMCPServer(router).build_http_app()

        with TestClient(app) as client:
            headers = _open_session(client)
            reply = _call_list_secrets(client, headers)

            assert reply["result"]["content"][0]["text"] == "No secrets found in this vault."
            factory.assert_called_once_with(SessionAuth(token="tok-1", vault_id="v-9"))
            assert router.active_sessions == 1

            assert client.delete("/mcp", headers=headers).status_code == 200
            assert router.active_sessions == 0

    def test_idle_session_is_dropped_from_router(self, fake_api) -> None:
        router = SessionRouter.hosted(MagicMock(return_value=fake_api))
        app = VaultMCPServer(router).build_http_app(session_idle_timeout=0.3, sweep_interval=0.05)

        with TestClient(app) as client:
            headers = _open_session(client)
            _call_list_secrets(client, headers)
            assert router.active_sessions == 1

            assert _wait_for(lambda: router.active_sessions == 0)
            assert client.post(
                "/mcp",
                headers=headers,
                json={"jsonrpc": "2.0", "id": 3, "method": "tools/list"},
            ).status_code == 404
