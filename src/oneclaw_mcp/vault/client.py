"""Typed client for the 1claw vault API.

``VaultApi`` is the capability the tool layer depends on: one coroutine per
upstream endpoint plus the ``agent_id`` accessor.  ``OneClawClient`` is the
single implementation, built from a credential variant and a vault id and
backed by its own ``CredentialResolver`` / ``RequestExecutor`` pair.  Tools
never see URLs, headers or status handling.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import httpx

from oneclaw_mcp.auth.credentials import Credentials
from oneclaw_mcp.auth.resolver import CredentialResolver
from oneclaw_mcp.vault.http import RequestExecutor, RequestTarget
from oneclaw_mcp.vault.models import (
    BundleSimulationResponse,
    PolicyResponse,
    SecretListResponse,
    SecretMetadata,
    SecretWithValue,
    ShareLinkResponse,
    SimulationResponse,
    TransactionResponse,
    VaultListResponse,
    VaultResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.1claw.xyz"


def _compact(body: dict[str, Any]) -> dict[str, Any]:
    """Drop unset optional fields so they are omitted from the JSON body."""
    return {key: value for key, value in body.items() if value is not None}


class VaultApi(Protocol):
    """Operations the tool layer may perform against the vault."""

    @property
    def agent_id(self) -> Optional[str]: ...

    @property
    def vault_id(self) -> str: ...

    async def list_secrets(self) -> SecretListResponse: ...

    async def get_secret(self, path: str) -> SecretWithValue: ...

    async def put_secret(
        self,
        path: str,
        value: str,
        type: str = "api_key",
        *,
        metadata: Optional[dict[str, Any]] = None,
        expires_at: Optional[str] = None,
        max_access_count: Optional[int] = None,
    ) -> SecretMetadata: ...

    async def delete_secret(self, path: str) -> None: ...

    async def create_vault(self, name: str, description: Optional[str] = None) -> VaultResponse: ...

    async def list_vaults(self) -> VaultListResponse: ...

    async def share_secret(
        self,
        secret_id: str,
        recipient_type: str,
        expires_at: str,
        *,
        recipient_id: Optional[str] = None,
        email: Optional[str] = None,
        max_access_count: Optional[int] = None,
    ) -> ShareLinkResponse: ...

    async def create_policy(
        self,
        vault_id: str,
        principal_type: str,
        principal_id: str,
        permissions: list[str],
        secret_path_pattern: str = "**",
    ) -> PolicyResponse: ...

    async def simulate_transaction(
        self, agent_id: str, transaction: dict[str, Any]
    ) -> SimulationResponse: ...

    async def simulate_bundle(
        self, agent_id: str, transactions: list[dict[str, Any]]
    ) -> BundleSimulationResponse: ...

    async def submit_transaction(
        self, agent_id: str, transaction: dict[str, Any]
    ) -> TransactionResponse: ...


class OneClawClient:
    """``VaultApi`` implementation over HTTP."""

    def __init__(
        self,
        credentials: Credentials,
        vault_id: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        agent_id: Optional[str] = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._vault_id = vault_id
        self._resolver = CredentialResolver(
            credentials, self._base_url, transport=transport, timeout=timeout
        )
        self._executor = RequestExecutor(self._resolver, transport=transport, timeout=timeout)
        self._agent_id = agent_id or self._resolver.identity_id

    @property
    def agent_id(self) -> Optional[str]:
        return self._agent_id

    @property
    def vault_id(self) -> str:
        return self._vault_id

    @property
    def resolver(self) -> CredentialResolver:
        return self._resolver

    def __repr__(self) -> str:
        return f"OneClawClient(base_url={self._base_url!r}, vault_id={self._vault_id!r})"

    # -- targets --------------------------------------------------------------

    def _target(self, *segments: str, method: str = "GET", body: Any = None) -> RequestTarget:
        return RequestTarget(
            base_url=self._base_url,
            path_segments=("v1",) + segments,
            method=method,
            body=body,
        )

    def _secret_target(self, path: str, method: str = "GET", body: Any = None) -> RequestTarget:
        return self._target(
            "vaults", self._vault_id, "secrets", *path.split("/"), method=method, body=body
        )

    # -- secrets --------------------------------------------------------------

    async def list_secrets(self) -> SecretListResponse:
        return await self._executor.execute(
            self._target("vaults", self._vault_id, "secrets"), SecretListResponse
        )

    async def get_secret(self, path: str) -> SecretWithValue:
        return await self._executor.execute(self._secret_target(path), SecretWithValue)

    async def put_secret(
        self,
        path: str,
        value: str,
        type: str = "api_key",
        *,
        metadata: Optional[dict[str, Any]] = None,
        expires_at: Optional[str] = None,
        max_access_count: Optional[int] = None,
    ) -> SecretMetadata:
        body = _compact({
            "value": value,
            "type": type,
            "metadata": metadata,
            "expires_at": expires_at,
            "max_access_count": max_access_count,
        })
        return await self._executor.execute(
            self._secret_target(path, method="PUT", body=body), SecretMetadata
        )

    async def delete_secret(self, path: str) -> None:
        await self._executor.execute(self._secret_target(path, method="DELETE"))

    # -- vaults & sharing -----------------------------------------------------

    async def create_vault(self, name: str, description: Optional[str] = None) -> VaultResponse:
        body = {"name": name, "description": description or ""}
        return await self._executor.execute(
            self._target("vaults", method="POST", body=body), VaultResponse
        )

    async def list_vaults(self) -> VaultListResponse:
        return await self._executor.execute(self._target("vaults"), VaultListResponse)

    async def share_secret(
        self,
        secret_id: str,
        recipient_type: str,
        expires_at: str,
        *,
        recipient_id: Optional[str] = None,
        email: Optional[str] = None,
        max_access_count: Optional[int] = None,
    ) -> ShareLinkResponse:
        body = _compact({
            "recipient_type": recipient_type,
            "recipient_id": recipient_id,
            "email": email,
            "expires_at": expires_at,
            "max_access_count": max_access_count,
        })
        return await self._executor.execute(
            self._target("secrets", secret_id, "share", method="POST", body=body),
            ShareLinkResponse,
        )

    async def create_policy(
        self,
        vault_id: str,
        principal_type: str,
        principal_id: str,
        permissions: list[str],
        secret_path_pattern: str = "**",
    ) -> PolicyResponse:
        body = {
            "secret_path_pattern": secret_path_pattern,
            "principal_type": principal_type,
            "principal_id": principal_id,
            "permissions": permissions,
        }
        return await self._executor.execute(
            self._target("vaults", vault_id, "policies", method="POST", body=body),
            PolicyResponse,
        )

    # -- transactions ---------------------------------------------------------

    async def simulate_transaction(
        self, agent_id: str, transaction: dict[str, Any]
    ) -> SimulationResponse:
        return await self._executor.execute(
            self._target(
                "agents", agent_id, "transactions", "simulate",
                method="POST", body=_compact(transaction),
            ),
            SimulationResponse,
        )

    async def simulate_bundle(
        self, agent_id: str, transactions: list[dict[str, Any]]
    ) -> BundleSimulationResponse:
        body = {"transactions": [_compact(tx) for tx in transactions]}
        return await self._executor.execute(
            self._target(
                "agents", agent_id, "transactions", "simulate-bundle",
                method="POST", body=body,
            ),
            BundleSimulationResponse,
        )

    async def submit_transaction(
        self, agent_id: str, transaction: dict[str, Any]
    ) -> TransactionResponse:
        return await self._executor.execute(
            self._target(
                "agents", agent_id, "transactions",
                method="POST", body=_compact(transaction),
            ),
            TransactionResponse,
        )
