"""Wire models for the 1claw REST API.

Responses are validated into these pydantic models at the HTTP boundary so the
tool layer works with typed attributes rather than raw dicts.  Unknown fields
are ignored: the upstream may add fields without breaking this client.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

SECRET_TYPES: tuple[str, ...] = (
    "api_key",
    "password",
    "private_key",
    "certificate",
    "file",
    "note",
    "ssh_key",
    "env_bundle",
)


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ErrorEnvelope(_WireModel):
    """RFC 7807-style problem body returned on non-2xx responses."""

    type: Optional[str] = None
    title: Optional[str] = None
    status: Optional[int] = None
    detail: Optional[str] = None


class AgentTokenResponse(_WireModel):
    access_token: str
    expires_in: int


class SecretMetadata(_WireModel):
    id: str
    path: str
    type: str
    version: int
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str
    expires_at: Optional[str] = None


class SecretWithValue(SecretMetadata):
    value: str


class SecretListResponse(_WireModel):
    secrets: list[SecretMetadata] = Field(default_factory=list)


class VaultResponse(_WireModel):
    id: str
    name: str
    description: str = ""
    created_by: str
    created_by_type: str
    created_at: str


class VaultListResponse(_WireModel):
    vaults: list[VaultResponse] = Field(default_factory=list)


class PolicyResponse(_WireModel):
    id: str
    vault_id: str
    secret_path_pattern: str
    principal_type: str
    principal_id: str
    permissions: list[str]
    conditions: dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[str] = None
    created_by: str
    created_by_type: str
    created_at: str


class ShareLinkResponse(_WireModel):
    id: str
    share_url: str
    recipient_type: str
    recipient_email: Optional[str] = None
    expires_at: str
    max_access_count: int


class BalanceChange(_WireModel):
    address: str
    token: Optional[str] = None
    token_symbol: Optional[str] = None
    change: Optional[str] = None


class SimulationResponse(_WireModel):
    simulation_id: Optional[str] = None
    status: str
    gas_used: int = 0
    gas_estimate_usd: Optional[str] = None
    balance_changes: list[BalanceChange] = Field(default_factory=list)
    error: Optional[str] = None
    error_human_readable: Optional[str] = None
    tenderly_dashboard_url: Optional[str] = None


class BundleSimulationResponse(_WireModel):
    status: str
    simulations: list[SimulationResponse] = Field(default_factory=list)


class TransactionResponse(_WireModel):
    id: str
    status: str
    chain: str
    chain_id: int
    to: str
    value_wei: str
    tx_hash: Optional[str] = None
    simulation_id: Optional[str] = None
    simulation_status: Optional[str] = None
    error_message: Optional[str] = None
