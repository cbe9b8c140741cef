"""MCP server exposing the 1claw vault as agent tools.

Every tool handler receives the ``VaultApi`` bound to the calling session and
is a thin shell: read arguments, call one client method, format the result.
Status-specific wording (404 / 410 for secrets, 400 / 403 / 422 for
transactions) is applied here; every other error propagates unchanged.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from mcp.types import TextContent

from oneclaw_mcp.mcp.base_server import BaseMCPServer, ToolError
from oneclaw_mcp.mcp.session_router import SessionRouter
from oneclaw_mcp.vault.client import VaultApi
from oneclaw_mcp.vault.errors import ApiError
from oneclaw_mcp.vault.models import SECRET_TYPES, SecretMetadata

logger = logging.getLogger(__name__)

SECRETS_RESOURCE_URI = "vault://secrets"

_TX_PROPERTIES: dict[str, Any] = {
    "to": {"type": "string", "description": "Destination address (0x-prefixed)."},
    "value": {"type": "string", "description": "Value in ETH as decimal string (e.g. '0.01')."},
    "chain": {"type": "string", "description": "Chain name ('base', 'ethereum', ...) or numeric chain ID."},
    "data": {"type": "string", "description": "Hex-encoded calldata for contract interactions."},
    "signing_key_path": {
        "type": "string",
        "description": "Vault path to the signing key. Defaults to keys/{chain}-signer.",
    },
    "gas_limit": {"type": "integer", "description": "Gas limit. Defaults to 21000."},
}

_TX_FIELDS = ("to", "value", "chain", "data", "signing_key_path", "gas_limit")

_SUBMIT_FIELDS = _TX_FIELDS + (
    "nonce",
    "gas_price",
    "max_fee_per_gas",
    "max_priority_fee_per_gas",
    "simulate_first",
)


def _text(text: str) -> list[TextContent]:
    return [TextContent(type="text", text=text)]


def _secret_summary(secret: SecretMetadata) -> dict[str, Any]:
    return {
        "path": secret.path,
        "type": secret.type,
        "version": secret.version,
        "metadata": secret.metadata,
        "created_at": secret.created_at,
        "expires_at": secret.expires_at,
    }


def _raise_for_secret(exc: ApiError, path: str) -> None:
    """Translate secret-lookup statuses into user-facing messages."""
    if exc.status_code == 410:
        raise ToolError(
            f"Secret at path '{path}' is expired or has exceeded its maximum access count."
        ) from exc
    if exc.status_code == 404:
        raise ToolError(f"No secret found at path '{path}'.") from exc


def _raise_for_transaction(exc: ApiError) -> None:
    if exc.status_code == 400:
        raise ToolError(exc.detail) from exc
    if exc.status_code == 403:
        raise ToolError(f"Access denied: {exc.detail}") from exc
    if exc.status_code == 422:
        raise ToolError(f"Transaction rejected: {exc.detail}") from exc


def parse_env_bundle(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines, skipping blanks, comments and malformed lines."""
    env: dict[str, str] = {}
    for line in text.split("\n"):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        env[key] = value
    return env


def _require_agent(client: VaultApi, tool_name: str) -> str:
    agent_id = client.agent_id
    if not agent_id:
        raise ToolError(f"{tool_name} requires agent authentication (ONECLAW_AGENT_ID).")
    return agent_id


def _pick(args: dict[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
    return {field: args[field] for field in fields if args.get(field) is not None}


class VaultMCPServer(BaseMCPServer):
    """Exposes secret, vault, sharing and transaction tools."""

    def __init__(self, router: SessionRouter) -> None:
        super().__init__("1claw", router)
        self._register_all_tools()
        self._register_resource(
            uri=SECRETS_RESOURCE_URI,
            name="Vault secrets",
            description=(
                "Browsable listing of all secret paths in the configured vault "
                "(metadata only, no values)."
            ),
            loader=self._load_secret_listing,
        )

    def _register_all_tools(self) -> None:
        path_schema = {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "minLength": 1,
                    "description": "Secret path, e.g. 'api-keys/stripe'.",
                },
            },
            "required": ["path"],
        }

        self._register_tool(
            name="list_secrets",
            description=(
                "List all secrets stored in the 1claw vault. Returns paths, types, versions, "
                "and metadata, never secret values. Use this to discover what credentials are "
                "available before fetching one."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "prefix": {
                        "type": "string",
                        "description": "Optional path prefix to filter secrets (e.g. 'api-keys/').",
                    },
                },
            },
            handler=self._list_secrets,
        )

        self._register_tool(
            name="get_secret",
            description=(
                "Fetch the decrypted value of a secret from the 1claw vault by its path. "
                "Use this immediately before making an API call that requires the credential. "
                "Do not store the value or include it in summaries."
            ),
            input_schema=path_schema,
            handler=self._get_secret,
        )

        self._register_tool(
            name="put_secret",
            description=(
                "Store a new secret or update an existing one in the 1claw vault. Each call "
                "creates a new version. Supports optional expiry and max access count."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "minLength": 1, "description": "Secret path."},
                    "value": {"type": "string", "minLength": 1, "description": "The secret value to store."},
                    "type": {
                        "type": "string",
                        "enum": list(SECRET_TYPES),
                        "default": "api_key",
                        "description": "Secret type.",
                    },
                    "metadata": {
                        "type": "object",
                        "description": "Optional JSON metadata to attach to the secret.",
                    },
                    "expires_at": {
                        "type": "string",
                        "description": "Optional ISO 8601 expiry datetime (e.g. '2025-12-31T23:59:59Z').",
                    },
                    "max_access_count": {
                        "type": "integer",
                        "minimum": 1,
                        "description": "Optional maximum number of reads before auto-expiring.",
                    },
                },
                "required": ["path", "value"],
            },
            handler=self._put_secret,
        )

        self._register_tool(
            name="delete_secret",
            description=(
                "Soft-delete a secret at the given path. All versions are marked deleted. "
                "This is reversible by an admin."
            ),
            input_schema=path_schema,
            handler=self._delete_secret,
        )

        self._register_tool(
            name="describe_secret",
            description=(
                "Get metadata for a secret (type, version, expiry) without fetching its value. "
                "Use this to check if a secret exists or is still valid before fetching it."
            ),
            input_schema=path_schema,
            handler=self._describe_secret,
        )

        self._register_tool(
            name="create_vault",
            description=(
                "Create a new vault for organising secrets. The vault is owned by this agent and "
                "automatically shared with the human who registered you."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "name": {
                        "type": "string",
                        "minLength": 1,
                        "maxLength": 255,
                        "description": "Vault name (e.g. 'stripe-production').",
                    },
                    "description": {
                        "type": "string",
                        "description": "Short description of what this vault is for.",
                    },
                },
                "required": ["name"],
            },
            handler=self._create_vault,
        )

        self._register_tool(
            name="list_vaults",
            description=(
                "List all vaults accessible to you (your own and those shared with you). "
                "Returns vault IDs, names, and who created them."
            ),
            input_schema={"type": "object", "properties": {}},
            handler=self._list_vaults,
        )

        self._register_tool(
            name="grant_access",
            description=(
                "Grant a user or agent access to one of your vaults. You can only grant access "
                "on vaults you created."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "vault_id": {"type": "string", "description": "ID of the vault to share."},
                    "principal_type": {"type": "string", "enum": ["user", "agent"]},
                    "principal_id": {
                        "type": "string",
                        "description": "UUID of the user or agent to grant access to.",
                    },
                    "permissions": {
                        "type": "array",
                        "items": {"type": "string", "enum": ["read", "write", "delete"]},
                        "default": ["read"],
                    },
                    "secret_path_pattern": {
                        "type": "string",
                        "default": "**",
                        "description": "Glob pattern for which secrets the policy covers.",
                    },
                },
                "required": ["vault_id", "principal_type", "principal_id"],
            },
            handler=self._grant_access,
        )

        self._register_tool(
            name="share_secret",
            description=(
                "Share a specific secret with a user, agent, or your creator (the human who "
                "registered you). Use recipient_type 'creator' to share back with your human; "
                "no recipient_id needed. For vault-wide access, use grant_access instead."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "secret_id": {"type": "string", "description": "UUID of the secret entry to share."},
                    "recipient_type": {
                        "type": "string",
                        "enum": ["user", "agent", "anyone_with_link", "creator"],
                    },
                    "recipient_id": {
                        "type": "string",
                        "description": "UUID of the recipient (required for user/agent).",
                    },
                    "expires_at": {
                        "type": "string",
                        "description": "ISO-8601 expiry date (e.g. '2026-12-31T00:00:00Z').",
                    },
                    "max_access_count": {"type": "integer", "minimum": 1, "default": 5},
                },
                "required": ["secret_id", "recipient_type", "expires_at"],
            },
            handler=self._share_secret,
        )

        self._register_tool(
            name="simulate_transaction",
            description=(
                "Simulate an EVM transaction without signing or broadcasting. Returns balance "
                "changes, gas estimates, and success/revert status."
            ),
            input_schema={
                "type": "object",
                "properties": dict(_TX_PROPERTIES),
                "required": ["to", "value", "chain"],
            },
            handler=self._simulate_transaction,
        )

        self._register_tool(
            name="simulate_bundle",
            description=(
                "Simulate an ordered bundle of EVM transactions (e.g. approve then swap) "
                "without signing or broadcasting."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "transactions": {
                        "type": "array",
                        "minItems": 1,
                        "items": {
                            "type": "object",
                            "properties": dict(_TX_PROPERTIES),
                            "required": ["to", "value", "chain"],
                        },
                    },
                },
                "required": ["transactions"],
            },
            handler=self._simulate_bundle,
        )

        self._register_tool(
            name="submit_transaction",
            description=(
                "Submit an EVM transaction to be signed by 1claw's crypto proxy and optionally "
                "broadcast. Set simulate_first=true to simulate before signing (recommended)."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    **_TX_PROPERTIES,
                    "nonce": {"type": "integer", "description": "Transaction nonce (auto-resolved if omitted)."},
                    "gas_price": {"type": "string", "description": "Gas price in wei (legacy mode)."},
                    "max_fee_per_gas": {"type": "string", "description": "EIP-1559 max fee per gas in wei."},
                    "max_priority_fee_per_gas": {
                        "type": "string",
                        "description": "EIP-1559 max priority fee per gas in wei.",
                    },
                    "simulate_first": {"type": "boolean", "default": True},
                },
                "required": ["to", "value", "chain"],
            },
            handler=self._submit_transaction,
        )

        self._register_tool(
            name="rotate_and_store",
            description=(
                "Store a new value for an existing secret (creating a new version) and return the "
                "version number. Useful after regenerating an API key."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "minLength": 1, "description": "Secret path to rotate."},
                    "value": {"type": "string", "minLength": 1, "description": "The new secret value."},
                },
                "required": ["path", "value"],
            },
            handler=self._rotate_and_store,
        )

        self._register_tool(
            name="get_env_bundle",
            description=(
                "Fetch a secret of type env_bundle, parse its KEY=VALUE lines, and return a "
                "JSON object. Useful for injecting environment variables into subprocesses."
            ),
            input_schema=path_schema,
            handler=self._get_env_bundle,
        )

    # -- tool handlers --------------------------------------------------------
    # Each handler follows the same signature:
    #   async def handler(args: dict, client: VaultApi) -> list[TextContent]

    async def _list_secrets(self, args: dict[str, Any], client: VaultApi) -> list[TextContent]:
        data = await client.list_secrets()
        secrets = data.secrets
        prefix = args.get("prefix")
        if prefix:
            secrets = [s for s in secrets if s.path.startswith(prefix)]

        if not secrets:
            return _text("No secrets found in this vault.")

        lines = [
            f"- {s.path}  (type: {s.type}, version: {s.version}, expires: {s.expires_at or 'never'})"
            for s in secrets
        ]
        return _text(f"Found {len(secrets)} secret(s):\n" + "\n".join(lines))

    async def _get_secret(self, args: dict[str, Any], client: VaultApi) -> list[TextContent]:
        path = args["path"]
        try:
            secret = await client.get_secret(path)
        except ApiError as exc:
            _raise_for_secret(exc, path)
            raise
        logger.info("secret accessed: %s", path)
        return _text(json.dumps({
            "path": secret.path,
            "type": secret.type,
            "version": secret.version,
            "value": secret.value,
        }))

    async def _put_secret(self, args: dict[str, Any], client: VaultApi) -> list[TextContent]:
        path = args["path"]
        result = await client.put_secret(
            path,
            args["value"],
            args.get("type") or "api_key",
            metadata=args.get("metadata"),
            expires_at=args.get("expires_at"),
            max_access_count=args.get("max_access_count"),
        )
        logger.info("secret stored: %s", path)
        return _text(f"Secret stored at '{path}' (version {result.version}, type: {result.type}).")

    async def _delete_secret(self, args: dict[str, Any], client: VaultApi) -> list[TextContent]:
        path = args["path"]
        try:
            await client.delete_secret(path)
        except ApiError as exc:
            if exc.status_code == 404:
                raise ToolError(f"No secret found at path '{path}'.") from exc
            raise
        logger.info("secret deleted: %s", path)
        return _text(f"Secret at '{path}' has been soft-deleted.")

    async def _describe_secret(self, args: dict[str, Any], client: VaultApi) -> list[TextContent]:
        path = args["path"]
        data = await client.list_secrets()
        match = next((s for s in data.secrets if s.path == path), None)
        if match is None:
            # Not in the listing (e.g. pagination); fall back to a direct read.
            try:
                match = await client.get_secret(path)
            except ApiError as exc:
                _raise_for_secret(exc, path)
                raise
        return _text(json.dumps(_secret_summary(match), indent=2))

    async def _create_vault(self, args: dict[str, Any], client: VaultApi) -> list[TextContent]:
        vault = await client.create_vault(args["name"], args.get("description"))
        return _text(
            "Vault created successfully.\n"
            f"  ID: {vault.id}\n"
            f"  Name: {vault.name}\n"
            f"  Owner: {vault.created_by_type}:{vault.created_by}\n\n"
            "The vault has been automatically shared with your creator. "
            "You can now store secrets with put_secret (use the vault list to switch vaults)."
        )

    async def _list_vaults(self, args: dict[str, Any], client: VaultApi) -> list[TextContent]:
        vaults = (await client.list_vaults()).vaults
        if not vaults:
            return _text("No vaults found. Create one with create_vault.")
        lines = [
            f"- {v.name}  (id: {v.id}, created by: {v.created_by_type}, {v.created_at})"
            for v in vaults
        ]
        return _text(f"Found {len(vaults)} vault(s):\n" + "\n".join(lines))

    async def _grant_access(self, args: dict[str, Any], client: VaultApi) -> list[TextContent]:
        policy = await client.create_policy(
            args["vault_id"],
            args["principal_type"],
            args["principal_id"],
            args.get("permissions") or ["read"],
            args.get("secret_path_pattern") or "**",
        )
        return _text(
            "Access granted.\n"
            f"  Policy ID: {policy.id}\n"
            f"  Vault: {policy.vault_id}\n"
            f"  Granted to: {policy.principal_type}:{policy.principal_id}\n"
            f"  Permissions: {', '.join(policy.permissions)}\n"
            f"  Path pattern: {policy.secret_path_pattern}"
        )

    async def _share_secret(self, args: dict[str, Any], client: VaultApi) -> list[TextContent]:
        recipient_type = args["recipient_type"]
        recipient_id = args.get("recipient_id")
        if recipient_type in ("user", "agent") and not recipient_id:
            raise ToolError(f"recipient_id is required when sharing with a {recipient_type}.")

        share = await client.share_secret(
            args["secret_id"],
            recipient_type,
            args["expires_at"],
            recipient_id=recipient_id,
            max_access_count=args.get("max_access_count") or 5,
        )

        if recipient_type == "creator":
            recipient_label = "your creator (the human who registered this agent)"
        elif recipient_id:
            recipient_label = f"{recipient_type} ({recipient_id})"
        else:
            recipient_label = recipient_type

        return _text(
            "Secret shared successfully.\n"
            f"  Share ID: {share.id}\n"
            f"  Recipient: {recipient_label}\n"
            f"  Expires: {share.expires_at}\n"
            f"  Max accesses: {share.max_access_count}\n"
            f"  URL: {share.share_url}\n\n"
            "The recipient must accept the share before they can access the secret."
        )

    async def _simulate_transaction(self, args: dict[str, Any], client: VaultApi) -> list[TextContent]:
        agent_id = _require_agent(client, "simulate_transaction")
        try:
            result = await client.simulate_transaction(agent_id, _pick(args, _TX_FIELDS))
        except ApiError as exc:
            _raise_for_transaction(exc)
            raise
        logger.info("simulation: %s (gas: %d)", result.status, result.gas_used)

        lines = [f"Simulation {result.status.upper()}", f"Gas used: {result.gas_used}"]
        if result.gas_estimate_usd:
            lines.append(f"Gas estimate: {result.gas_estimate_usd}")
        if result.balance_changes:
            lines += ["", "Balance changes:"]
            for bc in result.balance_changes:
                token = bc.token_symbol or bc.token or "ETH"
                lines.append(f"  {bc.address}: {bc.change or '?'} {token}")
        if result.error:
            lines += ["", f"Error: {result.error}"]
        if result.error_human_readable:
            lines.append(f"Reason: {result.error_human_readable}")
        if result.tenderly_dashboard_url:
            lines += ["", f"Tenderly: {result.tenderly_dashboard_url}"]
        return _text("\n".join(lines))

    async def _simulate_bundle(self, args: dict[str, Any], client: VaultApi) -> list[TextContent]:
        agent_id = _require_agent(client, "simulate_bundle")
        transactions = [_pick(tx, _TX_FIELDS) for tx in args["transactions"]]
        try:
            result = await client.simulate_bundle(agent_id, transactions)
        except ApiError as exc:
            _raise_for_transaction(exc)
            raise
        logger.info("bundle simulation: %s (%d txs)", result.status, len(transactions))

        lines = [f"Bundle simulation {result.status.upper()}"]
        for index, sim in enumerate(result.simulations, start=1):
            line = f"  #{index}: {sim.status} (gas: {sim.gas_used})"
            if sim.error_human_readable or sim.error:
                line += f" - {sim.error_human_readable or sim.error}"
            lines.append(line)
        return _text("\n".join(lines))

    async def _submit_transaction(self, args: dict[str, Any], client: VaultApi) -> list[TextContent]:
        agent_id = _require_agent(client, "submit_transaction")
        transaction = _pick(args, _SUBMIT_FIELDS)
        transaction.setdefault("simulate_first", True)
        try:
            result = await client.submit_transaction(agent_id, transaction)
        except ApiError as exc:
            _raise_for_transaction(exc)
            raise
        logger.info("transaction: %s (%s)", result.status, result.id)

        lines = [
            f"Transaction {result.status.upper()}",
            f"ID: {result.id}",
            f"Chain: {result.chain} ({result.chain_id})",
            f"To: {result.to}",
            f"Value: {result.value_wei} wei",
        ]
        if result.tx_hash:
            lines.append(f"Tx hash: {result.tx_hash}")
        if result.simulation_id:
            lines.append(f"Simulation: {result.simulation_id} ({result.simulation_status})")
        if result.error_message:
            lines.append(f"Error: {result.error_message}")
        return _text("\n".join(lines))

    async def _rotate_and_store(self, args: dict[str, Any], client: VaultApi) -> list[TextContent]:
        path = args["path"]
        result = await client.put_secret(path, args["value"], "api_key")
        logger.info("secret rotated: %s", path)
        return _text(f"Rotated secret at '{path}'. New version: {result.version}.")

    async def _get_env_bundle(self, args: dict[str, Any], client: VaultApi) -> list[TextContent]:
        path = args["path"]
        try:
            secret = await client.get_secret(path)
        except ApiError as exc:
            _raise_for_secret(exc, path)
            raise
        logger.info("env_bundle accessed: %s", path)

        if secret.type != "env_bundle":
            raise ToolError(f"Secret at '{path}' is type '{secret.type}', not 'env_bundle'.")
        return _text(json.dumps(parse_env_bundle(secret.value), indent=2))

    # -- resources ------------------------------------------------------------

    async def _load_secret_listing(self, client: VaultApi) -> str:
        data = await client.list_secrets()
        return json.dumps(
            [
                {"path": s.path, "type": s.type, "version": s.version, "expires_at": s.expires_at}
                for s in data.secrets
            ],
            indent=2,
        )
