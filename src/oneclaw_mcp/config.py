"""Process configuration: an optional YAML file overlaid by environment variables.

The YAML file mirrors the environment::

    oneclaw:
      base_url: https://api.1claw.xyz
      vault_id: 6c1f...
      agent_id: 9a2e...
      timeout: 30
    server:
      transport: httpStream
      host: 0.0.0.0
      port: 8080

Secrets (``ONECLAW_AGENT_TOKEN``, ``ONECLAW_API_KEY``) are normally supplied
through the environment only, but the file may carry them for local testing.
"""

from __future__ import annotations

import dataclasses
import os
import pathlib
from typing import Any, Mapping, Optional

import yaml

from oneclaw_mcp.auth.credentials import Credentials, ExchangeableIdentity, StaticToken
from oneclaw_mcp.vault.client import DEFAULT_BASE_URL
from oneclaw_mcp.vault.errors import ConfigError

TRANSPORTS = ("stdio", "httpStream")

# env var -> (yaml section, yaml key, settings field)
_ENV_MAP: list[tuple[str, str, str, str]] = [
    ("ONECLAW_BASE_URL", "oneclaw", "base_url", "base_url"),
    ("ONECLAW_AGENT_TOKEN", "oneclaw", "agent_token", "agent_token"),
    ("ONECLAW_AGENT_ID", "oneclaw", "agent_id", "agent_id"),
    ("ONECLAW_API_KEY", "oneclaw", "api_key", "api_key"),
    ("ONECLAW_VAULT_ID", "oneclaw", "vault_id", "vault_id"),
    ("ONECLAW_TIMEOUT", "oneclaw", "timeout", "timeout"),
    ("MCP_TRANSPORT", "server", "transport", "transport"),
    ("HOST", "server", "host", "host"),
    ("PORT", "server", "port", "port"),
]

_TEXT_FIELDS = (
    "base_url", "agent_token", "agent_id", "api_key", "vault_id", "transport", "host",
)


@dataclasses.dataclass(frozen=True)
class Settings:
    """Resolved runtime settings."""

    base_url: str = DEFAULT_BASE_URL
    transport: str = "stdio"
    host: str = "0.0.0.0"
    port: int = 8080
    timeout: float = 30.0
    agent_token: Optional[str] = None
    agent_id: Optional[str] = None
    api_key: Optional[str] = None
    vault_id: Optional[str] = None

    @property
    def is_hosted(self) -> bool:
        return self.transport == "httpStream"

    @classmethod
    def load(
        cls,
        environ: Mapping[str, str] | None = None,
        config_path: str | pathlib.Path | None = None,
    ) -> Settings:
        """Build settings from *config_path* (if given) and *environ*.

        Environment values win over file values.  Raises ``ConfigError`` for an
        unreadable file, an unknown transport or a non-numeric port/timeout.
        """
        environ = os.environ if environ is None else environ
        file_data = _load_yaml(config_path) if config_path else {}

        raw: dict[str, Any] = {}
        for env_var, section, key, field in _ENV_MAP:
            value = environ.get(env_var)
            if value is None or value == "":
                value = (file_data.get(section) or {}).get(key)
            if value is not None and value != "":
                raw[field] = value

        # YAML may hand back ints for ids (e.g. ``vault_id: 42``).
        for field in _TEXT_FIELDS:
            if field in raw:
                raw[field] = str(raw[field])
        if "port" in raw:
            raw["port"] = _coerce(int, raw["port"], "port")
        if "timeout" in raw:
            raw["timeout"] = _coerce(float, raw["timeout"], "timeout")
        if "base_url" in raw:
            raw["base_url"] = raw["base_url"].rstrip("/")

        settings = cls(**raw)
        if settings.transport not in TRANSPORTS:
            raise ConfigError(
                f"Unsupported MCP_TRANSPORT {settings.transport!r}; expected one of {TRANSPORTS}"
            )
        return settings

    def credentials(self) -> Credentials:
        """Return the upstream credentials for the local topology.

        An agent id with an API key is preferred (it can refresh itself);
        otherwise a static agent token.
        """
        if self.agent_id and self.api_key:
            return ExchangeableIdentity(identity_id=self.agent_id, secret=self.api_key)
        if self.agent_token:
            return StaticToken(self.agent_token)
        raise ConfigError(
            "ONECLAW_AGENT_TOKEN is required (or ONECLAW_AGENT_ID with ONECLAW_API_KEY). "
            "Set it as an environment variable."
        )

    def validate_local(self) -> None:
        """Fail fast when the stdio topology lacks credentials or a vault."""
        self.credentials()
        if not self.vault_id:
            raise ConfigError("ONECLAW_VAULT_ID is required. Set it as an environment variable.")

    def __repr__(self) -> str:
        return (
            f"Settings(base_url={self.base_url!r}, transport={self.transport!r}, "
            f"host={self.host!r}, port={self.port}, vault_id={self.vault_id!r}, "
            f"agent_id={self.agent_id!r})"
        )


# -- private helpers ---------------------------------------------------------


def _load_yaml(config_path: str | pathlib.Path) -> dict[str, Any]:
    path = pathlib.Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    with open(path) as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}")
    return data


def _coerce(kind: type, value: Any, field: str) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {field}: {value!r}") from exc
