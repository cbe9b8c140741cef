"""CLI entry point: ties together configuration, the session router and the MCP server."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from oneclaw_mcp.config import Settings
from oneclaw_mcp.mcp.session_router import SessionRouter, default_client_factory
from oneclaw_mcp.mcp.vault_server import VaultMCPServer
from oneclaw_mcp.vault.client import OneClawClient
from oneclaw_mcp.vault.errors import ConfigError

logger = logging.getLogger(__name__)


def build_router(settings: Settings) -> SessionRouter:
    """Construct the router for the configured topology.

    In local mode this validates credentials first and raises ``ConfigError``
    before any work is accepted.
    """
    if settings.is_hosted:
        return SessionRouter.hosted(default_client_factory(settings.base_url, settings.timeout))

    settings.validate_local()
    client = OneClawClient(
        settings.credentials(),
        settings.vault_id,
        base_url=settings.base_url,
        agent_id=settings.agent_id,
        timeout=settings.timeout,
    )
    return SessionRouter.local(client)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="1claw MCP server: vault secrets as agent tools",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Optional YAML settings file (environment variables take precedence)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args(argv)

    # stdout carries the stdio transport; logs always go to stderr.
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    try:
        settings = Settings.load(config_path=args.config)
        router = build_router(settings)
    except ConfigError as exc:
        logger.error("%s", exc)
        sys.exit(1)

    logger.info("Loaded %r", settings)
    server = VaultMCPServer(router)

    if settings.is_hosted:
        asyncio.run(server.run_http(settings.host, settings.port))
    else:
        asyncio.run(server.run())


if __name__ == "__main__":
    main()
