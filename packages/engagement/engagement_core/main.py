"""
Engagement core entry point.

Loads configuration, configures logging, and runs one diagnostic command
against the record store for the session found in the environment.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

import structlog

from .config import EngagementConfig, load_config
from .core import EngagementCore
from .masking import mask
from .schemas import ContactKind


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


async def _with_session(config: EngagementConfig, command: str) -> dict:
    async with EngagementCore(config) as core:
        user_id = config.session.user_id
        token = config.session.access_token
        if user_id and token:
            await core.sign_in(user_id, token)

        capability = await core.resolve_capability()
        if command == "capability":
            return {
                "user_id": capability.user_id,
                "tier": capability.tier.value,
                "authenticated": capability.authenticated,
                "subscribed": capability.subscribed,
                "admin": capability.admin,
            }
        return {
            "user_id": capability.user_id,
            "favorites": sorted(core.favorites.members()),
        }


def run(argv: list[str] | None = None) -> None:
    """CLI entry point for the engagement core."""
    parser = argparse.ArgumentParser(description="Engagement state core diagnostics")
    parser.add_argument(
        "-c", "--config",
        default="engagement.yaml",
        help="Path to configuration file (default: engagement.yaml)",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("capability", help="Resolve the capability of the current session")
    commands.add_parser("favorites", help="List the current session's favorites")
    mask_cmd = commands.add_parser("mask", help="Print the masked rendering of a contact value")
    mask_cmd.add_argument("--kind", choices=[k.value for k in ContactKind], default="email")
    mask_cmd.add_argument("value")
    args = parser.parse_args(argv)

    if args.command == "mask":
        print(mask(args.value, args.kind))
        return

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.info("engagement.config_loaded", config_path=args.config, command=args.command)

    result = asyncio.run(_with_session(config, args.command))
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    run()
