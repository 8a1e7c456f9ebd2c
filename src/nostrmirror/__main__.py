"""CLI entry point for nostrmirror.

``run`` keeps the mirror alive (live subscription plus periodic resync) until
SIGINT/SIGTERM; the other commands perform one operation and exit.

Examples:
    ```bash
    python -m nostrmirror run --config config/state_sync.yaml
    python -m nostrmirror set-key < key.txt
    python -m nostrmirror post "gm #nostr"
    python -m nostrmirror status "coding" --link https://example.com --expires-in 3600
    python -m nostrmirror show
    ```
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from nostrmirror.core import start_metrics_server
from nostrmirror.core.exceptions import NostrMirrorError
from nostrmirror.core.logger import Logger, StructuredFormatter
from nostrmirror.core.store import HostContext, open_host_context
from nostrmirror.core.yaml import load_yaml
from nostrmirror.models.constants import StorageKey
from nostrmirror.services.state_sync import StateSync, StateSyncConfig
from nostrmirror.utils.keys import ENV_PRIVATE_KEY, load_private_key_from_env


DEFAULT_CONFIG = Path("config") / "state_sync.yaml"

logger = Logger("cli")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def cmd_run(engine: StateSync, _args: argparse.Namespace) -> int:
    """Run until a shutdown signal arrives, resyncing every ``interval`` seconds."""
    metrics_config = engine.config.metrics
    metrics_server = await start_metrics_server(metrics_config)
    if metrics_config.enabled:
        logger.info(
            "metrics_server_started",
            host=metrics_config.host,
            port=metrics_config.port,
            path=metrics_config.path,
        )

    def handle_signal(sig: signal.Signals) -> None:
        logger.info("shutdown_signal", signal=sig.name)
        engine.request_shutdown()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        # start() already synced; wait one interval before the first cycle
        if not await engine.wait(engine.config.interval):
            await engine.run_forever()
        return 0
    finally:
        await metrics_server.stop()
        if metrics_config.enabled:
            logger.info("metrics_server_stopped")


async def cmd_sync(engine: StateSync, _args: argparse.Namespace) -> int:
    await engine.sync_states_with_relays(sync_metadata=True)
    return 0


async def cmd_post(engine: StateSync, args: argparse.Namespace) -> int:
    event_id = await engine.post_text(args.text)
    if event_id is None:
        return 1
    await engine.drain_publishes()
    print(event_id)
    return 0


async def cmd_status(engine: StateSync, args: argparse.Namespace) -> int:
    status = args.text if args.text is not None else engine.config.default_status
    link = args.link if args.link is not None else engine.config.default_link_url
    expiration = None
    if args.expires_in is not None:
        expiration = int(time.time()) + args.expires_in
    event_id = await engine.update_user_status(status, link, expiration)
    if event_id is None:
        return 1
    await engine.drain_publishes()
    print(event_id)
    return 0


def _read_key(args: argparse.Namespace) -> str:
    if args.key:
        return str(args.key)
    env_value = load_private_key_from_env()
    if env_value:
        return env_value
    return sys.stdin.readline().strip()


async def cmd_set_key(engine: StateSync, args: argparse.Namespace) -> int:
    if await engine.is_private_key_set() and not args.force:
        logger.error("private_key_exists", hint="pass --force to overwrite")
        return 1
    try:
        updated = await engine.update_private_key(_read_key(args))
    except ValueError as e:
        logger.error("private_key_invalid", error=str(e))
        return 1
    if not updated:
        return 1
    print(await engine.get_public_key())
    return 0


async def cmd_clear_key(engine: StateSync, _args: argparse.Namespace) -> int:
    return 0 if await engine.clear_private_key() else 1


async def cmd_show(engine: StateSync, _args: argparse.Namespace) -> int:
    status = engine.user_status
    summary = {
        "public_key": await engine.get_public_key(),
        "profile": engine.profile,
        "relays": {url: access.to_dict() for url, access in engine.relays.items()},
        "status": {
            "status": status.status,
            "link_url": status.link_url,
            "expiration": status.expiration,
        },
        "relay_states": await engine.relay_states(),
        "last_updated": engine.last_updated,
    }
    print(json.dumps(summary, indent=2, ensure_ascii=False))
    return 0


COMMANDS = {
    "run": cmd_run,
    "sync": cmd_sync,
    "post": cmd_post,
    "status": cmd_status,
    "set-key": cmd_set_key,
    "clear-key": cmd_clear_key,
    "show": cmd_show,
}

# the memory store forgets these on exit
DURABLE_COMMANDS = frozenset({"set-key", "clear-key"})


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="nostrmirror",
        description="Mirror and update a Nostr identity's profile, relay list and status",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Config path (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Keep the mirror in sync until interrupted")
    sub.add_parser("sync", help="Fetch profile, relay list and status once")

    post = sub.add_parser("post", help="Publish a text note")
    post.add_argument("text", help="Note content; #hashtags become t tags")

    status = sub.add_parser("status", help="Publish a general user status")
    status.add_argument("text", nargs="?", default=None, help="Status text")
    status.add_argument("--link", default=None, help="URL attached to the status")
    status.add_argument(
        "--expires-in", type=int, default=None, help="Seconds until the status expires"
    )

    set_key = sub.add_parser("set-key", help="Store the private key (hex or nsec)")
    set_key.add_argument(
        "--key", default=None, help=f"Private key (default: ${ENV_PRIVATE_KEY} or stdin)"
    )
    set_key.add_argument("--force", action="store_true", help="Overwrite an existing key")

    sub.add_parser("clear-key", help="Forget the private key and all cached state")
    sub.add_parser("show", help="Print the mirrored state as JSON")

    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    """Install ``StructuredFormatter`` on the root handler."""
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level))


def _load_yaml_dict(path: Path) -> dict[str, Any]:
    """Load a YAML file as a dict, returning ``{}`` if the file does not exist."""
    if not path.exists():
        logger.warning("config_not_found", path=str(path))
        return {}
    return load_yaml(path)


async def _seed_memory_key(host: HostContext) -> None:
    """Load ``$NOSTR_PRIVATE_KEY`` into a memory secret store.

    Raises:
        ValueError: If the variable holds neither hex nor ``nsec1``.
    """
    hex_key = load_private_key_from_env()
    if hex_key is not None:
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)


async def main(argv: list[str] | None = None) -> int:
    """Parse args, open the host stores and run the requested command."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = StateSyncConfig(**_load_yaml_dict(args.config))
    except (ValidationError, NostrMirrorError) as e:
        logger.error("config_invalid", error=str(e))
        return 1

    memory_store = config.store.backend == "memory"
    if memory_store and args.command in DURABLE_COMMANDS:
        logger.error(
            "store_not_durable",
            command=args.command,
            hint=f"set store.backend to postgres, or export ${ENV_PRIVATE_KEY} for each run",
        )
        return 1

    try:
        async with open_host_context(config.store) as host:
            if memory_store:
                await _seed_memory_key(host)
            async with StateSync(host, config) as engine:
                return await COMMANDS[args.command](engine, args)
    except (ConnectionError, ValueError, NostrMirrorError) as e:
        logger.error("command_failed", command=args.command, error=str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 130


def cli() -> None:
    """Synchronous entry point for console_scripts."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
