"""lightstreamer CLI entrypoint.

Subcommands: stream.

Connects to a Lightstreamer server, starts one subscription and prints a line per
update until the session ends or the process is interrupted. With --json each
update is written as a JSON object (orjson), one per line.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Optional, TextIO

import orjson

from lightstreamer_client.errors import LightstreamerError
from lightstreamer_client.ports.transport import HttpTransport
from lightstreamer_client.session import Session
from lightstreamer_client.settings import StreamSettings, resolve_settings
from lightstreamer_client.subscription import Subscription

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def build_parser() -> argparse.ArgumentParser:
    """
    Return the top-level CLI argument parser.
    """
    p = argparse.ArgumentParser(prog="lightstreamer")
    sub = p.add_subparsers(dest="command", required=True)

    sp = sub.add_parser("stream", help="Subscribe and print updates")
    sp.add_argument("--config", type=Path, required=False, help="Path to a TOML settings file")
    sp.add_argument("--server-url", dest="server_url", help="Lightstreamer server URL")
    sp.add_argument("--username", help="Session username")
    sp.add_argument("--password", help="Session password")
    sp.add_argument("--adapter-set", dest="adapter_set", help="Adapter set name")
    sp.add_argument("--adapter", dest="data_adapter", help="Data adapter name")
    sp.add_argument(
        "--items",
        nargs="+",
        metavar="ITEM",
        help="Item names to subscribe to",
    )
    sp.add_argument(
        "--fields",
        nargs="+",
        metavar="FIELD",
        help="Field names to subscribe to",
    )
    sp.add_argument(
        "--mode", choices=("merge", "distinct", "command", "raw"), help="Subscription mode"
    )
    sp.add_argument("--selector", help="Selector for the subscription")
    sp.add_argument(
        "--maximum-update-frequency",
        dest="maximum_update_frequency",
        help="Updates per second, 0 for unlimited, or 'unfiltered'",
    )
    sp.add_argument(
        "--requested-maximum-bandwidth",
        dest="requested_max_bandwidth",
        type=float,
        help="Bandwidth limit in kbps, 0 for unlimited",
    )
    # None means "not given" so lower settings layers are kept
    sp.add_argument("--snapshot", action="store_true", default=None, help="Request snapshots")
    sp.add_argument("--polling", action="store_true", default=None, help="Use polling")
    sp.add_argument("--json", dest="json_output", action="store_true", help="Print JSON lines")
    sp.add_argument("--log-level", dest="log_level", choices=LOG_LEVELS, default="WARNING")
    return p


def _cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    names = (
        "server_url",
        "username",
        "password",
        "adapter_set",
        "data_adapter",
        "items",
        "fields",
        "mode",
        "selector",
        "maximum_update_frequency",
        "requested_max_bandwidth",
        "snapshot",
        "polling",
    )
    return {name: getattr(args, name) for name in names if getattr(args, name) is not None}


def format_update(
    subscription: Subscription,
    item_name: str,
    item_data: Any,
    new_values: dict[str, Optional[str]],
    *,
    json_output: bool,
) -> str:
    """Render one update as a text or JSON line."""
    if json_output:
        record = {
            "subscription": subscription.id,
            "item": item_name,
            "values": new_values,
            "data": item_data,
        }
        return orjson.dumps(record).decode()

    values = " ".join(f"{name}={value}" for name, value in new_values.items())
    return f"{item_name}: {values}"


async def run_stream(
    settings: StreamSettings,
    *,
    json_output: bool = False,
    out: TextIO = sys.stdout,
    transport: Optional[HttpTransport] = None,
) -> int:
    """Run the stream command until the session ends. Returns the exit code."""
    session = Session(settings.session_config(), transport=transport, name="cli")
    ended = asyncio.Event()

    def on_data(
        subscription: Subscription, item_name: str, item_data: Any, new_values: Any
    ) -> None:
        line = format_update(
            subscription, item_name, item_data, new_values, json_output=json_output
        )
        out.write(line)
        out.write("\n")
        out.flush()

    session.on_error(lambda error: ended.set())

    try:
        await session.connect()
        subscription = session.build_subscription(
            settings.items,
            settings.fields,
            settings.mode,
            data_adapter=settings.data_adapter,
            selector=settings.selector,
            maximum_update_frequency=settings.maximum_update_frequency,
        )
        subscription.on_data(on_data)
        await subscription.start(snapshot=settings.snapshot)
        await ended.wait()
    except LightstreamerError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        await session.disconnect()

    error = session.error
    if error is not None:
        print(f"error: {error}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint wrapper compatible with setuptools scripts."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        settings = resolve_settings(args.config, cli_overrides=_cli_overrides(args))
    except LightstreamerError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    try:
        return asyncio.run(run_stream(settings, json_output=args.json_output))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
