#!/usr/bin/env python3
"""
setup-webhook.py: register, inspect or remove the bot's webhook.

Usage:
  setup-webhook.py info
  setup-webhook.py set https://example.org/api/webhooks/telegram [--secret-token T]
  setup-webhook.py delete [--drop-pending-updates]

The bot token is read through the keychain / ``ADCHANNELS_BOT_TOKEN``
like the services do; Bot API tuning comes from ``[botapi]`` in the
config file when it exists.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict

import toml

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from botapi.client import create_client  # noqa: E402
from botapi.errors import PlatformError  # noqa: E402
from shared.config import DEFAULT_CONFIG_PATH  # noqa: E402
from shared.secrets import get_secret  # noqa: E402

logger = logging.getLogger("scripts.setup_webhook")

DEFAULT_ALLOWED_UPDATES = ["message", "channel_post", "chat_member", "my_chat_member"]


def _botapi_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    return toml.load(path).get("botapi", {})


async def _main_async(args: argparse.Namespace) -> int:
    async with create_client(_botapi_config(args.config), get_secret("bot_token")) as client:
        try:
            if args.command == "set":
                await client.set_webhook(
                    args.url,
                    secret_token=args.secret_token,
                    allowed_updates=args.allowed_updates,
                )
                print(f"Webhook set: {args.url}")
            elif args.command == "delete":
                await client.delete_webhook(drop_pending_updates=args.drop_pending_updates)
                print("Webhook removed")

            info = await client.get_webhook_info()
        except PlatformError as exc:
            print(f"Bot API error: {exc}", file=sys.stderr)
            return 1

    print(f"  url:             {info.url or '(not set)'}")
    print(f"  pending updates: {info.pending_update_count}")
    if info.last_error_message:
        print(f"  last error:      {info.last_error_message} (at {info.last_error_date})")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage the Telegram bot webhook")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to settings.toml",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("info", help="Show the current webhook")

    set_cmd = commands.add_parser("set", help="Register a webhook URL")
    set_cmd.add_argument("url", help="Public HTTPS endpoint")
    set_cmd.add_argument("--secret-token", default=None, help="X-Telegram-Bot-Api-Secret-Token value")
    set_cmd.add_argument(
        "--allowed-updates",
        nargs="+",
        default=DEFAULT_ALLOWED_UPDATES,
        help="Update types to receive",
    )

    delete_cmd = commands.add_parser("delete", help="Remove the webhook")
    delete_cmd.add_argument("--drop-pending-updates", action="store_true")
    return parser


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    args = _build_parser().parse_args()
    return asyncio.run(_main_async(args))


if __name__ == "__main__":
    raise SystemExit(main())
