"""Command line interface: ``ws-wallet`` / ``python -m ws_wallet``."""

from __future__ import annotations

import argparse
import asyncio
import sys

from . import commands
from .config import load_settings
from .errors import WalletError
from .logger import get_logger

USAGE = """
Usage: ws-wallet
\tnew-key <keyname> [<curve>]\tGenerate a new key with optional curve: 'p256' | 'p384'
\tget-pkh <keyname>          \tGet public key hex of keyname
\tconnect <host> <sessionId> [<keyname>] [<curve>]\tConnect sessionId with host of web socket server. keyname optional (use default)
"""


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="ws-wallet",
        description="Hold EC keys and sign digests for a remote web socket peer",
        usage=USAGE,
    )
    ap.add_argument("-k", "--keys", action="store_true", help="List all key names")
    ap.add_argument("command", nargs="?", choices=("new-key", "get-pkh", "connect"))
    ap.add_argument("args", nargs="*")
    return ap


async def _serve(host: str, session_id: str, name: str | None, curve: str | None) -> None:
    manager = await commands.connect(host, session_id, name, curve)
    try:
        await manager.wait_closed()
    finally:
        await manager.close()


def main(argv: list[str] | None = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    try:
        settings = load_settings()
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    get_logger("ws_wallet", settings.log_level)

    try:
        if args.keys:
            for name in sorted(commands.list_key_names()):
                print(name)
        elif args.command == "new-key":
            if not args.args:
                ap.error("new-key requires <keyname>")
            name, curve = args.args[0], (args.args[1] if len(args.args) > 1 else None)
            print(commands.generate_key(name, curve))
        elif args.command == "get-pkh":
            if not args.args:
                ap.error("get-pkh requires <keyname>")
            print(f"pubKeyHex: {commands.get_public_key_hex(args.args[0])}")
        elif args.command == "connect":
            if len(args.args) < 2:
                ap.error("connect requires <host> <sessionId>")
            host, session_id, *rest = args.args
            name = rest[0] if rest else None
            curve = rest[1] if len(rest) > 1 else None
            asyncio.run(_serve(host, session_id, name, curve))
        else:
            ap.print_help()
    except WalletError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
