"""Environment-driven settings for ws-wallet.

Every value can be overridden by an explicit argument at the call site;
the environment only supplies defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_WALLET_DIR = Path.home() / ".ws-wallet" / "wallet"
DEFAULT_POLL_INTERVAL = 0.01
DEFAULT_OPEN_TIMEOUT = 10.0
HEADER_STYLES = ("client", "wallet")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Settings:
    wallet_dir: Path = DEFAULT_WALLET_DIR
    log_level: str = "INFO"
    poll_interval: float = DEFAULT_POLL_INTERVAL
    open_timeout: float | None = DEFAULT_OPEN_TIMEOUT
    header_style: str = "client"


def _parse_timeout(raw: str) -> float | None:
    if raw.strip().lower() in ("", "none", "0"):
        return None
    value = float(raw)
    if value < 0:
        raise ValueError(f"WS_WALLET_OPEN_TIMEOUT must not be negative: {raw!r}")
    return value


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    """Build Settings from WS_WALLET_* environment variables.

    Raises:
        ValueError: If a numeric or enumerated variable has an invalid value.
    """
    env = os.environ if environ is None else environ

    wallet_dir = Path(env.get("WS_WALLET_DIR", str(DEFAULT_WALLET_DIR))).expanduser()
    log_level = env.get("WS_WALLET_LOG_LEVEL", "INFO").upper()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"WS_WALLET_LOG_LEVEL must be one of {LOG_LEVELS}: {log_level!r}")

    poll_interval = float(env.get("WS_WALLET_POLL_INTERVAL", DEFAULT_POLL_INTERVAL))
    if poll_interval <= 0:
        raise ValueError(f"WS_WALLET_POLL_INTERVAL must be positive: {poll_interval}")

    if "WS_WALLET_OPEN_TIMEOUT" in env:
        open_timeout = _parse_timeout(env["WS_WALLET_OPEN_TIMEOUT"])
    else:
        open_timeout = DEFAULT_OPEN_TIMEOUT

    header_style = env.get("WS_WALLET_HEADER_STYLE", "client").lower()
    if header_style not in HEADER_STYLES:
        raise ValueError(
            f"WS_WALLET_HEADER_STYLE must be one of {HEADER_STYLES}: {header_style!r}"
        )

    return Settings(
        wallet_dir=wallet_dir,
        log_level=log_level,
        poll_interval=poll_interval,
        open_timeout=open_timeout,
        header_style=header_style,
    )
