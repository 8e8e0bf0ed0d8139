"""Operations behind the ``ws-wallet`` command line.

Each function accepts an optional :class:`KeyStore`; without one the
store is opened at the configured wallet directory.
"""

from __future__ import annotations

from .config import Settings, load_settings
from .connection import ConnectionManager
from .keystore import DEFAULT_KEY_NAME, KeyStore


def default_keystore(settings: Settings | None = None) -> KeyStore:
    settings = settings or load_settings()
    return KeyStore(settings.wallet_dir)


def list_key_names(keystore: KeyStore | None = None) -> set[str]:
    """Names of all keys in the wallet."""
    return (keystore or default_keystore()).list()


def generate_key(
    name: str = DEFAULT_KEY_NAME,
    curve: str | None = None,
    keystore: KeyStore | None = None,
) -> str:
    """Generate a key and return a human-readable report."""
    return (keystore or default_keystore()).generate(name, curve)


def get_public_key_hex(name: str = DEFAULT_KEY_NAME, keystore: KeyStore | None = None) -> str:
    """Uncompressed public key hex of ``name``.

    Raises:
        KeyNotFound: If the wallet has no key called ``name``.
    """
    return (keystore or default_keystore()).get_public_hex(name)


async def connect(
    host: str,
    session_id: str,
    name: str | None = None,
    curve: str | None = None,
    keystore: KeyStore | None = None,
    settings: Settings | None = None,
) -> ConnectionManager:
    """Open a signing connection to ``host`` for ``session_id``.

    The key is created on first use. The returned manager is already open;
    await ``wait_closed()`` to serve until the peer disconnects.
    """
    settings = settings or load_settings()
    manager = ConnectionManager(
        host,
        keystore or default_keystore(settings),
        name,
        curve,
        header_style=settings.header_style,
        poll_interval=settings.poll_interval,
        open_timeout=settings.open_timeout,
    )
    await manager.open(session_id)
    return manager
