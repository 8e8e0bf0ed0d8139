"""ws-wallet: a remote signing endpoint over WebSocket.

Holds named EC keys (P-256, P-384), proves possession of a key by signing a
session identifier at connection time, then signs every digest the peer
sends over the open connection.
"""

from .keystore import KeyRecord, KeyStore, validate_key_name
from .connection import ConnectionManager, ConnectionState, wait_for_socket_state
from .handshake import HandshakeMaterial, HeaderStyle, build_handshake
from .commands import connect, generate_key, get_public_key_hex, list_key_names
from .config import Settings, load_settings
from .crypto import (
    CurveType,
    generate_keypair,
    get_curve,
    public_key_hex,
    sign,
    verify,
)
from .errors import (
    WalletError,
    KeyNotFound,
    KeyStoreIOError,
    UnsupportedCurve,
    InvalidKeyName,
    InvalidSessionIdentifier,
    SigningFailure,
    WalletConnectionError,
    ConnectionTimeout,
)

__all__ = [
    "KeyRecord",
    "KeyStore",
    "validate_key_name",
    "ConnectionManager",
    "ConnectionState",
    "wait_for_socket_state",
    "HandshakeMaterial",
    "HeaderStyle",
    "build_handshake",
    "connect",
    "generate_key",
    "get_public_key_hex",
    "list_key_names",
    "Settings",
    "load_settings",
    "CurveType",
    "generate_keypair",
    "get_curve",
    "public_key_hex",
    "sign",
    "verify",
    "WalletError",
    "KeyNotFound",
    "KeyStoreIOError",
    "UnsupportedCurve",
    "InvalidKeyName",
    "InvalidSessionIdentifier",
    "SigningFailure",
    "WalletConnectionError",
    "ConnectionTimeout",
]
__version__ = "0.1.0"
