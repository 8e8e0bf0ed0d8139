"""Exception types raised by the ws-wallet package."""

from __future__ import annotations


class WalletError(Exception):
    """Base class for all ws-wallet errors."""


class KeyNotFound(WalletError, KeyError):
    """Raised when no key record exists for the requested name."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class KeyStoreIOError(WalletError):
    """Raised when the key store cannot be read or written."""


class UnsupportedCurve(WalletError, ValueError):
    """Raised for a curve tag other than p256 or p384."""


class InvalidKeyName(WalletError, ValueError):
    """Raised when a key name cannot be used as a key store entry."""


class InvalidSessionIdentifier(WalletError, ValueError):
    """Raised when a session identifier is not valid hex."""


class SigningFailure(WalletError):
    """Raised when key material is present but cannot produce a signature."""


class WalletConnectionError(WalletError):
    """Raised when the socket fails to reach the open state."""


class ConnectionTimeout(WalletConnectionError):
    """Raised when waiting for a socket state exceeds the configured timeout."""
