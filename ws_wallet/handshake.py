"""Session handshake material attached to every connection-open request.

The key proves possession by signing the raw bytes of a caller-supplied,
hex-encoded session identifier. Two header conventions are supported:

- client: ``signature``, ``sessionId``, ``crv``
- wallet: ``x-signature``, ``x-session-id``, ``x-pub-key-pem``
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from . import crypto
from .errors import InvalidSessionIdentifier

if TYPE_CHECKING:
    from .keystore import KeyRecord

_HEX_RE = re.compile(r"(?:[0-9A-Fa-f]{2})+")


class HeaderStyle(str, Enum):
    CLIENT = "client"
    WALLET = "wallet"


@dataclass(frozen=True)
class HandshakeMaterial:
    """Signature over a session identifier, plus the metadata sent with it."""

    signature: bytes
    curve_label: str
    session_id: str
    public_key_pem: str

    @property
    def session_id_bytes(self) -> bytes:
        return bytes.fromhex(self.session_id)

    @property
    def signature_hex(self) -> str:
        return self.signature.hex()

    def headers(self, style: HeaderStyle | str = HeaderStyle.CLIENT) -> dict[str, str]:
        """Render the material as connection-open headers for ``style``."""
        style = HeaderStyle(style)
        if style is HeaderStyle.WALLET:
            return {
                "x-signature": self.signature_hex,
                "x-session-id": self.session_id,
                "x-pub-key-pem": json.dumps(self.public_key_pem),
            }
        return {
            "signature": self.signature_hex,
            "sessionId": self.session_id,
            "crv": self.curve_label,
        }


def decode_session_id(session_id: str) -> bytes:
    """Decode a hex session identifier.

    Raises:
        InvalidSessionIdentifier: If ``session_id`` is empty or not valid hex.
    """
    if not isinstance(session_id, str) or _HEX_RE.fullmatch(session_id) is None:
        raise InvalidSessionIdentifier(
            f"Session identifier is not valid hex: {session_id!r}"
        )
    return bytes.fromhex(session_id)


def build_handshake(session_id: str, record: "KeyRecord") -> HandshakeMaterial:
    """Sign the raw session identifier bytes with ``record``'s key.

    Args:
        session_id: Hex-encoded session identifier supplied by the peer.
        record: Key record to prove possession of.

    Returns:
        HandshakeMaterial holding the DER signature, curve tag and the
        session identifier exactly as supplied.

    Raises:
        InvalidSessionIdentifier: If ``session_id`` is not valid hex.
        SigningFailure: If the key material is unusable.
    """
    raw = decode_session_id(session_id)
    signature = crypto.sign(raw, record)
    return HandshakeMaterial(
        signature=signature,
        curve_label=record.curve.value,
        session_id=session_id,
        public_key_pem=record.pub_key,
    )
