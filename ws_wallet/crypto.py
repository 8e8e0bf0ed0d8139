"""Elliptic-curve key material and raw-digest ECDSA signing.

Keys are generated and serialized with ``cryptography``. Signing goes
through ``ecdsa`` because the payload handed to :func:`sign` is signed
as-is: it is never hashed again, and it may be any length (longer values
are truncated to the curve order's bit length).
"""

from __future__ import annotations

import hashlib
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Callable, NamedTuple

import ecdsa
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from ecdsa.util import sigdecode_der, sigencode_der

from .errors import SigningFailure, UnsupportedCurve

if TYPE_CHECKING:
    from .keystore import KeyRecord


class CurveType(str, Enum):
    """Curve tags as stored in key records and sent in handshake headers."""

    P256 = "p256"
    P384 = "p384"


class CurveParams(NamedTuple):
    tag: CurveType
    long_name: str
    key_curve: ec.EllipticCurve
    ecdsa_curve: ecdsa.curves.Curve
    # Seeds RFC 6979 nonce generation only; the digest itself is never hashed.
    nonce_hash: Callable


# Built once at import time, read-only afterwards.
CURVES = MappingProxyType({
    CurveType.P256: CurveParams(
        CurveType.P256, "secp256r1", ec.SECP256R1(), ecdsa.NIST256p, hashlib.sha256,
    ),
    CurveType.P384: CurveParams(
        CurveType.P384, "secp384r1", ec.SECP384R1(), ecdsa.NIST384p, hashlib.sha384,
    ),
})

DEFAULT_CURVE = CurveType.P256


def get_curve(curve: str | CurveType) -> CurveParams:
    """Look up the parameter set for a curve tag.

    Raises:
        UnsupportedCurve: If the tag is not p256 or p384.
    """
    try:
        return CURVES[CurveType(curve)]
    except ValueError:
        raise UnsupportedCurve(
            f"Unsupported curve {curve!r}; expected one of "
            f"{', '.join(c.value for c in CurveType)}"
        ) from None


def generate_keypair(curve: str | CurveType = DEFAULT_CURVE) -> tuple[str, str]:
    """Generate an EC keypair on the given curve.

    Returns:
        Tuple of (private_pem, public_pem): PKCS#8 private key and
        SubjectPublicKeyInfo public key, both PEM text.
    """
    params = get_curve(curve)
    private_key = ec.generate_private_key(params.key_curve)
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem.decode("ascii"), public_pem.decode("ascii")


def _load_public_key(public_pem: str) -> ec.EllipticCurvePublicKey:
    key = serialization.load_pem_public_key(public_pem.encode("ascii"))
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise ValueError("public key is not an EC key")
    return key


def public_key_hex(public_pem: str) -> str:
    """Return the uncompressed point (04 || X || Y) of a PEM public key as hex."""
    key = _load_public_key(public_pem)
    return key.public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.UncompressedPoint,
    ).hex()


def _signing_key(private_pem: str, params: CurveParams) -> ecdsa.SigningKey:
    key = serialization.load_pem_private_key(private_pem.encode("ascii"), password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError("private key is not an EC key")
    if key.curve.name != params.key_curve.name:
        raise ValueError(
            f"private key is on {key.curve.name}, record says {params.long_name}"
        )
    secret = key.private_numbers().private_value
    return ecdsa.SigningKey.from_secret_exponent(secret, curve=params.ecdsa_curve)


def _as_digest(digest: bytes) -> bytes:
    # An empty payload is the integer 0.
    return bytes(digest) or b"\x00"


def sign(digest: bytes, record: "KeyRecord") -> bytes:
    """Sign a digest with a key record's private key.

    Args:
        digest: The exact bytes to sign. They are not hashed first.
        record: Key record holding the curve tag and private key PEM.

    Returns:
        DER-encoded ECDSA signature.

    Raises:
        UnsupportedCurve: If the record's curve tag is unknown.
        SigningFailure: If the key material cannot be loaded.
    """
    params = get_curve(record.curve)
    try:
        signing_key = _signing_key(record.key, params)
        return signing_key.sign_digest_deterministic(
            _as_digest(digest),
            hashfunc=params.nonce_hash,
            sigencode=sigencode_der,
            allow_truncate=True,
        )
    except (ValueError, TypeError, ecdsa.MalformedPointError) as exc:
        raise SigningFailure(
            f"Cannot sign with key {record.name!r}: {exc}"
        ) from exc


def verify(
    digest: bytes,
    signature: bytes,
    public_pem: str,
    curve: str | CurveType,
) -> bool:
    """Verify a DER signature over a raw digest.

    Returns:
        True if valid, False otherwise.
    """
    params = get_curve(curve)
    try:
        point = bytes.fromhex(public_key_hex(public_pem))
        verifying_key = ecdsa.VerifyingKey.from_string(point, curve=params.ecdsa_curve)
        return verifying_key.verify_digest(
            signature,
            _as_digest(digest),
            sigdecode=sigdecode_der,
            allow_truncate=True,
        )
    except Exception:
        return False
