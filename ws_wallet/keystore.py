"""File-backed store of named EC key records.

Each key lives in ``<wallet_dir>/<name>.key`` as a JSON object::

    {"curve": "p256" | "p384", "key": <PKCS#8 PEM>, "pubKey": <SPKI PEM>}

Records are created once and never rewritten. A new record is written to a
temporary file and published with ``os.link``, which fails when the name is
already taken, so two writers racing on a fresh name cannot corrupt it.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path

from . import crypto
from .crypto import CurveType, DEFAULT_CURVE
from .errors import InvalidKeyName, KeyNotFound, KeyStoreIOError
from .logger import get_logger

KEY_SUFFIX = ".key"
DEFAULT_KEY_NAME = "default"

# Names become file names: no separators, no leading dot.
_KEY_NAME_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]{0,63}$")

log = get_logger(__name__)


def validate_key_name(name: str) -> bool:
    """Return True if ``name`` can be used as a key store entry."""
    return bool(name) and _KEY_NAME_RE.match(name) is not None


@dataclass(frozen=True)
class KeyRecord:
    """A named EC keypair. Never mutated once created."""

    name: str
    curve: CurveType
    key: str
    pub_key: str

    def to_json(self) -> dict:
        return {"curve": self.curve.value, "key": self.key, "pubKey": self.pub_key}

    @classmethod
    def from_json(cls, name: str, data: dict) -> "KeyRecord":
        try:
            curve = crypto.get_curve(data["curve"]).tag
            return cls(name=name, curve=curve, key=data["key"], pub_key=data["pubKey"])
        except (KeyError, TypeError) as exc:
            raise KeyStoreIOError(f"Malformed key record {name!r}: missing {exc}") from exc

    @property
    def public_key_hex(self) -> str:
        return crypto.public_key_hex(self.pub_key)


class KeyStore:
    """Named key records persisted as one file per key."""

    def __init__(self, wallet_dir: str | os.PathLike) -> None:
        self._dir = Path(wallet_dir)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def wallet_dir(self) -> Path:
        return self._dir

    def path_for(self, name: str) -> Path:
        if not validate_key_name(name):
            raise InvalidKeyName(f"Invalid key name: {name!r}")
        return self._dir / f"{name}{KEY_SUFFIX}"

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(name, threading.Lock())

    def _ensure_dir(self) -> None:
        if self._dir.is_dir():
            return
        log.info(f"make directory to store keys at {self._dir}")
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise KeyStoreIOError(f"Cannot create wallet directory {self._dir}: {exc}") from exc

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def list(self) -> set[str]:
        """Names of all stored keys."""
        if not self._dir.is_dir():
            return set()
        try:
            return {
                entry.name[: -len(KEY_SUFFIX)]
                for entry in self._dir.iterdir()
                if entry.name.endswith(KEY_SUFFIX) and entry.is_file()
            }
        except OSError as exc:
            raise KeyStoreIOError(f"Cannot list wallet directory {self._dir}: {exc}") from exc

    def get(self, name: str) -> KeyRecord:
        """Load an existing key record.

        Raises:
            KeyNotFound: If no record exists for ``name``.
            KeyStoreIOError: If the record cannot be read or parsed.
        """
        path = self.path_for(name)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise KeyNotFound(f"No key file found for {name!r}") from None
        except OSError as exc:
            raise KeyStoreIOError(f"Cannot read key file {path}: {exc}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise KeyStoreIOError(f"Key file {path} is not valid JSON: {exc}") from exc
        return KeyRecord.from_json(name, data)

    def get_public_hex(self, name: str) -> str:
        """Uncompressed public key hex for ``name``.

        Raises:
            KeyNotFound: If no record exists for ``name``.
        """
        return self.get(name).public_key_hex

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _write_new(self, record: KeyRecord) -> bool:
        """Publish a record unless one already exists. Returns True if written."""
        self._ensure_dir()
        path = self.path_for(record.name)
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{record.name}.", suffix=".tmp", dir=self._dir,
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(record.to_json(), fh)
            os.link(tmp_name, path)
            return True
        except FileExistsError:
            return False
        except OSError as exc:
            raise KeyStoreIOError(f"Cannot write key file {path}: {exc}") from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass

    def generate(self, name: str, curve: str | CurveType | None = None) -> str:
        """Generate and store a new key unless ``name`` already exists.

        Returns:
            A human-readable, multi-line report of what was done.
        """
        path = self.path_for(name)
        if path.exists():
            return f"{name} key already exists."

        info = []
        if curve is None:
            info.append(f"No curve specified. Set to {DEFAULT_CURVE.value} as default")
            curve = DEFAULT_CURVE
        params = crypto.get_curve(curve)
        info.append(f"Create {name} key with elliptical curve {params.long_name}")

        with self._lock_for(name):
            key, pub_key = crypto.generate_keypair(params.tag)
            record = KeyRecord(name=name, curve=params.tag, key=key, pub_key=pub_key)
            info.append(f"Store private key data in {path}")
            if not self._write_new(record):
                return f"{name} key already exists."

        info.append(f"pubKeyHex: {record.public_key_hex}")
        report = "\n".join(info)
        log.info(f"generated key {name!r} on {params.long_name}")
        return report

    def get_or_create(self, name: str, curve: str | CurveType | None = None) -> KeyRecord:
        """Load ``name``, generating it first if it does not exist.

        A requested curve that differs from the stored one is logged as a
        warning; the stored key is returned unchanged.

        Raises:
            UnsupportedCurve: If ``curve`` is given and is not p256 or p384.
            KeyStoreIOError: If the store cannot be read or written.
        """
        requested = crypto.get_curve(curve).tag if curve is not None else None
        log.debug(f"look for key with name {name!r} or generate new key")

        if not self.exists(name):
            report = self.generate(name, requested)
            log.debug(report)

        record = self.get(name)
        if requested is not None and record.curve is not requested:
            log.warning(
                f"the requested curve type ({requested.value}) is different "
                f"than the existing key: {record.curve.value}"
            )
        return record
