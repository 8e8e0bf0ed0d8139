"""WebSocket connection that answers every inbound message with a signature.

A :class:`ConnectionManager` binds one host to one key record. ``open()``
signs the session identifier, attaches the handshake headers and waits for
the socket to come up; after that every inbound frame is treated as a
digest, signed with the key and sent straight back on the same socket.

Lifecycle::

    CLOSED -> OPENING -> OPEN -> CLOSING -> CLOSED
                         OPEN -> ERROR -> CLOSING -> CLOSED
              OPENING -> CLOSING -> CLOSED

At most one socket is live per manager: ``open()`` always closes the
previous socket first.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException
from websockets.protocol import State

from . import crypto
from .config import DEFAULT_OPEN_TIMEOUT, DEFAULT_POLL_INTERVAL
from .errors import ConnectionTimeout, WalletConnectionError, WalletError
from .handshake import HeaderStyle, build_handshake
from .keystore import DEFAULT_KEY_NAME, KeyRecord, KeyStore
from .logger import get_logger

log = get_logger(__name__)

Connector = Callable[..., Awaitable[Any]]


class ConnectionState(str, Enum):
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"
    ERROR = "error"


async def wait_for_socket_state(
    socket: Any,
    state: State,
    interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float | None = None,
) -> None:
    """Poll ``socket.state`` until it equals ``state``.

    Args:
        socket: Any object exposing a ``websockets.protocol.State`` as ``state``.
        state: The state to wait for.
        interval: Seconds between polls.
        timeout: Give up after this many seconds; None waits forever.

    Raises:
        WalletConnectionError: If waiting for OPEN and the socket closed instead.
        ConnectionTimeout: If ``timeout`` elapses first.
    """
    loop = asyncio.get_running_loop()
    deadline = None if timeout is None else loop.time() + timeout
    while socket.state != state:
        if state == State.OPEN and socket.state in (State.CLOSING, State.CLOSED):
            raise WalletConnectionError(
                f"socket reached {socket.state.name} while waiting for OPEN"
            )
        if deadline is not None and loop.time() >= deadline:
            raise ConnectionTimeout(
                f"socket did not reach {state.name} within {timeout}s "
                f"(still {socket.state.name})"
            )
        await asyncio.sleep(interval)


class ConnectionManager:
    """Owns the socket to one signing peer.

    The key record is resolved from the key store at construction time (and
    again on :meth:`get_key`); missing keys are generated.
    """

    def __init__(
        self,
        host: str,
        keystore: KeyStore,
        key_name: str | None = None,
        curve: str | None = None,
        *,
        header_style: HeaderStyle | str = HeaderStyle.CLIENT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        open_timeout: float | None = DEFAULT_OPEN_TIMEOUT,
        connector: Connector | None = None,
    ) -> None:
        if not host or not host.strip():
            raise ValueError("host must be a non-blank string")
        self._host = host
        self._keystore = keystore
        self._header_style = HeaderStyle(header_style)
        self._poll_interval = poll_interval
        self._open_timeout = open_timeout
        self._connector = connector or ws_connect
        self._record = self._init_key(key_name or DEFAULT_KEY_NAME, curve)
        self._socket: Any = None
        self._opening: asyncio.Task | None = None
        self._reader: asyncio.Task | None = None
        self._state = ConnectionState.CLOSED

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def host(self) -> str:
        return self._host

    @property
    def record(self) -> KeyRecord:
        """The key record currently used for signing."""
        return self._record

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def public_key_hex(self) -> str:
        return self._record.public_key_hex

    def _set_state(self, state: ConnectionState) -> None:
        log.debug(f"{self._host} [{self._record.name}]: {self._state.value} -> {state.value}")
        self._state = state

    def _init_key(self, key_name: str, curve: str | None) -> KeyRecord:
        record = self._keystore.get_or_create(key_name, curve)
        log.debug(f"extracting key {key_name!r} from key store")
        return record

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self, session_id: str) -> str:
        """Close any existing socket and open a new one bound to ``session_id``.

        Args:
            session_id: Hex session identifier supplied by the peer.

        Returns:
            Hex-encoded DER signature over the session identifier bytes.

        Raises:
            InvalidSessionIdentifier: If ``session_id`` is not valid hex.
            ConnectionTimeout: If the socket does not open in time.
            WalletConnectionError: If the socket cannot be opened, or
                :meth:`close` was called before it did.
        """
        await self.close()

        material = build_handshake(session_id, self._record)
        signature = material.signature_hex
        log.info(f"open new web-socket to host {self._host}")
        log.info(f"sessionId: {session_id}")
        log.info(f"signature: {signature}")

        self._set_state(ConnectionState.OPENING)
        opening = asyncio.create_task(self._establish(material.headers(self._header_style)))
        self._opening = opening
        try:
            socket = await opening
        except asyncio.CancelledError:
            if self._opening is not opening:
                raise self._closed_while_opening() from None
            self._opening = None
            self._set_state(ConnectionState.CLOSED)
            raise
        except Exception:
            if self._opening is opening:
                self._opening = None
                self._set_state(ConnectionState.CLOSED)
            raise

        # close() took over after the socket came up; it discards the socket.
        if self._opening is not opening:
            raise self._closed_while_opening()
        self._opening = None
        self._socket = socket
        self._set_state(ConnectionState.OPEN)
        log.info(f"connection opened to {self._host} for key {self._record.name}")
        self._reader = asyncio.create_task(self._serve(socket, self._record))
        self._reader.add_done_callback(self._on_reader_done)
        return signature

    async def close(self) -> None:
        """Close the socket and wait until it reports CLOSED. No-op when closed.

        A connection still opening is abandoned; the pending :meth:`open`
        raises :class:`WalletConnectionError`.
        """
        opening = self._opening
        if opening is not None:
            await self._cancel_opening(opening)
            return
        socket = self._socket
        if socket is None:
            return
        self._set_state(ConnectionState.CLOSING)
        log.info(f"closing web-socket to {self._host}")
        try:
            await socket.close()
            await wait_for_socket_state(
                socket, State.CLOSED, self._poll_interval, self._open_timeout,
            )
        finally:
            await self._stop_reader()
            self._release(socket)

    async def get_key(
        self,
        session_id: str,
        key_name: str | None = None,
        curve: str | None = None,
    ) -> str:
        """Switch to another key and restart the connection with it.

        Returns:
            Hex session signature made with the new key.
        """
        record = self._init_key(key_name or DEFAULT_KEY_NAME, curve)
        await self.close()
        self._record = record
        return await self.open(session_id)

    async def wait_closed(self) -> None:
        """Suspend until the current connection ends, locally or remotely."""
        reader = self._reader
        if reader is not None:
            await asyncio.wait({reader})

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def _serve(self, socket: Any, record: KeyRecord) -> None:
        """Sign each inbound message and send the signature back."""
        try:
            async for message in socket:
                await self._on_message(socket, record, message)
        except ConnectionClosed as exc:
            if isinstance(exc, ConnectionClosedError):
                self._on_error(socket, exc)
        except OSError as exc:
            self._on_error(socket, exc)
        finally:
            if self._socket is socket and self._state is not ConnectionState.CLOSING:
                self._set_state(ConnectionState.CLOSING)
                self._release(socket)
                if socket.state is State.OPEN:
                    await socket.close()

    async def _on_message(self, socket: Any, record: KeyRecord, message: bytes | str) -> None:
        digest = message.encode("utf-8") if isinstance(message, str) else bytes(message)
        try:
            signature = crypto.sign(digest, record)
        except WalletError as exc:
            log.error(f"cannot sign message from {self._host}: {exc}")
            return
        log.info(f"send signature to web socket server {self._host}")
        await socket.send(signature)

    def _on_error(self, socket: Any, exc: BaseException) -> None:
        if self._socket is socket:
            self._set_state(ConnectionState.ERROR)
        log.error(f"error in connection with host {self._host}: {exc}")

    def _on_reader_done(self, reader: asyncio.Task) -> None:
        if reader.cancelled():
            return
        exc = reader.exception()
        if exc is not None:
            log.error(f"signing loop for host {self._host} stopped: {exc!r}")

    def _release(self, socket: Any) -> None:
        if self._socket is socket:
            self._socket = None
            self._reader = None
            self._set_state(ConnectionState.CLOSED)
            log.info(f"connection to {self._host} closed for key {self._record.name}")

    async def _stop_reader(self) -> None:
        reader = self._reader
        if reader is None or reader is asyncio.current_task():
            return
        if not reader.done():
            reader.cancel()
        await asyncio.gather(reader, return_exceptions=True)

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    async def _establish(self, headers: dict[str, str]) -> Any:
        """Connect and wait for OPEN. The socket is discarded on any failure."""
        socket = None
        try:
            socket = await self._connector(
                self._host,
                additional_headers=headers,
                open_timeout=self._open_timeout,
            )
            await wait_for_socket_state(
                socket, State.OPEN, self._poll_interval, self._open_timeout,
            )
        except WalletConnectionError:
            await self._discard(socket)
            raise
        except (TimeoutError, asyncio.TimeoutError) as exc:
            await self._discard(socket)
            raise ConnectionTimeout(
                f"timed out opening web-socket connection to host {self._host}"
            ) from exc
        except (OSError, WebSocketException) as exc:
            await self._discard(socket)
            raise WalletConnectionError(
                f"error creating web-socket connection to host {self._host}: {exc}"
            ) from exc
        except asyncio.CancelledError:
            await self._discard(socket)
            raise
        return socket

    async def _cancel_opening(self, opening: asyncio.Task) -> None:
        self._opening = None
        self._set_state(ConnectionState.CLOSING)
        log.info(f"abandoning web-socket to {self._host} before it opened")
        opening.cancel()
        (result,) = await asyncio.gather(opening, return_exceptions=True)
        if not isinstance(result, BaseException):
            await self._discard(result)
        self._set_state(ConnectionState.CLOSED)

    def _closed_while_opening(self) -> WalletConnectionError:
        return WalletConnectionError(
            f"connection to host {self._host} was closed while opening"
        )

    async def _discard(self, socket: Any) -> None:
        """Close a socket the manager will not use."""
        if socket is None:
            return
        try:
            await socket.close()
        except (OSError, WebSocketException) as exc:
            log.debug(f"ignoring error while discarding socket: {exc}")
