"""Connection lifecycle tests against a local WebSocket peer.

The peer is a real ``websockets`` server on an ephemeral port; the
timeout and failure paths use a fake socket instead.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable

import pytest
from websockets.asyncio.server import ServerConnection, serve
from websockets.protocol import State

from ws_wallet import crypto
from ws_wallet.connection import ConnectionManager, ConnectionState, wait_for_socket_state
from ws_wallet.errors import (
    ConnectionTimeout,
    InvalidSessionIdentifier,
    SigningFailure,
    WalletConnectionError,
)
from ws_wallet.keystore import KeyStore

Handler = Callable[[ServerConnection], Awaitable[None]]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@contextlib.asynccontextmanager
async def running_peer(handler: Handler) -> AsyncIterator[str]:
    """Serve ``handler`` on 127.0.0.1 and yield its ws:// URL."""
    async with serve(handler, "127.0.0.1", 0) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        yield f"ws://127.0.0.1:{port}"


def _manager(store: KeyStore, host: str, name: str = "alice", **kwargs) -> ConnectionManager:
    kwargs.setdefault("open_timeout", 5)
    return ConnectionManager(host, store, name, **kwargs)


class FakeSocket:
    """Socket stand-in whose state only changes when told to."""

    def __init__(self, state: State = State.CONNECTING) -> None:
        self.state = state
        self.closed = False
        self._closed_event = asyncio.Event()

    async def close(self) -> None:
        self.closed = True
        self.state = State.CLOSED
        self._closed_event.set()

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> bytes:
        await self._closed_event.wait()
        raise StopAsyncIteration


@pytest.fixture()
def store(tmp_path: Path) -> KeyStore:
    return KeyStore(tmp_path / "wallet")


# ---------------------------------------------------------------------------
# wait_for_socket_state
# ---------------------------------------------------------------------------

class TestWaitForSocketState:
    @pytest.mark.asyncio
    async def test_returns_once_state_reached(self) -> None:
        sock = FakeSocket()

        async def flip() -> None:
            await asyncio.sleep(0.03)
            sock.state = State.OPEN

        flipper = asyncio.create_task(flip())
        await wait_for_socket_state(sock, State.OPEN, interval=0.005, timeout=1)
        await flipper
        assert sock.state is State.OPEN

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        with pytest.raises(ConnectionTimeout):
            await wait_for_socket_state(FakeSocket(), State.OPEN, interval=0.005, timeout=0.05)

    @pytest.mark.asyncio
    async def test_closed_while_waiting_for_open(self) -> None:
        with pytest.raises(WalletConnectionError):
            await wait_for_socket_state(FakeSocket(State.CLOSED), State.OPEN, timeout=None)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_close_never_opened_is_noop(self, store: KeyStore) -> None:
        manager = _manager(store, "ws://127.0.0.1:1")
        await manager.close()
        await manager.close()
        assert manager.state is ConnectionState.CLOSED

    def test_blank_host_rejected(self, store: KeyStore) -> None:
        with pytest.raises(ValueError):
            ConnectionManager("  ", store)

    def test_default_key_name(self, store: KeyStore) -> None:
        manager = ConnectionManager("ws://127.0.0.1:1", store)
        assert manager.record.name == "default"
        assert store.list() == {"default"}

    @pytest.mark.asyncio
    async def test_open_sends_client_headers(self, store: KeyStore) -> None:
        seen: list = []

        async def handler(ws: ServerConnection) -> None:
            seen.append(ws.request.headers)
            await ws.wait_closed()

        async with running_peer(handler) as url:
            manager = _manager(store, url)
            signature = await manager.open("deadbeef")
            assert manager.state is ConnectionState.OPEN
            await manager.close()
            assert manager.state is ConnectionState.CLOSED

        headers = seen[0]
        assert headers["sessionId"] == "deadbeef"
        assert headers["crv"] == "p256"
        assert headers["signature"] == signature
        record = manager.record
        assert crypto.verify(
            b"\xde\xad\xbe\xef", bytes.fromhex(signature), record.pub_key, record.curve,
        )

    @pytest.mark.asyncio
    async def test_open_sends_wallet_headers(self, store: KeyStore) -> None:
        seen: list = []

        async def handler(ws: ServerConnection) -> None:
            seen.append(ws.request.headers)
            await ws.wait_closed()

        async with running_peer(handler) as url:
            manager = _manager(store, url, header_style="wallet")
            signature = await manager.open("0a0b")
            await manager.close()

        headers = seen[0]
        assert headers["x-signature"] == signature
        assert headers["x-session-id"] == "0a0b"
        assert json.loads(headers["x-pub-key-pem"]) == manager.record.pub_key
        assert "crv" not in headers

    @pytest.mark.asyncio
    async def test_open_twice_keeps_one_socket(self, store: KeyStore) -> None:
        async def handler(ws: ServerConnection) -> None:
            await ws.wait_closed()

        async with running_peer(handler) as url:
            manager = _manager(store, url)
            await manager.open("01")
            first = manager._socket
            await manager.open("02")
            second = manager._socket

            assert first is not second
            assert first.state is State.CLOSED
            assert second.state is State.OPEN
            await manager.close()
            assert second.state is State.CLOSED

    @pytest.mark.asyncio
    async def test_invalid_session_id_stays_closed(self, store: KeyStore) -> None:
        manager = _manager(store, "ws://127.0.0.1:1")
        with pytest.raises(InvalidSessionIdentifier):
            await manager.open("not-hex")
        assert manager.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_async_context_manager_closes(self, store: KeyStore) -> None:
        async def handler(ws: ServerConnection) -> None:
            await ws.wait_closed()

        async with running_peer(handler) as url:
            async with _manager(store, url) as manager:
                await manager.open("01")
                sock = manager._socket
            assert manager.state is ConnectionState.CLOSED
            assert sock.state is State.CLOSED


# ---------------------------------------------------------------------------
# Open failures
# ---------------------------------------------------------------------------

class TestOpenFailures:
    @pytest.mark.asyncio
    async def test_timeout_reverts_to_closed(self, store: KeyStore) -> None:
        sock = FakeSocket()

        async def connector(uri: str, **kwargs) -> FakeSocket:
            return sock

        manager = _manager(
            store, "ws://peer.invalid", open_timeout=0.05, poll_interval=0.005, connector=connector,
        )
        with pytest.raises(ConnectionTimeout):
            await manager.open("01")
        assert manager.state is ConnectionState.CLOSED
        assert sock.closed is True

    @pytest.mark.asyncio
    async def test_transport_error_is_wrapped(self, store: KeyStore) -> None:
        cause = OSError("connection refused")

        async def connector(uri: str, **kwargs) -> FakeSocket:
            raise cause

        manager = _manager(store, "ws://peer.invalid", connector=connector)
        with pytest.raises(WalletConnectionError) as excinfo:
            await manager.open("01")
        assert excinfo.value.__cause__ is cause
        assert manager.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_connector_receives_headers(self, store: KeyStore) -> None:
        calls: list = []

        async def connector(uri: str, **kwargs) -> FakeSocket:
            calls.append((uri, kwargs))
            return FakeSocket(State.OPEN)

        manager = _manager(store, "ws://peer.invalid", connector=connector)
        await manager.open("beef")
        uri, kwargs = calls[0]
        assert uri == "ws://peer.invalid"
        assert kwargs["additional_headers"]["sessionId"] == "beef"
        assert kwargs["open_timeout"] == 5
        await manager.close()

    @pytest.mark.asyncio
    async def test_close_while_waiting_for_open(self, store: KeyStore) -> None:
        sock = FakeSocket()

        async def connector(uri: str, **kwargs) -> FakeSocket:
            return sock

        manager = _manager(store, "ws://peer.invalid", poll_interval=0.005, connector=connector)
        opener = asyncio.create_task(manager.open("01"))
        await asyncio.sleep(0.03)
        assert manager.state is ConnectionState.OPENING

        await manager.close()
        assert manager.state is ConnectionState.CLOSED
        assert sock.closed is True

        with pytest.raises(WalletConnectionError, match="closed while opening"):
            await opener
        assert manager.state is ConnectionState.CLOSED
        assert manager._socket is None

    @pytest.mark.asyncio
    async def test_close_while_connecting(self, store: KeyStore) -> None:
        started = asyncio.Event()

        async def connector(uri: str, **kwargs) -> FakeSocket:
            started.set()
            await asyncio.sleep(10)
            return FakeSocket(State.OPEN)

        manager = _manager(store, "ws://peer.invalid", connector=connector)
        opener = asyncio.create_task(manager.open("01"))
        await asyncio.wait_for(started.wait(), 1)

        await manager.close()
        assert manager.state is ConnectionState.CLOSED
        with pytest.raises(WalletConnectionError):
            await opener
        assert manager.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_refused_connection(self, store: KeyStore) -> None:
        async def handler(ws: ServerConnection) -> None:
            await ws.wait_closed()

        async with running_peer(handler) as url:
            pass
        # Server is gone; the port now refuses connections.
        manager = _manager(store, url)
        with pytest.raises(WalletConnectionError):
            await manager.open("01")
        assert manager.state is ConnectionState.CLOSED


# ---------------------------------------------------------------------------
# Signing loop
# ---------------------------------------------------------------------------

class TestSigningLoop:
    @pytest.mark.asyncio
    async def test_one_reply_per_message_in_order(self, store: KeyStore) -> None:
        digests = [b"\x01\x02\x03", b"\x04", bytes(range(40))]
        replies: list[bytes] = []
        done = asyncio.Event()

        async def handler(ws: ServerConnection) -> None:
            for digest in digests:
                await ws.send(digest)
            for _ in digests:
                replies.append(await ws.recv())
            done.set()
            await ws.wait_closed()

        async with running_peer(handler) as url:
            manager = _manager(store, url)
            await manager.open("01")
            await asyncio.wait_for(done.wait(), 5)
            await manager.close()

        record = manager.record
        assert len(replies) == len(digests)
        for digest, reply in zip(digests, replies):
            assert isinstance(reply, bytes)
            assert crypto.verify(digest, reply, record.pub_key, record.curve)

    @pytest.mark.asyncio
    async def test_text_frames_signed_as_utf8(self, store: KeyStore) -> None:
        replies: list[bytes] = []
        done = asyncio.Event()

        async def handler(ws: ServerConnection) -> None:
            await ws.send("hello")
            replies.append(await ws.recv())
            done.set()
            await ws.wait_closed()

        async with running_peer(handler) as url:
            manager = _manager(store, url)
            await manager.open("01")
            await asyncio.wait_for(done.wait(), 5)
            await manager.close()

        record = manager.record
        assert crypto.verify(b"hello", replies[0], record.pub_key, record.curve)

    @pytest.mark.asyncio
    async def test_unsignable_message_gets_no_reply(
        self,
        store: KeyStore,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        real_sign = crypto.sign

        def flaky_sign(digest: bytes, record) -> bytes:
            if digest == b"bad":
                raise SigningFailure("corrupted key material")
            return real_sign(digest, record)

        monkeypatch.setattr(crypto, "sign", flaky_sign)
        replies: list[bytes] = []
        done = asyncio.Event()

        async def handler(ws: ServerConnection) -> None:
            await ws.send(b"bad")
            await ws.send(b"good")
            replies.append(await ws.recv())
            done.set()
            await ws.wait_closed()

        async with running_peer(handler) as url:
            manager = _manager(store, url)
            await manager.open("01")
            await asyncio.wait_for(done.wait(), 5)
            assert manager.state is ConnectionState.OPEN
            await manager.close()

        record = manager.record
        assert len(replies) == 1
        assert crypto.verify(b"good", replies[0], record.pub_key, record.curve)
        assert "cannot sign message" in caplog.text

    @pytest.mark.asyncio
    async def test_empty_message_signed_as_zero(self, store: KeyStore) -> None:
        replies: list[bytes] = []
        done = asyncio.Event()

        async def handler(ws: ServerConnection) -> None:
            await ws.send(b"")
            replies.append(await ws.recv())
            done.set()
            await ws.wait_closed()

        async with running_peer(handler) as url:
            manager = _manager(store, url)
            await manager.open("01")
            await asyncio.wait_for(done.wait(), 5)
            await manager.close()

        record = manager.record
        assert len(replies) == 1
        assert crypto.verify(b"", replies[0], record.pub_key, record.curve)

    @pytest.mark.asyncio
    async def test_loop_failure_is_logged_and_closes(
        self,
        store: KeyStore,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        go = asyncio.Event()

        async def handler(ws: ServerConnection) -> None:
            await go.wait()
            await ws.send(b"\x01")
            await ws.wait_closed()

        def crashing_sign(digest: bytes, record) -> bytes:
            raise RuntimeError("signer crashed")

        async with running_peer(handler) as url:
            manager = _manager(store, url)
            await manager.open("01")
            sock = manager._socket
            monkeypatch.setattr(crypto, "sign", crashing_sign)
            go.set()
            await asyncio.wait_for(manager.wait_closed(), 5)

            assert manager.state is ConnectionState.CLOSED
            assert sock.state is State.CLOSED

        assert "signer crashed" in caplog.text

    @pytest.mark.asyncio
    async def test_remote_close_releases_socket(self, store: KeyStore) -> None:
        async def handler(ws: ServerConnection) -> None:
            await ws.send(b"\x01")
            await ws.recv()
            await ws.close()

        async with running_peer(handler) as url:
            manager = _manager(store, url)
            await manager.open("01")
            await asyncio.wait_for(manager.wait_closed(), 5)
            assert manager.state is ConnectionState.CLOSED
            assert manager._socket is None
            await manager.close()

    @pytest.mark.asyncio
    async def test_transport_error_closes(
        self, store: KeyStore, caplog: pytest.LogCaptureFixture,
    ) -> None:
        async def handler(ws: ServerConnection) -> None:
            await ws.send(b"\x01")
            await ws.recv()
            ws.transport.abort()

        async with running_peer(handler) as url:
            manager = _manager(store, url)
            await manager.open("01")
            await asyncio.wait_for(manager.wait_closed(), 5)

        assert manager.state is ConnectionState.CLOSED
        assert "error in connection with host" in caplog.text


# ---------------------------------------------------------------------------
# Key rotation
# ---------------------------------------------------------------------------

class TestGetKey:
    @pytest.mark.asyncio
    async def test_get_key_restarts_with_new_key(self, store: KeyStore) -> None:
        seen: list = []

        async def handler(ws: ServerConnection) -> None:
            seen.append(ws.request.headers)
            await ws.wait_closed()

        async with running_peer(handler) as url:
            manager = _manager(store, url)
            await manager.open("01")
            first = manager._socket

            signature = await manager.get_key("02", "bob", "p384")
            assert first.state is State.CLOSED
            assert manager.record.name == "bob"
            assert manager.record.curve.value == "p384"
            await manager.close()

        assert [h["crv"] for h in seen] == ["p256", "p384"]
        assert seen[1]["signature"] == signature
        assert store.list() == {"alice", "bob"}
