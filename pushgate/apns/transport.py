from __future__ import annotations

import logging
import os
import ssl
import tempfile
import time
import typing
from pathlib import Path

import anyio
from anyio.abc import AnyByteStream
from anyio.streams.tls import TLSStream
from cryptography.hazmat.primitives import serialization

from .credentials import CertificateBundle
from .exceptions import ConnectionClosed, GatewayConnectionError
from .protocol import RESPONSE_SIZE

log = logging.getLogger(__name__)

PRODUCTION_GATEWAY = "gateway.push.apple.com"
SANDBOX_GATEWAY = "gateway.sandbox.push.apple.com"
GATEWAY_PORT = 2195

READ_TIMEOUT = 0.15
IDLE_TIMEOUT = 60.0

# ssl.SSLError is an OSError
_TRANSPORT_ERRORS = (OSError, anyio.BrokenResourceError, anyio.ClosedResourceError)

# Opens a raw byte stream to (host, port); TLS is layered on top by Connection
Dialer = typing.Callable[[str, int], typing.Awaitable[AnyByteStream]]


async def dial_tcp(host: str, port: int) -> AnyByteStream:
    return await anyio.connect_tcp(host, port)


def create_ssl_context(
    bundle: CertificateBundle,
    verify: bool = True,
    cafile: typing.Optional[str] = None,
) -> ssl.SSLContext:
    context = ssl.create_default_context(cafile=cafile)
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    # load_cert_chain only reads from files, so the key is written out
    # re-encrypted with a throwaway password and removed right after loading
    password = os.urandom(32).hex()
    with tempfile.TemporaryDirectory() as directory:
        cert_path = Path(directory) / "chain.pem"
        key_path = Path(directory) / "key.pem"
        cert_path.write_bytes(bundle.chain_pem())
        key_path.write_bytes(
            bundle.private_key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.BestAvailableEncryption(password.encode()),
            )
        )
        context.load_cert_chain(str(cert_path), str(key_path), password=password)
    return context


async def receive_exact(stream: AnyByteStream, length: int) -> bytes:
    """
    Read until ``length`` bytes arrived or the stream ended

    Returns fewer bytes only on end-of-stream
    """
    buffer = b""
    while len(buffer) < length:
        try:
            buffer += await stream.receive(length - len(buffer))
        except anyio.EndOfStream:
            break
    return buffer


class Connection:
    def __init__(
        self,
        host: str,
        port: int,
        ssl_context: ssl.SSLContext,
        dialer: Dialer = dial_tcp,
        read_timeout: float = READ_TIMEOUT,
        idle_timeout: typing.Optional[float] = IDLE_TIMEOUT,
    ):
        """
        A lazily connected TLS link to the gateway

        :param read_timeout: how long to wait for an error response before assuming success
        :param idle_timeout: reconnect on next use after this many idle seconds, None to disable
        """
        self.host = host
        self.port = port
        self.ssl_context = ssl_context
        self.read_timeout = read_timeout
        self.idle_timeout = idle_timeout

        self._dialer = dialer
        self._stream: typing.Optional[TLSStream] = None
        self._last_used = 0.0
        self.connected = False

    def __repr__(self):
        return f"<Connection {self.host}:{self.port} connected={self.connected}>"

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def is_idle(self) -> bool:
        return (
            self.idle_timeout is not None
            and time.monotonic() - self._last_used > self.idle_timeout
        )

    def mark_broken(self):
        self.connected = False

    async def connect(self):
        if self.connected and not self.is_idle():
            return
        if self.connected:
            log.debug(f"{self.address} idle for too long, reconnecting")
            self.connected = False

        if self._stream is not None:
            await self._close_stream()

        try:
            raw = await self._dialer(self.host, self.port)
        except OSError as e:
            raise GatewayConnectionError(f"Failed to dial {self.address}: {e}") from e

        try:
            stream = await TLSStream.wrap(
                raw,
                hostname=self.host,
                ssl_context=self.ssl_context,
                standard_compatible=False,
            )
        except (*_TRANSPORT_ERRORS, anyio.EndOfStream) as e:
            await anyio.aclose_forcefully(raw)
            raise GatewayConnectionError(
                f"TLS handshake with {self.address} failed: {e!r}"
            ) from e

        self._stream = stream
        self._last_used = time.monotonic()
        self.connected = True
        log.debug(f"Connected to {self.address}")

    async def send(self, frame: bytes):
        if self._stream is None:
            raise GatewayConnectionError("Not connected")
        try:
            await self._stream.send(frame)
        except _TRANSPORT_ERRORS as e:
            self.mark_broken()
            raise ConnectionClosed(f"Write to {self.address} failed: {e!r}") from e
        self._last_used = time.monotonic()

    async def receive_response(self) -> typing.Optional[bytes]:
        """
        Wait up to ``read_timeout`` for an error response

        :returns: the response bytes, or None if nothing arrived before the deadline
        :raises ConnectionClosed: if the gateway closed the connection cleanly
        """
        if self._stream is None:
            raise GatewayConnectionError("Not connected")

        data = None
        with anyio.move_on_after(self.read_timeout):
            try:
                data = await receive_exact(self._stream, RESPONSE_SIZE)
            except _TRANSPORT_ERRORS as e:
                self.mark_broken()
                raise GatewayConnectionError(
                    f"Read from {self.address} failed: {e!r}"
                ) from e

        if data is None:
            return None
        if not data:
            self.mark_broken()
            raise ConnectionClosed()
        return data

    async def _close_stream(self):
        assert self._stream is not None
        stream, self._stream = self._stream, None
        await anyio.aclose_forcefully(stream)

    async def aclose(self):
        self.connected = False
        if self._stream is not None:
            await self._close_stream()
