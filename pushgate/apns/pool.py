from __future__ import annotations

import logging
import typing
from contextlib import asynccontextmanager

import anyio

from .credentials import CertificateBundle
from .transport import IDLE_TIMEOUT, READ_TIMEOUT, Connection, Dialer, create_ssl_context, dial_tcp

log = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 5


class ConnectionPool:
    """
    A fixed set of gateway connections handed out one caller at a time

    Connections are returned as-is, broken ones included; they reconnect on the
    next ``Connection.connect``.
    """

    def __init__(self, connections: typing.Sequence[Connection]):
        if not connections:
            raise ValueError("Pool needs at least one connection")
        self.size = len(connections)
        self._connections = list(connections)
        self._send, self._receive = anyio.create_memory_object_stream[Connection](
            max_buffer_size=self.size
        )
        for connection in self._connections:
            self._send.send_nowait(connection)

    @classmethod
    def create(
        cls,
        bundle: CertificateBundle,
        host: str,
        port: int,
        size: int = DEFAULT_POOL_SIZE,
        dialer: Dialer = dial_tcp,
        read_timeout: float = READ_TIMEOUT,
        idle_timeout: typing.Optional[float] = IDLE_TIMEOUT,
        verify: bool = True,
        cafile: typing.Optional[str] = None,
    ) -> ConnectionPool:
        ssl_context = create_ssl_context(bundle, verify, cafile)
        connections = [
            Connection(host, port, ssl_context, dialer, read_timeout, idle_timeout)
            for _ in range(size)
        ]
        log.debug(f"Created pool of {size} connections to {host}:{port}")
        return cls(connections)

    @property
    def available(self) -> int:
        return self._receive.statistics().current_buffer_used

    async def acquire(self) -> Connection:
        return await self._receive.receive()

    def release(self, connection: Connection):
        self._send.send_nowait(connection)

    @asynccontextmanager
    async def connection(self):
        connection = await self.acquire()
        try:
            yield connection
        finally:
            self.release(connection)

    async def aclose(self):
        for connection in self._connections:
            await connection.aclose()
        self._send.close()
        self._receive.close()
