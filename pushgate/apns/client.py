from __future__ import annotations

import logging
import typing

import anyio

from . import credentials, protocol
from .config import GatewayConfig
from .exceptions import (
    ConnectionClosed,
    RetriesExhausted,
    TruncatedResponse,
)
from .pool import ConnectionPool
from .protocol import PushNotification
from .transport import Connection, Dialer, dial_tcp

log = logging.getLogger(__name__)

Encoder = typing.Callable[[PushNotification], bytes]


class APNSClient:
    def __init__(
        self,
        config: GatewayConfig,
        dialer: Dialer = dial_tcp,
        encoder: Encoder = protocol.encode,
    ):
        """
        Send notifications through a lazily created pool of gateway connections

        Please use the async context manager to close the pool when done

        :param dialer: opens the raw byte stream TLS is layered on
        :param encoder: ``protocol.encode`` (enhanced) or ``protocol.encode_framed``
        """
        self.config = config
        self._dialer = dialer
        self._encode = encoder

        self._pool: typing.Optional[ConnectionPool] = None
        self._pool_error: typing.Optional[Exception] = None
        self._pool_lock = anyio.Lock()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        await self.aclose()

    async def _create_pool(self) -> ConnectionPool:
        data = await anyio.Path(self.config.pem_path).read_bytes()
        bundle = credentials.load_pem(data, self.config.passphrase)
        return ConnectionPool.create(
            bundle,
            self.config.host,
            self.config.port,
            size=self.config.pool_size,
            dialer=self._dialer,
            read_timeout=self.config.read_timeout,
            idle_timeout=self.config.idle_timeout,
            verify=self.config.verify,
            cafile=self.config.cafile,
        )

    async def pool(self) -> ConnectionPool:
        """
        Return the connection pool, creating it on first use

        A failure to create it is remembered and raised again for every caller
        """
        if self._pool is not None:
            return self._pool
        async with self._pool_lock:
            if self._pool_error is not None:
                raise self._pool_error
            if self._pool is None:
                try:
                    self._pool = await self._create_pool()
                except Exception as e:
                    log.error(f"Failed to create connection pool: {e}")
                    self._pool_error = e
                    raise
            return self._pool

    async def send(self, notification: PushNotification):
        """
        Send a notification, retrying with a fresh connection while its retry budget lasts

        Silence from the gateway within the read timeout counts as delivery.

        :raises RetriesExhausted: every attempt failed, wraps the last error
        :raises EncodeError: the notification can never be sent
        :raises GatewayConnectionError: connecting failed or the read failed other than by a clean close
        """
        pool = await self.pool()
        async with pool.connection() as connection:
            await self._send(connection, notification)

    async def _send(self, connection: Connection, notification: PushNotification):
        # The same connection is used for every attempt, reconnecting when marked broken
        budget = notification.retries
        while True:
            if notification.retries <= 0:
                raise RetriesExhausted(notification.error, budget) from notification.error
            notification.retries -= 1

            await connection.connect()
            frame = self._encode(notification)

            try:
                await connection.send(frame)
            except ConnectionClosed as e:
                log.warning(f"Error sending notification {notification.identifier}, reconnecting: {e}")
                notification.error = e
                continue

            try:
                data = await connection.receive_response()
            except ConnectionClosed as e:
                log.warning(f"Gateway closed the connection after notification {notification.identifier}")
                notification.error = e
                continue

            if data is None:
                log.debug(f"No response for notification {notification.identifier}, assuming delivered")
                return

            try:
                response = protocol.decode(data)
            except TruncatedResponse:
                connection.mark_broken()
                raise
            if response.identifier != notification.identifier:
                log.debug(
                    f"Response is for notification {response.identifier}, not {notification.identifier}"
                )

            error = response.error()
            if error is None:
                return

            # The gateway closes the connection after sending an error response
            connection.mark_broken()
            notification.error = error
            log.warning(
                f"Gateway rejected notification {notification.identifier}: {error} "
                f"({notification.retries} retries left)"
            )

    async def aclose(self):
        if self._pool is not None:
            await self._pool.aclose()
