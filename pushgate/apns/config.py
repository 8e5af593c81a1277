from __future__ import annotations

import typing
from dataclasses import dataclass
from pathlib import Path

from .pool import DEFAULT_POOL_SIZE
from .transport import (
    GATEWAY_PORT,
    IDLE_TIMEOUT,
    PRODUCTION_GATEWAY,
    READ_TIMEOUT,
    SANDBOX_GATEWAY,
)


@dataclass
class GatewayConfig:
    pem_path: typing.Union[str, Path]
    passphrase: str
    host: str = PRODUCTION_GATEWAY
    port: int = GATEWAY_PORT
    pool_size: int = DEFAULT_POOL_SIZE
    read_timeout: float = READ_TIMEOUT
    idle_timeout: typing.Optional[float] = IDLE_TIMEOUT
    verify: bool = True
    cafile: typing.Optional[str] = None

    @classmethod
    def production(cls, pem_path: typing.Union[str, Path], passphrase: str, **kwargs):
        return cls(pem_path, passphrase, host=PRODUCTION_GATEWAY, **kwargs)

    @classmethod
    def sandbox(cls, pem_path: typing.Union[str, Path], passphrase: str, **kwargs):
        return cls(pem_path, passphrase, host=SANDBOX_GATEWAY, **kwargs)
