__all__ = [
    "APNSClient",
    "CertificateBundle",
    "ConnectionPool",
    "GatewayConfig",
    "PushNotification",
    "Status",
    "exceptions",
    "load_pem",
    "load_pem_file",
    "protocol",
]

from . import exceptions, protocol
from .client import APNSClient
from .config import GatewayConfig
from .credentials import CertificateBundle, load_pem, load_pem_file
from .pool import ConnectionPool
from .protocol import PushNotification, Status
