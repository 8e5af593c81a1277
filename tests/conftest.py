import base64
import datetime
import hashlib
import logging
import os
import ssl
import typing
from contextlib import asynccontextmanager
from dataclasses import dataclass

import anyio
import pytest
from anyio.streams.stapled import StapledObjectStream
from anyio.streams.tls import TLSStream
from cryptography import x509
from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
from cryptography.hazmat.primitives import padding, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.hashes import SHA256
from rich.logging import RichHandler

from pushgate.apns.transport import receive_exact

logging.basicConfig(level=logging.DEBUG, handlers=[RichHandler()], format="%(message)s")

PASSPHRASE = "hunter2"
GATEWAY_HOST = "gateway.test"


def make_certificate(subject_key, common_name, issuer_key=None, issuer=None, ca=False, san=None):
    name = x509.Name([x509.NameAttribute(x509.NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = x509.CertificateBuilder()
    builder = builder.subject_name(name)
    builder = builder.issuer_name(issuer.subject if issuer is not None else name)
    builder = builder.not_valid_before(now - datetime.timedelta(hours=1))
    builder = builder.not_valid_after(now + datetime.timedelta(days=1))
    builder = builder.serial_number(x509.random_serial_number())
    builder = builder.public_key(subject_key.public_key())
    builder = builder.add_extension(
        x509.BasicConstraints(ca=ca, path_length=None), critical=True
    )
    builder = builder.add_extension(
        x509.KeyUsage(
            digital_signature=not ca,
            content_commitment=False,
            key_encipherment=not ca,
            data_encipherment=False,
            key_agreement=False,
            key_cert_sign=ca,
            crl_sign=ca,
            encipher_only=False,
            decipher_only=False,
        ),
        critical=True,
    )
    builder = builder.add_extension(
        x509.SubjectKeyIdentifier.from_public_key(subject_key.public_key()),
        critical=False,
    )
    builder = builder.add_extension(
        x509.AuthorityKeyIdentifier.from_issuer_public_key(
            (issuer_key if issuer_key is not None else subject_key).public_key()
        ),
        critical=False,
    )
    if san is not None:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(san)]), critical=False
        )
    return builder.sign(issuer_key if issuer_key is not None else subject_key, SHA256())


def pem_certificates(*certificates: x509.Certificate) -> bytes:
    return b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certificates)


def pem_key(key, format=serialization.PrivateFormat.TraditionalOpenSSL, passphrase=PASSPHRASE) -> bytes:
    encryption = (
        serialization.BestAvailableEncryption(passphrase.encode())
        if passphrase
        else serialization.NoEncryption()
    )
    return key.private_bytes(serialization.Encoding.PEM, format, encryption)


# DEK-Info name -> (algorithm, key length)
LEGACY_CIPHERS = {
    "AES-128-CBC": (algorithms.AES, 16),
    "DES-EDE3-CBC": (TripleDES, 24),
}


def legacy_encrypt(der: bytes, label: str, passphrase: str = PASSPHRASE, cipher: str = "AES-128-CBC") -> bytes:
    """
    Wrap DER in an OpenSSL "Proc-Type: 4,ENCRYPTED" PEM block
    """
    algorithm, key_length = LEGACY_CIPHERS[cipher]
    iv = os.urandom(algorithm.block_size // 8)

    key = b""
    block = b""
    while len(key) < key_length:
        block = hashlib.md5(block + passphrase.encode() + iv[:8]).digest()
        key += block
    key = key[:key_length]

    padder = padding.PKCS7(algorithm.block_size).padder()
    padded = padder.update(der) + padder.finalize()
    encryptor = Cipher(algorithm(key), modes.CBC(iv)).encryptor()
    encrypted = encryptor.update(padded) + encryptor.finalize()

    body = base64.encodebytes(encrypted).decode()
    return (
        f"-----BEGIN {label}-----\n"
        "Proc-Type: 4,ENCRYPTED\n"
        f"DEK-Info: {cipher},{iv.hex().upper()}\n"
        "\n"
        f"{body}"
        f"-----END {label}-----\n"
    ).encode()


@dataclass
class Credentials:
    ca_key: rsa.RSAPrivateKey
    ca: x509.Certificate
    client_key: rsa.RSAPrivateKey
    client: x509.Certificate
    server_key: rsa.RSAPrivateKey
    server: x509.Certificate

    @property
    def ca_pem(self) -> bytes:
        return pem_certificates(self.ca)

    def bundle_pem(self, format=serialization.PrivateFormat.TraditionalOpenSSL, passphrase=PASSPHRASE) -> bytes:
        return pem_certificates(self.client, self.ca) + pem_key(self.client_key, format, passphrase)


@pytest.fixture(scope="session")
def credentials() -> Credentials:
    ca_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    ca = make_certificate(ca_key, "pushgate test CA", ca=True)
    client_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    client = make_certificate(client_key, "Apple Push Services: dev.pushgate.tests", ca_key, ca)
    server_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    server = make_certificate(server_key, GATEWAY_HOST, ca_key, ca, san=GATEWAY_HOST)
    return Credentials(ca_key, ca, client_key, client, server_key, server)


@pytest.fixture(scope="session")
def other_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def gateway_files(credentials, tmp_path_factory):
    """
    PEM files for the client bundle, the CA and the fake gateway's own identity
    """
    directory = tmp_path_factory.mktemp("gateway")
    files = {
        "bundle": directory / "bundle.pem",
        "ca": directory / "ca.pem",
        "server_cert": directory / "server.pem",
        "server_key": directory / "server-key.pem",
    }
    files["bundle"].write_bytes(credentials.bundle_pem())
    files["ca"].write_bytes(credentials.ca_pem)
    files["server_cert"].write_bytes(pem_certificates(credentials.server, credentials.ca))
    files["server_key"].write_bytes(pem_key(credentials.server_key, passphrase=None))
    return files


@pytest.fixture(scope="session")
def server_context(gateway_files) -> ssl.SSLContext:
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.load_cert_chain(str(gateway_files["server_cert"]), str(gateway_files["server_key"]))
    context.load_verify_locations(cafile=str(gateway_files["ca"]))
    context.verify_mode = ssl.CERT_REQUIRED
    return context


# Fake gateway behaviour for each received frame
SILENT = "silent"
CLOSE = "close"
TRUNCATE = "truncate"


@dataclass
class Frame:
    command: int
    identifier: int
    token: bytes
    payload: bytes
    expiry: int
    priority: typing.Optional[int] = None


async def read_frame(stream) -> typing.Optional[Frame]:
    command = await receive_exact(stream, 1)
    if not command:
        return None
    if command[0] == 1:
        header = await receive_exact(stream, 10)
        token = await receive_exact(stream, int.from_bytes(header[8:10], "big"))
        payload_length = int.from_bytes(await receive_exact(stream, 2), "big")
        payload = await receive_exact(stream, payload_length)
        return Frame(
            1,
            int.from_bytes(header[0:4], "big"),
            token,
            payload,
            int.from_bytes(header[4:8], "big"),
        )

    length = int.from_bytes(await receive_exact(stream, 4), "big")
    data = await receive_exact(stream, length)
    items = {}
    while data:
        item_length = int.from_bytes(data[1:3], "big")
        items[data[0]] = data[3 : 3 + item_length]
        data = data[3 + item_length :]
    return Frame(
        command[0],
        int.from_bytes(items[3], "big"),
        items[1],
        items[2],
        int.from_bytes(items[4], "big"),
        int.from_bytes(items[5], "big"),
    )


class FakeGateway:
    """
    In-memory mutual TLS gateway

    ``actions`` is consumed one entry per received frame: SILENT accepts, an
    int sends an error response with that status and closes, CLOSE closes
    without responding, TRUNCATE sends half a response and closes.
    """

    def __init__(self, task_group, ssl_context, actions=()):
        self.ssl_context = ssl_context
        self.actions = list(actions)
        self.frames: list[Frame] = []
        self.dials = 0
        self.handshakes = 0
        self._tg = task_group
        self._transports: list[StapledObjectStream] = []

    async def dial(self, host: str, port: int):
        self.dials += 1
        to_server_send, to_server_receive = anyio.create_memory_object_stream[bytes](100)
        to_client_send, to_client_receive = anyio.create_memory_object_stream[bytes](100)
        server = StapledObjectStream(to_client_send, to_server_receive)
        self._transports.append(server)
        self._tg.start_soon(self._serve, server)
        return StapledObjectStream(to_server_send, to_client_receive)

    async def drop(self):
        """
        Close every open connection from the gateway side without telling the client
        """
        for transport in self._transports:
            await anyio.aclose_forcefully(transport)
        self._transports = []

    async def _serve(self, transport):
        try:
            stream = await TLSStream.wrap(
                transport,
                server_side=True,
                ssl_context=self.ssl_context,
                standard_compatible=False,
            )
        except (ssl.SSLError, anyio.BrokenResourceError, anyio.EndOfStream, anyio.ClosedResourceError):
            await anyio.aclose_forcefully(transport)
            return
        self.handshakes += 1

        async with stream:
            try:
                while (frame := await read_frame(stream)) is not None:
                    self.frames.append(frame)
                    action = self.actions.pop(0) if self.actions else SILENT
                    if action == SILENT:
                        continue
                    if action == TRUNCATE:
                        await stream.send(b"\x08\x01\x00")
                    elif action != CLOSE:
                        await stream.send(
                            bytes([8, action]) + frame.identifier.to_bytes(4, "big")
                        )
                    return
            except (ssl.SSLError, anyio.BrokenResourceError, anyio.ClosedResourceError):
                return


@asynccontextmanager
async def fake_gateway(ssl_context, actions=()):
    async with anyio.create_task_group() as tg:
        gateway = FakeGateway(tg, ssl_context, actions)
        yield gateway
        tg.cancel_scope.cancel()
