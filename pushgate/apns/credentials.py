"""
Loading of combined certificate + encrypted private key PEM files

Gateway credentials are usually exported as a single PEM file holding the
certificate chain (leaf first) followed by the private key, encrypted either
with legacy OpenSSL headers (``Proc-Type``/``DEK-Info``) or as PKCS#8.
"""

from __future__ import annotations

import base64
import logging
import re
import typing
from dataclasses import dataclass, field
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .exceptions import (
    KeyMismatch,
    MalformedCertificate,
    MalformedKey,
    UnsupportedKeyType,
    WrongPassphrase,
)

log = logging.getLogger(__name__)

_PEM_BLOCK = re.compile(
    rb"-----BEGIN (?P<type>[A-Z0-9 ]+)-----(?P<body>.*?)-----END (?P=type)-----",
    re.DOTALL,
)

# DEK-Info cipher name -> (algorithm, key length)
_LEGACY_CIPHERS = {
    "AES-128-CBC": (algorithms.AES, 16),
    "AES-192-CBC": (algorithms.AES, 24),
    "AES-256-CBC": (algorithms.AES, 32),
    "DES-EDE3-CBC": (TripleDES, 24),
    "DES-CBC": (TripleDES, 8),
}

_PARSE_ERRORS = (ValueError, TypeError, UnsupportedAlgorithm)


@dataclass
class PEMBlock:
    type: str
    data: bytes
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def encrypted(self) -> bool:
        return self.headers.get("Proc-Type") == "4,ENCRYPTED"


@dataclass(frozen=True)
class CertificateBundle:
    chain: tuple[bytes, ...]
    private_key: rsa.RSAPrivateKey = field(repr=False)

    @property
    def leaf(self) -> x509.Certificate:
        return x509.load_der_x509_certificate(self.chain[0])

    def chain_pem(self) -> bytes:
        return b"".join(
            x509.load_der_x509_certificate(der).public_bytes(serialization.Encoding.PEM)
            for der in self.chain
        )


def iter_pem_blocks(data: bytes) -> typing.Iterator[PEMBlock]:
    """
    Yield PEM blocks in order

    Stops at the first block with a non-ASCII header or a body that is not valid base64
    """
    for match in _PEM_BLOCK.finditer(data):
        lines = [line.strip() for line in match["body"].strip().splitlines()]
        headers = {}
        while lines and b":" in lines[0]:
            try:
                key, _, value = lines.pop(0).decode("ascii").partition(":")
            except UnicodeDecodeError:
                log.debug(f"Invalid header in {match['type'].decode()} block")
                return
            headers[key.strip()] = value.strip()
        try:
            der = base64.b64decode(b"".join(lines), validate=True)
        except ValueError:
            log.debug(f"Invalid base64 in {match['type'].decode()} block")
            return
        yield PEMBlock(match["type"].decode(), der, headers)


def _pem(label: str, der: bytes) -> bytes:
    body = base64.encodebytes(der)
    return f"-----BEGIN {label}-----\n".encode() + body + f"-----END {label}-----\n".encode()


def _derive_legacy_key(password: bytes, salt: bytes, length: int) -> bytes:
    # OpenSSL EVP_BytesToKey with MD5 and a single iteration
    key = b""
    block = b""
    while len(key) < length:
        digest = hashes.Hash(hashes.MD5())
        digest.update(block + password + salt)
        block = digest.finalize()
        key += block
    return key[:length]


def _looks_like_der(data: bytes) -> bool:
    if len(data) < 2 or data[0] != 0x30:
        return False
    length = data[1]
    offset = 2
    if length & 0x80:
        size = length & 0x7F
        if size == 0 or size > 4 or len(data) < offset + size:
            return False
        length = int.from_bytes(data[offset : offset + size], "big")
        offset += size
    return offset + length == len(data)


def _decrypt_legacy(block: PEMBlock, password: bytes) -> bytes:
    cipher_name, _, iv_hex = block.headers.get("DEK-Info", "").partition(",")
    if cipher_name not in _LEGACY_CIPHERS:
        raise ValueError(f"unsupported DEK-Info cipher {cipher_name!r}")
    algorithm, key_length = _LEGACY_CIPHERS[cipher_name]
    iv = bytes.fromhex(iv_hex)

    key = _derive_legacy_key(password, iv[:8], key_length)
    decryptor = Cipher(algorithm(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(block.data) + decryptor.finalize()

    unpadder = padding.PKCS7(algorithm.block_size).unpadder()
    data = unpadder.update(padded) + unpadder.finalize()
    if not _looks_like_der(data):
        raise ValueError("decryption password incorrect")
    return data


def decrypt_key_block(block: PEMBlock, passphrase: bytes) -> bytes:
    """
    Decrypt a private key PEM block into DER

    Legacy OpenSSL encryption yields whatever structure was encrypted (PKCS#1
    or PKCS#8), ``ENCRYPTED PRIVATE KEY`` blocks yield PKCS#8. An unencrypted
    block is only accepted with an empty passphrase.
    """
    try:
        if block.encrypted:
            return _decrypt_legacy(block, passphrase)
        if block.type == "ENCRYPTED PRIVATE KEY":
            key = serialization.load_der_private_key(block.data, passphrase)
            return key.private_bytes(
                serialization.Encoding.DER,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            )
    except _PARSE_ERRORS as e:
        raise WrongPassphrase(f"passphrase: {e}") from e

    if passphrase:
        raise WrongPassphrase("passphrase: key block is not encrypted")
    log.debug(f"{block.type} block is not encrypted, using as-is")
    return block.data


def parse_private_key(der: bytes) -> rsa.RSAPrivateKey:
    # OpenSSL 0.9.8 writes PKCS#1 by default, 1.0.0 and later write PKCS#8
    try:
        key = serialization.load_pem_private_key(_pem("RSA PRIVATE KEY", der), None)
    except _PARSE_ERRORS as pkcs1_error:
        try:
            key = serialization.load_pem_private_key(_pem("PRIVATE KEY", der), None)
        except _PARSE_ERRORS as pkcs8_error:
            raise MalformedKey(
                f"failed to parse key: PKCS#1: {pkcs1_error}; PKCS#8: {pkcs8_error}"
            ) from pkcs8_error
    if not isinstance(key, rsa.RSAPrivateKey):
        raise UnsupportedKeyType(
            f"found non-RSA private key ({type(key).__name__}) in PKCS#8 wrapping"
        )
    return key


def load_pem(
    data: bytes, passphrase: typing.Union[str, bytes]
) -> CertificateBundle:
    if isinstance(passphrase, str):
        passphrase = passphrase.encode()

    chain: list[bytes] = []
    key_block: typing.Optional[PEMBlock] = None
    for block in iter_pem_blocks(data):
        if block.type != "CERTIFICATE":
            key_block = block
            break
        chain.append(block.data)

    if not chain:
        raise MalformedCertificate("failed to parse certificate PEM data")
    if key_block is None:
        raise MalformedKey("failed to parse key PEM data")

    private_key = parse_private_key(decrypt_key_block(key_block, passphrase))

    try:
        leaf = x509.load_der_x509_certificate(chain[0])
    except ValueError as e:
        raise MalformedCertificate(f"failed to parse leaf certificate: {e}") from e

    public_key = leaf.public_key()
    if (
        not isinstance(public_key, rsa.RSAPublicKey)
        or public_key.public_numbers().n
        != private_key.public_key().public_numbers().n
    ):
        raise KeyMismatch("private key does not match public key")

    log.debug(
        f"Loaded {len(chain)} certificate(s) for {leaf.subject.rfc4514_string()}"
    )
    return CertificateBundle(tuple(chain), private_key)


def load_pem_file(
    path: typing.Union[str, Path], passphrase: typing.Union[str, bytes]
) -> CertificateBundle:
    return load_pem(Path(path).read_bytes(), passphrase)
