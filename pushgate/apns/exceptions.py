from __future__ import annotations

import typing


class PushError(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def __str__(self):
        return self.reason


# Credential loading


class CredentialError(PushError):
    pass


class MalformedCertificate(CredentialError):
    pass


class MalformedKey(CredentialError):
    pass


class WrongPassphrase(CredentialError):
    pass


class UnsupportedKeyType(CredentialError):
    pass


class KeyMismatch(CredentialError):
    pass


# Encoding


class EncodeError(PushError):
    pass


class PayloadTooLarge(EncodeError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"Payload is {size} bytes, limit is {limit}")
        self.size = size
        self.limit = limit


class InvalidDeviceToken(EncodeError):
    pass


class DecodeError(PushError):
    pass


class TruncatedResponse(DecodeError):
    def __init__(self, data: bytes):
        super().__init__(f"Response frame truncated: got {len(data)} of 6 bytes")
        self.data = data


# Transport


class GatewayConnectionError(PushError):
    pass


class ConnectionClosed(GatewayConnectionError):
    def __init__(self, reason: str = "Connection closed"):
        super().__init__(reason)


# Gateway responses


class ResponseError(PushError):
    def __init__(self, status: int, identifier: int, reason: str):
        super().__init__(reason)
        self.status = status
        self.identifier = identifier


class UnknownStatus(ResponseError):
    pass


class RetriesExhausted(PushError):
    def __init__(self, error: typing.Optional[Exception], retries: int):
        super().__init__(f"Retried more than {retries} times: {error}")
        self.error = error
        self.retries = retries
