from __future__ import annotations

import datetime
import itertools
import json
import logging
import time
import typing
from dataclasses import dataclass, field
from enum import IntEnum

from .exceptions import (
    EncodeError,
    InvalidDeviceToken,
    PayloadTooLarge,
    ResponseError,
    TruncatedResponse,
    UnknownStatus,
)

log = logging.getLogger(__name__)

ENHANCED_COMMAND = 1
FRAMED_COMMAND = 2
ERROR_RESPONSE_COMMAND = 8
RESPONSE_SIZE = 6

MAX_PAYLOAD_SIZE = 2048
DEFAULT_RETRIES = 3
DEFAULT_EXPIRY = datetime.timedelta(days=1)

PRIORITY_IMMEDIATE = 10
PRIORITY_CONSERVE_POWER = 5

_identifiers = itertools.count(1)


class Status(IntEnum):
    NoErrors = 0
    ProcessingError = 1
    MissingDeviceToken = 2
    MissingTopic = 3
    MissingPayload = 4
    InvalidTokenSize = 5
    InvalidTopicSize = 6
    InvalidPayloadSize = 7
    InvalidToken = 8
    Shutdown = 10
    Unknown = 255

    @classmethod
    def _missing_(cls, value):
        return cls.Unknown

    @property
    def description(self) -> str:
        return _STATUS_DESCRIPTIONS[self]


_STATUS_DESCRIPTIONS = {
    Status.NoErrors: "No errors encountered",
    Status.ProcessingError: "Processing error",
    Status.MissingDeviceToken: "Missing device token",
    Status.MissingTopic: "Missing topic",
    Status.MissingPayload: "Missing payload",
    Status.InvalidTokenSize: "Invalid token size",
    Status.InvalidTopicSize: "Invalid topic size",
    Status.InvalidPayloadSize: "Invalid payload size",
    Status.InvalidToken: "Invalid token",
    Status.Shutdown: "Shutdown",
    Status.Unknown: "None (unknown)",
}


@dataclass
class ResponseFrame:
    command: int
    status: int
    identifier: int

    def error(self) -> typing.Optional[ResponseError]:
        """
        Map the status byte to an exception, or None if the status is success
        """
        if self.status == Status.NoErrors:
            return None
        if Status.ProcessingError <= self.status <= Status.InvalidToken:
            return ResponseError(
                self.status, self.identifier, Status(self.status).description
            )
        return UnknownStatus(
            self.status,
            self.identifier,
            f"Unknown error ({Status(self.status).description}, status {self.status})",
        )


@dataclass
class PushNotification:
    """
    A single notification to one device

    :param token: device token, hex encoded or raw bytes
    :param alert: alert text or a dict of localized alert options
    :param payload: complete payload dict, replaces alert/badge/sound/extra
    :param expiry: Unix timestamp (or datetime) after which the gateway drops the message
    :param priority: 10 to deliver immediately, 5 to deliver at a power-conserving time
    :param identifier: echoed back by the gateway in error responses
    :param retries: remaining attempts, consumed by ``APNSClient.send``
    """

    token: typing.Union[str, bytes]
    alert: typing.Union[str, dict, None] = None
    badge: typing.Optional[int] = None
    sound: typing.Optional[str] = None
    extra: dict[str, typing.Any] = field(default_factory=dict)
    payload: typing.Optional[dict[str, typing.Any]] = None
    expiry: typing.Union[int, datetime.datetime] = field(
        default_factory=lambda: int(time.time() + DEFAULT_EXPIRY.total_seconds())
    )
    priority: int = PRIORITY_IMMEDIATE
    identifier: int = field(default_factory=lambda: next(_identifiers) & 0xFFFFFFFF)
    retries: int = DEFAULT_RETRIES
    error: typing.Optional[Exception] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self.payload is not None and (
            self.alert is not None
            or self.badge is not None
            or self.sound is not None
            or self.extra
        ):
            raise ValueError("Payload specified together with alert/badge/sound/extra")
        if "aps" in self.extra:
            raise ValueError("Extra payload data may not contain 'aps' key")
        if isinstance(self.expiry, datetime.datetime):
            self.expiry = int(self.expiry.timestamp())

    @property
    def lazy(self) -> bool:
        return self.priority == PRIORITY_CONSERVE_POWER

    def token_bytes(self) -> bytes:
        if isinstance(self.token, bytes):
            return self.token
        try:
            return bytes.fromhex(self.token)
        except ValueError as e:
            raise InvalidDeviceToken(f"Device token is not hex: {e}") from e

    def to_payload(self) -> dict[str, typing.Any]:
        if self.payload is not None:
            return self.payload

        aps: dict[str, typing.Any] = {}
        if self.alert is not None:
            aps["alert"] = self.alert
        if self.badge is not None:
            aps["badge"] = self.badge
        if self.sound is not None:
            aps["sound"] = str(self.sound)
        return {"aps": aps, **self.extra}


def encode_payload(
    notification: PushNotification, max_size: int = MAX_PAYLOAD_SIZE
) -> bytes:
    try:
        payload = json.dumps(
            notification.to_payload(), separators=(",", ":"), ensure_ascii=False
        ).encode()
    except (TypeError, ValueError) as e:
        raise EncodeError(f"Payload is not JSON serializable: {e}") from e
    if len(payload) > max_size:
        raise PayloadTooLarge(len(payload), max_size)
    return payload


def _fields(notification: PushNotification, max_payload_size: int):
    token = notification.token_bytes()
    if len(token) > 0xFFFF:
        raise InvalidDeviceToken(f"Device token is {len(token)} bytes")
    payload = encode_payload(notification, max_payload_size)
    for name in ("identifier", "expiry"):
        value = getattr(notification, name)
        if not 0 <= value <= 0xFFFFFFFF:
            raise EncodeError(f"{name} {value} does not fit in 4 bytes")
    return token, payload


def encode(
    notification: PushNotification, max_payload_size: int = MAX_PAYLOAD_SIZE
) -> bytes:
    """
    Serialize to the enhanced notification format (command 1)
    """
    token, payload = _fields(notification, max_payload_size)
    frame = (
        ENHANCED_COMMAND.to_bytes(1, "big")
        + notification.identifier.to_bytes(4, "big")
        + notification.expiry.to_bytes(4, "big")
        + len(token).to_bytes(2, "big")
        + token
        + len(payload).to_bytes(2, "big")
        + payload
    )
    log.debug(f"Encoded notification {notification.identifier} ({len(frame)} bytes)")
    return frame


def _serialize_item(item_id: int, value: bytes) -> bytes:
    return item_id.to_bytes(1, "big") + len(value).to_bytes(2, "big") + value


def encode_framed(
    notification: PushNotification, max_payload_size: int = MAX_PAYLOAD_SIZE
) -> bytes:
    """
    Serialize to the item-based frame format (command 2), which also carries the priority
    """
    token, payload = _fields(notification, max_payload_size)
    items = (
        _serialize_item(1, token)
        + _serialize_item(2, payload)
        + _serialize_item(3, notification.identifier.to_bytes(4, "big"))
        + _serialize_item(4, notification.expiry.to_bytes(4, "big"))
        + _serialize_item(5, notification.priority.to_bytes(1, "big"))
    )
    return FRAMED_COMMAND.to_bytes(1, "big") + len(items).to_bytes(4, "big") + items


def decode(data: bytes) -> ResponseFrame:
    if len(data) < RESPONSE_SIZE:
        raise TruncatedResponse(data)
    return ResponseFrame(
        command=data[0],
        status=data[1],
        identifier=int.from_bytes(data[2:6], "big"),
    )
