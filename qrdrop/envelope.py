"""
Envelope codec: handshake descriptors <-> QR-transportable text tokens.
"""

from __future__ import annotations

import base64
import binascii
import zlib
from dataclasses import dataclass
from enum import Enum

from .errors import DecodeCorruption, MalformedToken, PayloadTooShort

SEPARATOR = "|"
COMPRESSED_PREFIX = "~"
# Offer SDPs are several hundred characters; anything this short is a typo.
MIN_PAYLOAD_LENGTH = 32
COMPRESSION_LEVEL = 9


class Role(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"

    @property
    def marker(self) -> str:
        return ROLE_MARKERS[self]


ROLE_MARKERS = {Role.OFFER: "o", Role.ANSWER: "a"}
MARKER_ROLES = {marker: role for role, marker in ROLE_MARKERS.items()}


@dataclass(frozen=True)
class HandshakeDescriptor:
    """Opaque session description produced by the transport, tagged by role."""

    role: Role
    payload: str


@dataclass(frozen=True)
class Envelope:
    """Wire form of a descriptor: role plus the (possibly compressed) payload."""

    role: Role
    payload: str

    @property
    def token(self) -> str:
        return f"{self.role.marker}{SEPARATOR}{self.payload}"

    def __str__(self) -> str:
        return self.token


def compress_text(text: str) -> str:
    """Deflate `text` and return it as unpadded base64url."""

    packed = zlib.compress(text.encode("utf-8"), COMPRESSION_LEVEL)
    return base64.urlsafe_b64encode(packed).decode("ascii").rstrip("=")


def decompress_text(encoded: str) -> str:
    padding = "=" * (-len(encoded) % 4)
    try:
        packed = base64.urlsafe_b64decode((encoded + padding).encode("ascii"))
        return zlib.decompress(packed).decode("utf-8")
    except (binascii.Error, ValueError, zlib.error) as exc:
        raise DecodeCorruption(f"compressed payload does not decode: {exc}") from exc


class EnvelopeCodec:
    """
    Turns descriptors into `o|...` / `a|...` tokens and back.

    With `compress` enabled the payload is deflated and base64url-encoded
    behind a `~` prefix. A raw payload that happens to begin with `~` is
    always compressed, so decoding never has to guess which form it holds.
    """

    def __init__(self, compress: bool = False, min_payload_length: int = MIN_PAYLOAD_LENGTH) -> None:
        self.compress = compress
        self.min_payload_length = max(0, int(min_payload_length))

    def wrap(self, descriptor: HandshakeDescriptor) -> Envelope:
        if not descriptor.payload:
            raise ValueError("descriptor payload must not be empty")
        role = Role(descriptor.role)
        payload = descriptor.payload
        if self.compress or payload.startswith(COMPRESSED_PREFIX):
            payload = COMPRESSED_PREFIX + compress_text(payload)
        return Envelope(role=role, payload=payload)

    def unwrap(self, envelope: Envelope) -> HandshakeDescriptor:
        payload = envelope.payload
        if payload.startswith(COMPRESSED_PREFIX):
            payload = decompress_text(payload[len(COMPRESSED_PREFIX):])
        if len(payload) < self.min_payload_length:
            raise PayloadTooShort(len(payload), self.min_payload_length)
        return HandshakeDescriptor(role=envelope.role, payload=payload)

    def encode(self, descriptor: HandshakeDescriptor) -> str:
        return self.wrap(descriptor).token

    def decode(self, token: str) -> HandshakeDescriptor:
        return self.unwrap(parse_token(token))


def parse_token(token: str) -> Envelope:
    """Split a single-part token into its envelope without decoding the payload."""

    if not isinstance(token, str):
        raise MalformedToken("token must be text")
    marker, separator, payload = token.partition(SEPARATOR)
    if not separator:
        raise MalformedToken("token separator '|' is missing")
    role = MARKER_ROLES.get(marker)
    if role is None:
        raise MalformedToken(f"unknown role marker {marker!r}")
    return Envelope(role=role, payload=payload)


def peek_role(token: str) -> Role | None:
    """Return the role a token claims to carry, or None if it has no valid marker."""

    try:
        return parse_token(token).role
    except MalformedToken:
        return None


__all__ = [
    "COMPRESSED_PREFIX",
    "Envelope",
    "EnvelopeCodec",
    "HandshakeDescriptor",
    "MIN_PAYLOAD_LENGTH",
    "Role",
    "SEPARATOR",
    "compress_text",
    "decompress_text",
    "parse_token",
    "peek_role",
]
