"""
Exception hierarchy shared by the signaling and transfer layers.
"""

from __future__ import annotations


class QrDropError(Exception):
    """Base class for every error raised by qrdrop."""


class TokenError(QrDropError):
    """A scanned or pasted token could not be turned into a descriptor."""


class MalformedToken(TokenError):
    """Token separator missing, unknown marker, or a broken multi-part header."""


class DecodeCorruption(TokenError):
    """The compressed payload did not survive decoding."""


class PayloadTooShort(TokenError):
    """Decoded payload is below the minimum plausible handshake size."""

    def __init__(self, length: int, minimum: int) -> None:
        super().__init__(f"payload too short ({length} < {minimum} characters)")
        self.length = length
        self.minimum = minimum


class NegotiationError(QrDropError):
    """Base class for offer/answer state machine failures."""


class WrongRole(NegotiationError):
    """An offer was supplied where an answer was expected, or vice versa."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"expected {expected} token, got {actual}")
        self.expected = expected
        self.actual = actual


class InvalidState(NegotiationError):
    """Operation not permitted in the negotiator's current state."""

    def __init__(self, operation: str, state: object) -> None:
        label = getattr(state, "value", state)
        super().__init__(f"{operation} not allowed in state {label}")
        self.operation = operation
        self.state = state


class TransportUnavailable(NegotiationError):
    """The peer transport could not produce or apply a description."""


class NegotiationTimeout(NegotiationError):
    """Candidate gathering or channel opening exceeded its deadline."""


class TransferError(QrDropError):
    """Base class for data channel transfer failures."""


class ChannelNotOpen(TransferError):
    """A transfer was attempted before the channel reported itself open."""


class TransferCancelled(TransferError):
    """Raised when the user cancels an in-progress send."""

    def __init__(self, name: str | None = None) -> None:
        super().__init__("transfer cancelled")
        self.name = name


class ProtocolViolation(TransferError):
    """The peer sent something the transfer protocol does not allow."""


__all__ = [
    "ChannelNotOpen",
    "DecodeCorruption",
    "InvalidState",
    "MalformedToken",
    "NegotiationError",
    "NegotiationTimeout",
    "PayloadTooShort",
    "ProtocolViolation",
    "QrDropError",
    "TokenError",
    "TransferCancelled",
    "TransferError",
    "TransportUnavailable",
    "WrongRole",
]
