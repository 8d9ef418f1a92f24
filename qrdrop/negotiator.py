"""
Offer/answer state machine driven by tokens carried over QR codes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, TypeVar, Union

from .chunker import DEFAULT_MAX_PART_SIZE, Incomplete, QrChunker
from .envelope import Envelope, EnvelopeCodec, HandshakeDescriptor, Role
from .errors import (
    InvalidState,
    NegotiationTimeout,
    QrDropError,
    TransportUnavailable,
    WrongRole,
)
from .transport import CHANNEL_LABEL, DataChannel, PeerTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")

# None -> wait indefinitely, otherwise seconds
DEFAULT_GATHER_TIMEOUT: Optional[float] = 30.0
DEFAULT_CONNECT_TIMEOUT: Optional[float] = 60.0


class NegotiationState(str, Enum):
    IDLE = "idle"
    OFFER_READY = "offer-ready"
    AWAITING_REMOTE = "awaiting-remote"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class Negotiator:
    """
    Drives one connection attempt from either side.

    The initiator calls `create_offer()` and later `accept_answer()`; the
    responder calls `accept_offer()` and then `wait_connected()`. Every
    failure moves the negotiator to FAILED and is re-raised; nothing is
    retried. `reset()` starts a fresh attempt with a new transport.
    """

    def __init__(
        self,
        transport_factory: Callable[[], PeerTransport],
        *,
        codec: Optional[EnvelopeCodec] = None,
        chunker: Optional[QrChunker] = None,
        max_part_size: int = DEFAULT_MAX_PART_SIZE,
        gather_timeout: Optional[float] = DEFAULT_GATHER_TIMEOUT,
        connect_timeout: Optional[float] = DEFAULT_CONNECT_TIMEOUT,
        channel_label: str = CHANNEL_LABEL,
        on_state_change: Optional[Callable[[NegotiationState], None]] = None,
    ) -> None:
        self._transport_factory = transport_factory
        self.codec = codec or EnvelopeCodec()
        self.chunker = chunker or QrChunker()
        self.max_part_size = max_part_size
        self.gather_timeout = gather_timeout
        self.connect_timeout = connect_timeout
        self.channel_label = channel_label
        self._on_state_change = on_state_change

        self._state = NegotiationState.IDLE
        self._transport: Optional[PeerTransport] = None
        self._channel: Optional[DataChannel] = None
        self._local: Optional[HandshakeDescriptor] = None
        self._remote: Optional[HandshakeDescriptor] = None

    # Properties -----------------------------------------------------

    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def channel(self) -> Optional[DataChannel]:
        return self._channel

    @property
    def local_descriptor(self) -> Optional[HandshakeDescriptor]:
        return self._local

    @property
    def remote_descriptor(self) -> Optional[HandshakeDescriptor]:
        return self._remote

    # Token helpers --------------------------------------------------

    def render(self, envelope: Envelope) -> List[str]:
        """Texts to show as QR codes (or copy) for the given envelope."""

        return self.chunker.render(envelope.token, self.max_part_size)

    def feed(self, text: str) -> Union[str, Incomplete]:
        """Route scanned/pasted text through reassembly."""

        return self.chunker.feed(text)

    # Initiator ------------------------------------------------------

    async def create_offer(self) -> Envelope:
        self._require(NegotiationState.IDLE, "create_offer")
        try:
            transport = self._ensure_transport()
            self._channel = transport.open_channel(self.channel_label)
            await transport.create_local_offer()
            local = await self._finalize_local(transport, Role.OFFER)
            envelope = self.codec.wrap(local)
        except asyncio.CancelledError:
            self._set_state(NegotiationState.FAILED)
            raise
        except QrDropError:
            self._set_state(NegotiationState.FAILED)
            raise
        except Exception as exc:  # noqa: BLE001 - transport errors are opaque
            self._set_state(NegotiationState.FAILED)
            raise TransportUnavailable(f"could not create offer: {exc}") from exc
        self._local = local
        self._set_state(NegotiationState.OFFER_READY)
        return envelope

    async def accept_answer(self, token: str) -> DataChannel:
        self._require(NegotiationState.OFFER_READY, "accept_answer")
        descriptor = self._decode(token, Role.ANSWER)
        transport = self._ensure_transport()
        try:
            await transport.apply_remote_description(descriptor)
        except Exception as exc:  # noqa: BLE001
            self._set_state(NegotiationState.FAILED)
            raise TransportUnavailable(f"could not apply answer: {exc}") from exc
        self._remote = descriptor
        return await self._await_channel(transport)

    # Responder ------------------------------------------------------

    async def accept_offer(self, token: str) -> Envelope:
        self._require(NegotiationState.IDLE, "accept_offer")
        descriptor = self._decode(token, Role.OFFER)
        try:
            transport = self._ensure_transport()
            await transport.apply_remote_description(descriptor)
            await transport.create_local_answer()
            local = await self._finalize_local(transport, Role.ANSWER)
            envelope = self.codec.wrap(local)
        except asyncio.CancelledError:
            self._set_state(NegotiationState.FAILED)
            raise
        except QrDropError:
            self._set_state(NegotiationState.FAILED)
            raise
        except Exception as exc:  # noqa: BLE001
            self._set_state(NegotiationState.FAILED)
            raise TransportUnavailable(f"could not answer offer: {exc}") from exc
        self._remote = descriptor
        self._local = local
        self._set_state(NegotiationState.AWAITING_REMOTE)
        return envelope

    async def wait_connected(self) -> DataChannel:
        if self._state is NegotiationState.CONNECTED and self._channel is not None:
            return self._channel
        self._require(NegotiationState.AWAITING_REMOTE, "wait_connected")
        return await self._await_channel(self._ensure_transport())

    # Lifecycle ------------------------------------------------------

    async def close(self) -> None:
        """Release the transport. Safe to call in any state."""

        transport, self._transport = self._transport, None
        self._channel = None
        if transport is not None:
            with contextlib.suppress(Exception):
                await transport.close()
        if self._state not in {NegotiationState.IDLE, NegotiationState.FAILED}:
            self._set_state(NegotiationState.CLOSED)

    async def reset(self) -> None:
        await self.close()
        self.chunker.reset()
        self._local = None
        self._remote = None
        self._set_state(NegotiationState.IDLE)

    async def __aenter__(self) -> "Negotiator":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # Internal helpers -----------------------------------------------

    def _require(self, expected: NegotiationState, operation: str) -> None:
        if self._state is not expected:
            raise InvalidState(operation, self._state)

    def _set_state(self, state: NegotiationState) -> None:
        if state is self._state:
            return
        logger.debug("negotiator %s -> %s", self._state.value, state.value)
        self._state = state
        if self._on_state_change:
            self._on_state_change(state)

    def _ensure_transport(self) -> PeerTransport:
        if self._transport is None:
            self._transport = self._transport_factory()
        return self._transport

    def _decode(self, token: str, expected: Role) -> HandshakeDescriptor:
        # Role and decoding are checked before the transport sees anything.
        try:
            descriptor = self.codec.decode(token)
        except QrDropError:
            self._set_state(NegotiationState.FAILED)
            raise
        if descriptor.role is not expected:
            raise WrongRole(expected.value, descriptor.role.value)
        return descriptor

    async def _finalize_local(self, transport: PeerTransport, role: Role) -> HandshakeDescriptor:
        await self._bounded(transport.wait_for_gathering(), self.gather_timeout, "candidate gathering")
        local = transport.local_description()
        if local is None or not local.payload:
            raise TransportUnavailable(f"transport produced no local {role.value}")
        if local.role is not role:
            raise TransportUnavailable(f"transport produced {local.role.value}, expected {role.value}")
        return local

    async def _await_channel(self, transport: PeerTransport) -> DataChannel:
        try:
            channel = await self._bounded(
                transport.wait_for_channel(), self.connect_timeout, "channel opening"
            )
        except asyncio.CancelledError:
            self._set_state(NegotiationState.FAILED)
            raise
        except QrDropError:
            self._set_state(NegotiationState.FAILED)
            raise
        except Exception as exc:  # noqa: BLE001
            self._set_state(NegotiationState.FAILED)
            raise TransportUnavailable(f"channel did not open: {exc}") from exc
        self._channel = channel
        self._set_state(NegotiationState.CONNECTED)
        return channel

    @staticmethod
    async def _bounded(awaitable: Awaitable[T], timeout: Optional[float], what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as exc:
            raise NegotiationTimeout(f"{what} timed out after {timeout}s") from exc


__all__ = [
    "DEFAULT_CONNECT_TIMEOUT",
    "DEFAULT_GATHER_TIMEOUT",
    "NegotiationState",
    "Negotiator",
]
