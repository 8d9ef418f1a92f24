"""
Peer transport contract and its aiortc-backed implementation.

The negotiator and transfer sessions only talk to `PeerTransport` and
`DataChannel`; `AiortcTransport` is the production binding to WebRTC.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence, Union

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)

from .envelope import HandshakeDescriptor, Role

logger = logging.getLogger(__name__)

Message = Union[str, bytes]
MessageHandler = Callable[[Message], None]

CHANNEL_LABEL = "fileShare"
PUBLIC_STUN_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)


class DataChannel(ABC):
    """Ordered, reliable, bidirectional message channel between the peers."""

    label: str

    @property
    @abstractmethod
    def is_open(self) -> bool: ...

    @property
    @abstractmethod
    def buffered_amount(self) -> int:
        """Bytes queued locally but not yet handed to the network."""

    @abstractmethod
    def send(self, data: Message) -> None: ...

    @abstractmethod
    def on_message(self, handler: MessageHandler) -> None: ...

    @abstractmethod
    def on_open(self, handler: Callable[[], None]) -> None: ...

    @abstractmethod
    def on_close(self, handler: Callable[[], None]) -> None: ...

    @abstractmethod
    async def wait_open(self) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


class PeerTransport(ABC):
    """Opaque provider of local/remote descriptions and the data channel."""

    @abstractmethod
    def open_channel(self, label: str = CHANNEL_LABEL) -> DataChannel: ...

    @abstractmethod
    async def create_local_offer(self) -> None: ...

    @abstractmethod
    async def create_local_answer(self) -> None: ...

    @abstractmethod
    async def apply_remote_description(self, descriptor: HandshakeDescriptor) -> None: ...

    @abstractmethod
    async def wait_for_gathering(self) -> None:
        """Return once ICE candidate gathering has completed."""

    @abstractmethod
    def local_description(self) -> Optional[HandshakeDescriptor]: ...

    @abstractmethod
    async def wait_for_channel(self) -> DataChannel:
        """Return the data channel once it is open, whichever side created it."""

    @abstractmethod
    async def close(self) -> None: ...


class AiortcChannel(DataChannel):
    """DataChannel backed by an aiortc RTCDataChannel."""

    def __init__(self, channel: RTCDataChannel) -> None:
        self._channel = channel
        self.label = channel.label
        self._opened = asyncio.Event()
        self._open_handlers: List[Callable[[], None]] = []
        self._close_handlers: List[Callable[[], None]] = []
        self._message_handlers: List[MessageHandler] = []
        # Messages that arrive before anyone subscribed are replayed to the first handler.
        self._backlog: List[Message] = []
        if channel.readyState == "open":
            self._opened.set()

        @channel.on("message")
        def _on_message(message: Message) -> None:
            if not self._message_handlers:
                self._backlog.append(message)
                return
            for handler in list(self._message_handlers):
                handler(message)

        @channel.on("open")
        def _on_open() -> None:
            logger.debug("data channel %s open", self.label)
            self._opened.set()
            for handler in list(self._open_handlers):
                handler()

        @channel.on("close")
        def _on_close() -> None:
            logger.debug("data channel %s closed", self.label)
            for handler in list(self._close_handlers):
                handler()

    @property
    def is_open(self) -> bool:
        return self._channel.readyState == "open"

    @property
    def buffered_amount(self) -> int:
        return self._channel.bufferedAmount

    def send(self, data: Message) -> None:
        self._channel.send(data)

    def on_message(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)
        backlog, self._backlog = self._backlog, []
        for message in backlog:
            handler(message)

    def on_open(self, handler: Callable[[], None]) -> None:
        if self.is_open:
            handler()
            return
        self._open_handlers.append(handler)

    def on_close(self, handler: Callable[[], None]) -> None:
        self._close_handlers.append(handler)

    async def wait_open(self) -> None:
        await self._opened.wait()

    def close(self) -> None:
        self._channel.close()


def build_ice_servers(network_mode: str, extra: Sequence[str] = ()) -> List[str]:
    """'local' peers need no ICE servers; 'internet' adds public STUN servers."""

    servers = list(PUBLIC_STUN_SERVERS) if network_mode == "internet" else []
    for url in extra:
        if url and url not in servers:
            servers.append(url)
    return servers


class AiortcTransport(PeerTransport):
    """PeerTransport on top of aiortc's RTCPeerConnection."""

    def __init__(self, ice_servers: Sequence[str] = ()) -> None:
        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in ice_servers]
        )
        self._pc = RTCPeerConnection(configuration=configuration)
        self._gathered = asyncio.Event()
        self._channel_announced = asyncio.Event()
        self._channel: Optional[AiortcChannel] = None

        @self._pc.on("icegatheringstatechange")
        def _on_gathering() -> None:
            logger.debug("ice gathering state: %s", self._pc.iceGatheringState)
            if self._pc.iceGatheringState == "complete":
                self._gathered.set()

        @self._pc.on("connectionstatechange")
        async def _on_connection() -> None:
            logger.debug("connection state: %s", self._pc.connectionState)

        @self._pc.on("datachannel")
        def _on_datachannel(channel: RTCDataChannel) -> None:
            logger.debug("remote announced data channel %s", channel.label)
            self._channel = AiortcChannel(channel)
            self._channel_announced.set()

    def open_channel(self, label: str = CHANNEL_LABEL) -> DataChannel:
        channel = AiortcChannel(self._pc.createDataChannel(label, ordered=True))
        self._channel = channel
        self._channel_announced.set()
        return channel

    async def create_local_offer(self) -> None:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)

    async def create_local_answer(self) -> None:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)

    async def apply_remote_description(self, descriptor: HandshakeDescriptor) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=descriptor.payload, type=descriptor.role.value)
        )

    async def wait_for_gathering(self) -> None:
        if self._pc.iceGatheringState == "complete":
            return
        await self._gathered.wait()

    def local_description(self) -> Optional[HandshakeDescriptor]:
        description = self._pc.localDescription
        if description is None or not description.sdp:
            return None
        return HandshakeDescriptor(role=Role(description.type), payload=description.sdp)

    async def wait_for_channel(self) -> DataChannel:
        await self._channel_announced.wait()
        assert self._channel is not None
        await self._channel.wait_open()
        return self._channel

    async def close(self) -> None:
        if self._channel is not None:
            self._channel.close()
        await self._pc.close()


__all__ = [
    "AiortcChannel",
    "AiortcTransport",
    "CHANNEL_LABEL",
    "DataChannel",
    "Message",
    "MessageHandler",
    "PeerTransport",
    "PUBLIC_STUN_SERVERS",
    "build_ice_servers",
]
