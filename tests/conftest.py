from __future__ import annotations

import asyncio
import itertools
from typing import Callable, Dict, List, Optional

import pytest

from qrdrop.envelope import HandshakeDescriptor, Role
from qrdrop.transport import CHANNEL_LABEL, DataChannel, Message, MessageHandler, PeerTransport


class FakeChannel(DataChannel):
    """In-memory channel; linked channels deliver to each other synchronously."""

    def __init__(self, label: str = CHANNEL_LABEL, *, is_open: bool = True) -> None:
        self.label = label
        self._open = is_open
        self.sent: List[Message] = []
        self.buffered = 0
        self.peer: Optional["FakeChannel"] = None
        self.closed = False
        self._handlers: List[MessageHandler] = []
        self.backlog: List[Message] = []
        self._open_handlers: List[Callable[[], None]] = []
        self._close_handlers: List[Callable[[], None]] = []
        self._opened = asyncio.Event()
        if is_open:
            self._opened.set()

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def buffered_amount(self) -> int:
        return self.buffered

    def send(self, data: Message) -> None:
        if not self._open:
            raise RuntimeError("channel closed")
        self.sent.append(data)
        if self.peer is not None:
            self.peer.deliver(data)

    def deliver(self, data: Message) -> None:
        if not self._handlers:
            self.backlog.append(data)
            return
        for handler in list(self._handlers):
            handler(data)

    def on_message(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)
        backlog, self.backlog = self.backlog, []
        for data in backlog:
            handler(data)

    def on_open(self, handler: Callable[[], None]) -> None:
        if self._open:
            handler()
            return
        self._open_handlers.append(handler)

    def on_close(self, handler: Callable[[], None]) -> None:
        self._close_handlers.append(handler)

    async def wait_open(self) -> None:
        await self._opened.wait()

    def mark_open(self) -> None:
        self._open = True
        self._opened.set()
        for handler in list(self._open_handlers):
            handler()

    def close(self) -> None:
        if self.closed:
            return
        self._open = False
        self.closed = True
        for handler in list(self._close_handlers):
            handler()
        if self.peer is not None:
            self.peer.close()


class FakeNetwork:
    """Lets fake transports find each other through the ids in their payloads."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.transports: Dict[str, "FakeTransport"] = {}

    def register(self, transport: "FakeTransport") -> str:
        ident = f"peer-{next(self._ids)}"
        self.transports[ident] = transport
        return ident

    def lookup(self, payload: str) -> Optional["FakeTransport"]:
        ident = payload.split(";", 1)[0].rsplit(" ", 1)[-1]
        return self.transports.get(ident)


class FakeTransport(PeerTransport):
    """Scriptable PeerTransport producing SDP-like payloads."""

    def __init__(
        self,
        network: Optional[FakeNetwork] = None,
        *,
        gather_delay: Optional[float] = 0.0,
        connect: bool = True,
        fail_create: bool = False,
        wrong_local_role: bool = False,
    ) -> None:
        self.network = network or FakeNetwork()
        self.ident = self.network.register(self)
        self.gather_delay = gather_delay
        self.connect = connect
        self.fail_create = fail_create
        self.wrong_local_role = wrong_local_role
        self.channel: Optional[FakeChannel] = None
        self.remote: Optional[HandshakeDescriptor] = None
        self.closed = False
        self._local: Optional[HandshakeDescriptor] = None
        self._channel_ready = asyncio.Event()

    def _payload(self, role: Role) -> str:
        return f"v=0 fake-{role.value} {self.ident};a=candidate " + "x" * 40

    def open_channel(self, label: str = CHANNEL_LABEL) -> DataChannel:
        self.channel = FakeChannel(label, is_open=False)
        return self.channel

    async def create_local_offer(self) -> None:
        if self.fail_create:
            raise RuntimeError("no network interfaces")
        role = Role.ANSWER if self.wrong_local_role else Role.OFFER
        self._local = HandshakeDescriptor(role=role, payload=self._payload(role))

    async def create_local_answer(self) -> None:
        if self.fail_create:
            raise RuntimeError("no network interfaces")
        if self.remote is None:
            raise RuntimeError("answer requested before remote offer")
        self._local = HandshakeDescriptor(role=Role.ANSWER, payload=self._payload(Role.ANSWER))

    async def apply_remote_description(self, descriptor: HandshakeDescriptor) -> None:
        self.remote = descriptor
        if descriptor.role is not Role.ANSWER or not self.connect:
            return
        assert self.channel is not None
        answerer = self.network.lookup(descriptor.payload)
        if answerer is not None and answerer.connect:
            remote_channel = FakeChannel(self.channel.label, is_open=False)
            remote_channel.peer = self.channel
            self.channel.peer = remote_channel
            answerer.channel = remote_channel
            remote_channel.mark_open()
            answerer._channel_ready.set()
        self.channel.mark_open()
        self._channel_ready.set()

    async def wait_for_gathering(self) -> None:
        if self.gather_delay is None:
            await asyncio.Event().wait()
        await asyncio.sleep(self.gather_delay)

    def local_description(self) -> Optional[HandshakeDescriptor]:
        return self._local

    async def wait_for_channel(self) -> DataChannel:
        await self._channel_ready.wait()
        assert self.channel is not None
        return self.channel

    async def close(self) -> None:
        self.closed = True
        if self.channel is not None:
            self.channel.close()


@pytest.fixture
def fake_network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def channel_factory() -> Callable[..., FakeChannel]:
    return FakeChannel


@pytest.fixture
def transport_factory(fake_network: FakeNetwork) -> Callable[..., FakeTransport]:
    def _build(**kwargs: object) -> FakeTransport:
        return FakeTransport(fake_network, **kwargs)

    return _build
