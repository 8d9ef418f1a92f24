from __future__ import annotations

import asyncio

import pytest

from qrdrop.envelope import EnvelopeCodec, HandshakeDescriptor, Role
from qrdrop.errors import (
    InvalidState,
    MalformedToken,
    NegotiationTimeout,
    PayloadTooShort,
    TransportUnavailable,
    WrongRole,
)
from qrdrop.negotiator import NegotiationState, Negotiator


def _negotiator(transport, **kwargs) -> Negotiator:
    return Negotiator(lambda: transport, **kwargs)


def test_offer_answer_connects_both_sides(transport_factory) -> None:
    async def scenario():
        initiator = _negotiator(transport_factory())
        responder = _negotiator(transport_factory())

        offer = await initiator.create_offer()
        assert initiator.state is NegotiationState.OFFER_READY
        assert offer.role is Role.OFFER

        answer = await responder.accept_offer(offer.token)
        assert responder.state is NegotiationState.AWAITING_REMOTE
        assert answer.role is Role.ANSWER

        channel = await initiator.accept_answer(answer.token)
        remote_channel = await responder.wait_connected()
        return initiator, responder, channel, remote_channel

    initiator, responder, channel, remote_channel = asyncio.run(scenario())

    assert initiator.state is NegotiationState.CONNECTED
    assert responder.state is NegotiationState.CONNECTED
    assert channel.is_open and remote_channel.is_open
    assert initiator.remote_descriptor.role is Role.ANSWER
    assert responder.local_descriptor.role is Role.ANSWER


def test_state_change_callback_sees_every_transition(transport_factory) -> None:
    seen = []

    async def scenario():
        negotiator = _negotiator(transport_factory(), on_state_change=seen.append)
        await negotiator.create_offer()
        await negotiator.close()

    asyncio.run(scenario())

    assert seen == [NegotiationState.OFFER_READY, NegotiationState.CLOSED]


async def _idle(transport_factory) -> Negotiator:
    return _negotiator(transport_factory())


async def _awaiting_remote(transport_factory) -> Negotiator:
    offer = await _negotiator(transport_factory()).create_offer()
    responder = _negotiator(transport_factory())
    await responder.accept_offer(offer.token)
    return responder


async def _connected(transport_factory) -> Negotiator:
    initiator = _negotiator(transport_factory())
    offer = await initiator.create_offer()
    answer = await _negotiator(transport_factory()).accept_offer(offer.token)
    await initiator.accept_answer(answer.token)
    return initiator


async def _failed(transport_factory) -> Negotiator:
    negotiator = _negotiator(transport_factory(fail_create=True))
    with pytest.raises(TransportUnavailable):
        await negotiator.create_offer()
    return negotiator


async def _closed(transport_factory) -> Negotiator:
    negotiator = _negotiator(transport_factory())
    await negotiator.create_offer()
    await negotiator.close()
    return negotiator


@pytest.mark.parametrize(
    "reach, expected",
    [
        (_idle, NegotiationState.IDLE),
        (_awaiting_remote, NegotiationState.AWAITING_REMOTE),
        (_connected, NegotiationState.CONNECTED),
        (_failed, NegotiationState.FAILED),
        (_closed, NegotiationState.CLOSED),
    ],
)
def test_accept_answer_outside_offer_ready_is_rejected(transport_factory, reach, expected) -> None:
    async def scenario():
        negotiator = await reach(transport_factory)
        assert negotiator.state is expected
        with pytest.raises(InvalidState):
            await negotiator.accept_answer("a|" + "x" * 40)
        return negotiator

    assert asyncio.run(scenario()).state is expected


def test_second_offer_is_rejected(transport_factory) -> None:
    async def scenario():
        negotiator = _negotiator(transport_factory())
        await negotiator.create_offer()
        with pytest.raises(InvalidState):
            await negotiator.create_offer()
        with pytest.raises(InvalidState):
            await negotiator.accept_offer("o|" + "x" * 40)
        return negotiator

    assert asyncio.run(scenario()).state is NegotiationState.OFFER_READY


def test_wrong_role_keeps_state(transport_factory) -> None:
    async def scenario():
        initiator = _negotiator(transport_factory())
        offer = await initiator.create_offer()
        with pytest.raises(WrongRole) as excinfo:
            await initiator.accept_answer(offer.token)
        return initiator, excinfo.value

    initiator, error = asyncio.run(scenario())

    assert initiator.state is NegotiationState.OFFER_READY
    assert (error.expected, error.actual) == ("answer", "offer")


def test_responder_rejects_answer_token(transport_factory) -> None:
    transport = transport_factory()
    negotiator = _negotiator(transport)

    with pytest.raises(WrongRole):
        asyncio.run(negotiator.accept_offer("a|" + "x" * 40))

    assert negotiator.state is NegotiationState.IDLE
    assert transport.remote is None


@pytest.mark.parametrize(
    "token, error",
    [("garbage", MalformedToken), ("a|tiny", PayloadTooShort)],
)
def test_undecodable_answer_fails_negotiation(transport_factory, token, error) -> None:
    async def scenario():
        negotiator = _negotiator(transport_factory())
        await negotiator.create_offer()
        with pytest.raises(error):
            await negotiator.accept_answer(token)
        return negotiator

    assert asyncio.run(scenario()).state is NegotiationState.FAILED


def test_transport_failure_becomes_transport_unavailable(transport_factory) -> None:
    negotiator = _negotiator(transport_factory(fail_create=True))

    with pytest.raises(TransportUnavailable):
        asyncio.run(negotiator.create_offer())

    assert negotiator.state is NegotiationState.FAILED


def test_local_description_with_wrong_role(transport_factory) -> None:
    negotiator = _negotiator(transport_factory(wrong_local_role=True))

    with pytest.raises(TransportUnavailable):
        asyncio.run(negotiator.create_offer())

    assert negotiator.state is NegotiationState.FAILED


def test_gathering_timeout(transport_factory) -> None:
    negotiator = _negotiator(transport_factory(gather_delay=None), gather_timeout=0.05)

    with pytest.raises(NegotiationTimeout):
        asyncio.run(negotiator.create_offer())

    assert negotiator.state is NegotiationState.FAILED


def test_connect_timeout_when_channel_never_opens(transport_factory) -> None:
    async def scenario():
        initiator = _negotiator(transport_factory())
        responder = _negotiator(transport_factory(connect=False), connect_timeout=0.05)
        offer = await initiator.create_offer()
        await responder.accept_offer(offer.token)
        with pytest.raises(NegotiationTimeout):
            await responder.wait_connected()
        return responder

    assert asyncio.run(scenario()).state is NegotiationState.FAILED


def test_cancelled_gathering_marks_failed(transport_factory) -> None:
    negotiator = _negotiator(transport_factory(gather_delay=None), gather_timeout=None)

    async def scenario():
        task = asyncio.create_task(negotiator.create_offer())
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    assert negotiator.state is NegotiationState.FAILED


def test_compressed_tokens_and_multi_part_rendering(transport_factory) -> None:
    async def scenario():
        initiator = _negotiator(
            transport_factory(), codec=EnvelopeCodec(compress=True), max_part_size=20
        )
        responder = _negotiator(transport_factory())
        offer = await initiator.create_offer()
        parts = initiator.render(offer)
        assert len(parts) > 1
        result = None
        for part in reversed(parts):
            result = responder.feed(part)
        assert result == offer.token
        await responder.accept_offer(result)
        return responder

    responder = asyncio.run(scenario())

    assert responder.remote_descriptor.payload.startswith("v=0 fake-offer")


def test_close_and_reset(transport_factory) -> None:
    transports = []

    def factory():
        transport = transport_factory()
        transports.append(transport)
        return transport

    async def scenario():
        negotiator = Negotiator(factory)
        await negotiator.create_offer()
        await negotiator.close()
        assert negotiator.state is NegotiationState.CLOSED
        await negotiator.reset()
        assert negotiator.state is NegotiationState.IDLE
        assert negotiator.local_descriptor is None
        await negotiator.create_offer()
        return negotiator

    negotiator = asyncio.run(scenario())

    assert len(transports) == 2
    assert transports[0].closed
    assert negotiator.state is NegotiationState.OFFER_READY


def test_context_manager_closes_transport(transport_factory) -> None:
    transport = transport_factory()

    async def scenario():
        async with _negotiator(transport) as negotiator:
            await negotiator.create_offer()
        return negotiator

    negotiator = asyncio.run(scenario())

    assert transport.closed
    assert negotiator.channel is None
    assert negotiator.state is NegotiationState.CLOSED


def test_descriptor_fields_are_exposed(transport_factory) -> None:
    negotiator = _negotiator(transport_factory())
    offer = asyncio.run(negotiator.create_offer())

    assert negotiator.local_descriptor == HandshakeDescriptor(
        Role.OFFER, EnvelopeCodec().unwrap(offer).payload
    )
