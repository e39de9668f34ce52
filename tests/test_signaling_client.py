import asyncio
from unittest.mock import AsyncMock

import pytest
from socketio import exceptions as sio_exceptions

from client.errors import SignalingUnavailable
from client.signaling_client import SignalingClient
from shared.protocol import SignalEvent

from fakes import RELAY_URL, FakeSocketIO


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.mark.anyio("asyncio")
async def test_events_are_handled_one_at_a_time_in_arrival_order():
    sio = FakeSocketIO(sid="A")
    client = SignalingClient(RELAY_URL, sio=sio)
    seen = []
    active = []

    async def on_candidate(payload):
        active.append(payload)
        assert len(active) == 1
        await asyncio.sleep(0)
        seen.append(payload["n"])
        active.remove(payload)

    client.on(SignalEvent.ICE_CANDIDATE, on_candidate)
    await client.connect()
    for n in range(5):
        await sio.deliver("ice-candidate", {"n": n})
    await client.wait_idle()

    assert seen == [0, 1, 2, 3, 4]
    await client.close()


@pytest.mark.anyio("asyncio")
async def test_only_one_handler_per_event():
    client = SignalingClient(RELAY_URL, sio=FakeSocketIO())
    client.on("offer", AsyncMock())

    with pytest.raises(ValueError):
        client.on(SignalEvent.OFFER, AsyncMock())
    with pytest.raises(ValueError):
        client.on(SignalEvent.JOIN_ROOM, AsyncMock())

    client.off(SignalEvent.OFFER)
    client.on(SignalEvent.OFFER, AsyncMock())


@pytest.mark.anyio("asyncio")
async def test_failing_handler_does_not_stop_dispatch():
    sio = FakeSocketIO()
    client = SignalingClient(RELAY_URL, sio=sio)
    answers = AsyncMock()
    client.on(SignalEvent.OFFER, AsyncMock(side_effect=RuntimeError("boom")))
    client.on(SignalEvent.ANSWER, answers)
    await client.connect()

    await sio.deliver("offer", {"caller": "B"})
    await sio.deliver("answer", {"target": "A"})
    await client.wait_idle()

    answers.assert_awaited_once_with({"target": "A"})
    await client.close()


@pytest.mark.anyio("asyncio")
async def test_call_ended_without_payload_reaches_handler():
    sio = FakeSocketIO()
    client = SignalingClient(RELAY_URL, sio=sio)
    ended = AsyncMock()
    client.on(SignalEvent.CALL_ENDED, ended)
    await client.connect()

    await sio.deliver("call-ended")
    await client.wait_idle()

    ended.assert_awaited_once_with(None)
    await client.close()


@pytest.mark.anyio("asyncio")
async def test_emit_requires_connection():
    sio = FakeSocketIO()
    client = SignalingClient(RELAY_URL, sio=sio)

    with pytest.raises(SignalingUnavailable):
        await client.emit(SignalEvent.JOIN_ROOM, "R1")
    assert sio.emitted == []

    await client.connect()
    await client.emit(SignalEvent.JOIN_ROOM, "R1")
    assert sio.emitted == [("join-room", "R1")]
    assert client.self_id == "A"
    await client.close()


@pytest.mark.anyio("asyncio")
async def test_transport_errors_surface_as_signaling_unavailable():
    sio = FakeSocketIO()
    client = SignalingClient(RELAY_URL, sio=sio)
    await client.connect()
    sio.emit = AsyncMock(side_effect=sio_exceptions.BadNamespaceError("/ is not a connected namespace."))

    with pytest.raises(SignalingUnavailable):
        await client.emit(SignalEvent.OFFER, {"target": "B"})
    await client.close()


@pytest.mark.anyio("asyncio")
async def test_unreachable_relay_raises_signaling_unavailable():
    sio = FakeSocketIO()
    sio.fail_connect = True
    client = SignalingClient(RELAY_URL, sio=sio)

    with pytest.raises(SignalingUnavailable):
        await client.connect()
    assert not client.connected
    assert client.self_id is None


@pytest.mark.anyio("asyncio")
async def test_lost_connection_is_reported_once_unless_closing():
    sio = FakeSocketIO()
    lost = AsyncMock()
    client = SignalingClient(RELAY_URL, sio=sio, on_disconnect=lost)
    await client.connect()

    await sio.drop("transport close")
    lost.assert_awaited_once_with("transport close")

    await client.connect()
    await client.close()
    await sio.deliver("disconnect", "io client disconnect")
    assert lost.await_count == 1
    assert not sio.connected
