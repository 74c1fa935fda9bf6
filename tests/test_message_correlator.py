import asyncio

import pytest

from message_correlator import MessageCorrelator, TIMEOUT


class Wire:

    def __init__(self):
        self.frames = []

    async def __call__(self, frame):
        self.frames.append(frame)


async def test_ids_are_sequential_strings_in_an_envelope():
    wire = Wire()
    correlator = MessageCorrelator(wire)
    first = await correlator.send({"channel": "/meta/handshake"})
    second = await correlator.send({"channel": "/meta/subscribe"}, expect_response=False)
    assert (first, second) == (0, 1)
    assert wire.frames[0] == [{"channel": "/meta/handshake", "id": "0"}]
    assert wire.frames[1][0]["id"] == "1"
    assert correlator.pending_ids == [0]
    correlator.cancel_all()


async def test_response_resolves_and_removes_pending():
    correlator = MessageCorrelator(Wire())
    request_id = await correlator.send({"channel": "x"})
    asyncio.get_running_loop().call_soon(correlator.on_response, "0", {"successful": True})
    assert await correlator.await_response(request_id) == {"successful": True}
    assert not correlator.is_pending(request_id)


async def test_response_during_dispatch_is_not_lost():
    correlator = None

    async def instant_reply(frame):
        correlator.on_response(frame[0]["id"], {"successful": True, "id": frame[0]["id"]})

    correlator = MessageCorrelator(instant_reply)
    assert await correlator.request({"channel": "x"}) == {"successful": True, "id": "0"}


async def test_timeout_resolves_with_sentinel_and_drops_late_response():
    correlator = MessageCorrelator(Wire(), timeout=0.02)
    request_id = await correlator.send({"channel": "x"})
    assert await correlator.await_response(request_id) is TIMEOUT
    assert not correlator.is_pending(request_id)
    assert correlator.on_response(request_id, {"successful": True}) is False


async def test_callback_fires_exactly_once():
    calls = []
    correlator = MessageCorrelator(Wire(), timeout=0.02)
    request_id = await correlator.send({"channel": "x"}, callback=calls.append)
    assert correlator.on_response(request_id, {"successful": True})
    await asyncio.sleep(0.05)
    assert calls == [{"successful": True}]

    await correlator.send({"channel": "y"}, callback=calls.append)
    await asyncio.sleep(0.05)
    assert calls == [{"successful": True}, None]


async def test_ids_never_reused():
    correlator = MessageCorrelator(Wire(), timeout=0.01)
    ids = [await correlator.send({"channel": "x"}) for _ in range(5)]
    await asyncio.sleep(0.03)
    ids.append(await correlator.send({"channel": "x"}))
    assert ids == sorted(set(ids))
    correlator.cancel_all()


async def test_failed_dispatch_leaves_nothing_pending():
    async def broken(frame):
        raise ConnectionError("gone")

    correlator = MessageCorrelator(broken)
    with pytest.raises(ConnectionError):
        await correlator.send({"channel": "x"})
    assert correlator.pending_ids == []
