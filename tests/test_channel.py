import asyncio
import json

import pytest
import websockets

from ayame_client.errors import ChannelOpenError
from ayame_client.net import protocol
from ayame_client.net.channel import READ_LIMIT, ChannelTransport


class Relay:
    """Scripted WebSocket peer on a random local port."""

    def __init__(self):
        self.received = []
        self.outbound: asyncio.Queue = asyncio.Queue()
        self.server = None

    async def handler(self, ws):
        async def pump():
            while True:
                item = await self.outbound.get()
                if item is None:
                    await ws.close()
                    return
                await ws.send(item)

        sender = asyncio.create_task(pump())
        try:
            async for raw in ws:
                self.received.append(raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            sender.cancel()

    @property
    def url(self) -> str:
        port = self.server.sockets[0].getsockname()[1]
        return f"ws://127.0.0.1:{port}"


@pytest.fixture
async def relay():
    r = Relay()
    async with websockets.serve(r.handler, "127.0.0.1", 0, max_size=None) as server:
        r.server = server
        yield r


async def collect(channel, frames, count=None):
    async def on_frame(raw):
        frames.append(raw)
        if count is not None and len(frames) >= count:
            return False
        return True

    await channel.receive_loop(on_frame)


async def test_send_writes_one_text_frame(relay, eventually):
    channel = await ChannelTransport.open(relay.url)
    try:
        await channel.send(protocol.PongMessage())
        await channel.send(protocol.OfferMessage(sdp="v=0"))

        await eventually(lambda: len(relay.received) == 2)
        assert relay.received[0] == '{"type":"pong"}'
        assert json.loads(relay.received[1]) == {"type": "offer", "sdp": "v=0"}
    finally:
        await channel.close()


async def test_receive_loop_delivers_frames_in_order(relay):
    channel = await ChannelTransport.open(relay.url)
    frames = []
    for i in range(3):
        relay.outbound.put_nowait(json.dumps({"type": "ping", "n": i}))

    await asyncio.wait_for(collect(channel, frames, count=3), 2)
    await channel.close()

    assert [json.loads(f)["n"] for f in frames] == [0, 1, 2]


async def test_receive_loop_ends_on_remote_close(relay):
    channel = await ChannelTransport.open(relay.url)
    frames = []
    relay.outbound.put_nowait('{"type":"bye"}')
    relay.outbound.put_nowait(None)

    await asyncio.wait_for(collect(channel, frames), 2)
    await channel.close()

    assert frames == ['{"type":"bye"}']


async def test_receive_loop_ends_on_read_timeout(relay):
    channel = await ChannelTransport.open(relay.url, read_timeout=0.1)
    frames = []

    await asyncio.wait_for(collect(channel, frames), 2)
    await channel.close()

    assert frames == []


async def test_oversized_frame_ends_the_loop(relay):
    channel = await ChannelTransport.open(relay.url)
    frames = []
    relay.outbound.put_nowait("x" * (READ_LIMIT + 1))

    await asyncio.wait_for(collect(channel, frames), 2)
    await channel.close()

    assert frames == []


async def test_close_is_idempotent_and_silences_send(relay):
    channel = await ChannelTransport.open(relay.url)

    await channel.close()
    await channel.close()
    await channel.send(protocol.PongMessage())

    assert channel.closed
    await asyncio.sleep(0.05)
    assert relay.received == []


async def test_local_close_ends_receive_loop(relay):
    channel = await ChannelTransport.open(relay.url)
    frames = []
    reader = asyncio.create_task(collect(channel, frames))
    await asyncio.sleep(0.05)

    await channel.close()

    await asyncio.wait_for(reader, 2)
    assert frames == []


async def test_open_failure():
    async with websockets.serve(lambda ws: ws.wait_closed(), "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]

    with pytest.raises(ChannelOpenError):
        await ChannelTransport.open(f"ws://127.0.0.1:{port}")
