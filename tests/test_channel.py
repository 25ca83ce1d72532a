import asyncio

import pytest

from blocksync.channel import Channel, ChannelClosed


@pytest.mark.asyncio
async def test_fifo_order():
    ch = Channel(3)
    for item in ("a", "b", "c"):
        await ch.send(item)
    assert len(ch) == 3
    assert [await ch.receive() for _ in range(3)] == ["a", "b", "c"]
    assert len(ch) == 0


@pytest.mark.asyncio
async def test_receive_after_close_drains_then_raises():
    ch = Channel(2)
    await ch.send(1)
    ch.close()
    assert ch.closed
    assert await ch.receive() == 1
    with pytest.raises(ChannelClosed):
        await ch.receive()


@pytest.mark.asyncio
async def test_send_after_close_raises():
    ch = Channel(2)
    ch.close()
    with pytest.raises(ChannelClosed):
        await ch.send("x")


@pytest.mark.asyncio
async def test_async_iteration_collects_everything():
    ch = Channel(2)

    async def produce():
        for i in range(10):
            await ch.send(i)
        ch.close()

    producer = asyncio.create_task(produce())
    received = [item async for item in ch]
    await producer
    assert received == list(range(10))


@pytest.mark.asyncio
async def test_send_blocks_when_full():
    ch = Channel(1)
    await ch.send("first")
    task = asyncio.create_task(ch.send("second"))
    await asyncio.sleep(0.01)
    assert not task.done()
    assert await ch.receive() == "first"
    await asyncio.wait_for(task, 1)
    assert await ch.receive() == "second"


@pytest.mark.asyncio
async def test_close_wakes_pending_receiver():
    ch = Channel(1)
    task = asyncio.create_task(ch.receive())
    await asyncio.sleep(0)
    assert not task.done()
    ch.close()
    with pytest.raises(ChannelClosed):
        await task
    assert ch.closed
    assert len(ch) == 0


@pytest.mark.asyncio
async def test_close_wakes_pending_sender():
    ch = Channel(1)
    await ch.send(1)
    task = asyncio.create_task(ch.send(2))
    await asyncio.sleep(0)
    ch.close()
    with pytest.raises(ChannelClosed):
        await task
    assert await ch.receive() == 1


@pytest.mark.asyncio
async def test_cancelled_receive_does_not_lose_items():
    ch = Channel(1)
    with pytest.raises(TimeoutError):
        await asyncio.wait_for(ch.receive(), 0.01)
    await ch.send("kept")
    assert await asyncio.wait_for(ch.receive(), 1) == "kept"


@pytest.mark.asyncio
async def test_zero_capacity_holds_one_item():
    ch = Channel(0)
    await asyncio.wait_for(ch.send("only"), 1)
    assert len(ch) == 1
    assert await ch.receive() == "only"


def test_negative_capacity_rejected():
    with pytest.raises(ValueError):
        Channel(-1)