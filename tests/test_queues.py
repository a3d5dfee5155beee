import asyncio

import msgspec
import pytest

from meshlink.state.queues import BoundedByteDeque, FrameQueue, FrameQueueClosed


def test_bounded_deque_drops_oldest() -> None:
    frames = BoundedByteDeque(max_items=2)

    frames.append(b"aa")
    frames.append(b"bbb")
    event = frames.append(b"c")

    assert event.accepted
    assert event.dropped_chunks == 1
    assert event.dropped_bytes == 2
    assert list(frames) == [b"bbb", b"c"]
    assert frames.bytes_used == 4


def test_frame_queue_rejects_non_positive_limit() -> None:
    with pytest.raises(msgspec.ValidationError):
        FrameQueue(0)


@pytest.mark.asyncio
async def test_frame_queue_preserves_order_and_overflows_oldest() -> None:
    queue = FrameQueue(3)
    for index in range(5):
        queue.put_nowait(bytes([index]))

    assert len(queue) == 3
    assert [await queue.get() for _ in range(3)] == [b"\x02", b"\x03", b"\x04"]


@pytest.mark.asyncio
async def test_frame_queue_get_waits_for_producer() -> None:
    queue = FrameQueue(4)
    waiter = asyncio.create_task(queue.get())
    await asyncio.sleep(0)
    assert not waiter.done()

    queue.put_nowait(b"late")

    assert await asyncio.wait_for(waiter, 1.0) == b"late"


@pytest.mark.asyncio
async def test_frame_queue_close_wakes_consumer_with_reason() -> None:
    queue = FrameQueue(4)
    waiter = asyncio.create_task(queue.get())
    await asyncio.sleep(0)

    reason = ConnectionError("device vanished")
    queue.close(reason)

    with pytest.raises(FrameQueueClosed) as excinfo:
        await asyncio.wait_for(waiter, 1.0)
    assert excinfo.value.__cause__ is reason
    assert queue.error is reason


@pytest.mark.asyncio
async def test_frame_queue_ignores_puts_after_close() -> None:
    queue = FrameQueue(4)
    queue.put_nowait(b"pending")
    queue.close()

    assert not queue.put_nowait(b"ignored").accepted
    assert len(queue) == 0
    with pytest.raises(FrameQueueClosed):
        await queue.get()
