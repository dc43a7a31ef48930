"""Unit tests for the job queue implementations."""

import asyncio
import os

import pytest

from docembed.queue import InMemoryJobQueue, RedisJobQueue


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_fifo_delivery_and_ack() -> None:
    async def scenario():
        queue = InMemoryJobQueue()
        first = await queue.enqueue({"n": 1})
        second = await queue.enqueue({"n": 2})

        a = await queue.dequeue(timeout=0)
        b = await queue.dequeue(timeout=0)
        assert (a.job_id, a.payload, a.attempt) == (first, {"n": 1}, 1)
        assert b.job_id == second
        assert queue.in_flight == {first, second}

        await queue.ack(first)
        assert queue.in_flight == {second}
        assert await queue.dequeue(timeout=0) is None

    asyncio.run(scenario())


def test_nack_with_delay_redelivers_when_due() -> None:
    clock = FakeClock()

    async def scenario():
        queue = InMemoryJobQueue(clock=clock)
        job_id = await queue.enqueue({"n": 1})
        await queue.dequeue(timeout=0)
        await queue.nack(job_id, delay=30)

        assert await queue.dequeue(timeout=0) is None
        clock.now += 31
        again = await queue.dequeue(timeout=0)
        assert again.job_id == job_id
        assert again.attempt == 2

    asyncio.run(scenario())


def test_blocking_dequeue_wakes_on_enqueue() -> None:
    async def scenario():
        queue = InMemoryJobQueue()
        waiter = asyncio.create_task(queue.dequeue(timeout=5))
        await asyncio.sleep(0)
        await queue.enqueue({"n": 1})
        got = await asyncio.wait_for(waiter, timeout=1)
        assert got.payload == {"n": 1}

    asyncio.run(scenario())


def test_dequeue_times_out() -> None:
    async def scenario():
        queue = InMemoryJobQueue()
        assert await queue.dequeue(timeout=0.01) is None

    asyncio.run(scenario())


def test_explicit_job_id_is_kept() -> None:
    async def scenario():
        queue = InMemoryJobQueue()
        assert await queue.enqueue({}, job_id="abc") == "abc"
        assert (await queue.dequeue(timeout=0)).job_id == "abc"

    asyncio.run(scenario())


@pytest.mark.integration
@pytest.mark.skipif(not os.environ.get("DOCEMBED_TEST_REDIS_URL"), reason="DOCEMBED_TEST_REDIS_URL not set")
def test_redis_queue_round_trip() -> None:
    async def scenario():
        queue = RedisJobQueue.from_url(os.environ["DOCEMBED_TEST_REDIS_URL"], name=f"test-{os.getpid()}")
        try:
            job_id = await queue.enqueue({"n": 1})
            got = await queue.dequeue(timeout=2)
            assert (got.job_id, got.payload, got.attempt) == (job_id, {"n": 1}, 1)

            await queue.nack(job_id, delay=0)
            again = await queue.dequeue(timeout=2)
            assert again.attempt == 2

            await queue.ack(job_id)
            assert await queue.dequeue(timeout=0.5) is None
            assert await queue.ping() is True
        finally:
            await queue.r.delete(queue._ready, queue._processing, queue._delayed)
            await queue.close()

    asyncio.run(scenario())
