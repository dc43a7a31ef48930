# docembed/queue.py
"""
Job queue collaborator: enqueue / dequeue / ack / nack.

The pipeline is written against ``JobQueue`` only. ``RedisJobQueue`` is the
durable transport used by deployed workers; ``InMemoryJobQueue`` serves tests
and single-process runs.
"""
import asyncio
import heapq
import itertools
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Dict, Optional

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


@dataclass
class QueuedJob:
    job_id: str
    payload: dict
    attempt: int = 1  # 1-based delivery count


def new_job_id() -> str:
    return uuid.uuid4().hex


class JobQueue(ABC):
    @abstractmethod
    async def enqueue(self, payload: dict, delay: float = 0.0, job_id: Optional[str] = None) -> str:
        """Persist ``payload`` and make it deliverable after ``delay`` seconds. Returns the job id."""

    @abstractmethod
    async def dequeue(self, timeout: Optional[float] = None) -> Optional[QueuedJob]:
        """Next deliverable job, or None once ``timeout`` seconds pass without one."""

    @abstractmethod
    async def ack(self, job_id: str) -> None:
        """Job finished (successfully or terminally); forget it."""

    @abstractmethod
    async def nack(self, job_id: str, delay: float = 0.0) -> None:
        """Return a delivered job to the queue for another attempt after ``delay`` seconds."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class InMemoryJobQueue(JobQueue):
    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._ready = deque()
        self._delayed = []  # heap of (due, seq, job_id)
        self._seq = itertools.count()
        self._payloads: Dict[str, dict] = {}
        self._attempts: Dict[str, int] = {}
        self._in_flight = set()
        self._wakeup = asyncio.Event()

    def __len__(self):
        return len(self._ready) + len(self._delayed)

    @property
    def in_flight(self):
        return frozenset(self._in_flight)

    def _schedule(self, job_id, delay):
        if delay and delay > 0:
            heapq.heappush(self._delayed, (self._clock() + delay, next(self._seq), job_id))
        else:
            self._ready.append(job_id)
        self._wakeup.set()

    def _promote_due(self):
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            self._ready.append(job_id)

    async def enqueue(self, payload, delay=0.0, job_id=None):
        job_id = job_id or new_job_id()
        self._payloads[job_id] = dict(payload)
        self._attempts.setdefault(job_id, 0)
        self._schedule(job_id, delay)
        return job_id

    async def dequeue(self, timeout=None):
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            self._promote_due()
            if self._ready:
                job_id = self._ready.popleft()
                self._attempts[job_id] += 1
                self._in_flight.add(job_id)
                return QueuedJob(job_id, dict(self._payloads[job_id]), self._attempts[job_id])
            now = self._clock()
            waits = []
            if deadline is not None:
                if now >= deadline:
                    return None
                waits.append(deadline - now)
            if self._delayed:
                waits.append(max(0.0, self._delayed[0][0] - now))
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=min(waits) if waits else None)
            except asyncio.TimeoutError:
                pass

    async def ack(self, job_id):
        self._in_flight.discard(job_id)
        self._payloads.pop(job_id, None)
        self._attempts.pop(job_id, None)

    async def nack(self, job_id, delay=0.0):
        if job_id not in self._in_flight:
            logger.warning("nack for job %s which is not in flight", job_id)
            return
        self._in_flight.discard(job_id)
        self._schedule(job_id, delay)


class RedisJobQueue(JobQueue):
    """
    Reliable list queue:
      <name>:ready       LIST  job ids waiting for a worker
      <name>:processing  LIST  job ids delivered but not acked
      <name>:delayed     ZSET  job ids scored by due time (retries / backoff)
      <name>:job:<id>    HASH  payload (json) + attempts
    """

    def __init__(self, client: aioredis.Redis, name: str = "embedding_jobs", poll_interval: float = 1.0):
        self.r = client
        self.name = name
        self.poll_interval = poll_interval

    @classmethod
    def from_url(cls, url: str, name: str = "embedding_jobs") -> "RedisJobQueue":
        return cls(aioredis.from_url(url, decode_responses=True), name=name)

    @property
    def _ready(self):
        return f"{self.name}:ready"

    @property
    def _processing(self):
        return f"{self.name}:processing"

    @property
    def _delayed(self):
        return f"{self.name}:delayed"

    def _job_key(self, job_id):
        return f"{self.name}:job:{job_id}"

    async def enqueue(self, payload, delay=0.0, job_id=None):
        job_id = job_id or new_job_id()
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job_id), mapping={"payload": json.dumps(payload), "attempts": 0})
            if delay and delay > 0:
                pipe.zadd(self._delayed, {job_id: time.time() + delay})
            else:
                pipe.lpush(self._ready, job_id)
            await pipe.execute()
        return job_id

    async def _promote_due(self):
        due = await self.r.zrangebyscore(self._delayed, 0, time.time())
        for job_id in due:
            # zrem wins exactly once across competing workers
            if await self.r.zrem(self._delayed, job_id):
                await self.r.lpush(self._ready, job_id)

    async def dequeue(self, timeout=None):
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            await self._promote_due()
            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)
            job_id = await self.r.blmove(self._ready, self._processing, wait, src="RIGHT", dest="LEFT")
            if job_id is None:
                continue
            attempts = await self.r.hincrby(self._job_key(job_id), "attempts", 1)
            raw = await self.r.hget(self._job_key(job_id), "payload")
            if raw is None:
                logger.warning("Job %s has no payload; dropping", job_id)
                await self.r.lrem(self._processing, 0, job_id)
                continue
            return QueuedJob(job_id, json.loads(raw), int(attempts))

    async def ack(self, job_id):
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.lrem(self._processing, 0, job_id)
            pipe.delete(self._job_key(job_id))
            await pipe.execute()

    async def nack(self, job_id, delay=0.0):
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.lrem(self._processing, 0, job_id)
            if delay and delay > 0:
                pipe.zadd(self._delayed, {job_id: time.time() + delay})
            else:
                pipe.lpush(self._ready, job_id)
            await pipe.execute()

    async def requeue_unacked(self) -> int:
        """Move everything left in the processing list back to ready (after a crash, before workers start)."""
        moved = 0
        while await self.r.lmove(self._processing, self._ready, src="RIGHT", dest="LEFT") is not None:
            moved += 1
        if moved:
            logger.warning("Re-queued %d unacknowledged jobs from %s", moved, self._processing)
        return moved

    async def ping(self):
        return bool(await self.r.ping())

    async def close(self):
        await self.r.aclose()
