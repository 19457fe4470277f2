# api/services/job_queue.py
"""
Redis-backed work queue with explicit acknowledgement.

Messages are leased, not removed, on receive: each receive hands out a fresh
receipt handle and hides the message for the visibility timeout. Only
``delete(receipt_handle)`` removes it for good. A lease that runs out is
returned to the ready list on the next receive by any consumer, which gives
at-least-once delivery across competing worker processes.

Keys, for a queue named ``q``:
    q:ready     list, LPUSH on send, RPOP on receive (FIFO)
    q:inflight  sorted set, receipt handle -> visibility deadline (epoch s)
    q:leases    hash, receipt handle -> message envelope (JSON)

Moving a message between the ready list and the lease keys runs as a single
Lua script, so a client dying mid-move cannot lose it.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from redis.asyncio import Redis

from api.core.config import settings
from api.core.logging import get_structlog_logger

logger = get_structlog_logger()

# KEYS: ready, leases, inflight. ARGV: handle suffix, visibility deadline.
# Returns {receipt_handle, leased envelope} or nil when the list is empty.
LEASE_SCRIPT = """
local raw = redis.call('RPOP', KEYS[1])
if not raw then
    return false
end
local envelope = cjson.decode(raw)
envelope['receive_count'] = (envelope['receive_count'] or 0) + 1
local handle = envelope['message_id'] .. ':' .. ARGV[1]
local leased = cjson.encode(envelope)
redis.call('HSET', KEYS[2], handle, leased)
redis.call('ZADD', KEYS[3], ARGV[2], handle)
return {handle, leased}
"""

# KEYS: inflight, leases, ready. ARGV: now (epoch s).
# Returns the envelopes pushed back onto the ready list.
RESTORE_SCRIPT = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[1], 0, ARGV[1])
local restored = {}
for _, handle in ipairs(expired) do
    local raw = redis.call('HGET', KEYS[2], handle)
    redis.call('ZREM', KEYS[1], handle)
    redis.call('HDEL', KEYS[2], handle)
    if raw then
        redis.call('RPUSH', KEYS[3], raw)
        table.insert(restored, raw)
    end
end
return restored
"""

@dataclass(frozen=True)
class QueueMessage:
    message_id: str
    body: str
    receipt_handle: str
    attributes: Dict[str, str] = field(default_factory=dict)
    receive_count: int = 1


class JobQueue:
    """Queue with visibility-timeout leases, modelled on SQS semantics."""

    def __init__(
        self,
        redis_client: Redis,
        queue_name: str = None,
        visibility_timeout: int = None,
        poll_interval: float = None,
    ):
        self.redis = redis_client
        self.queue_name = queue_name or settings.csv_import_queue_name
        self.visibility_timeout = (
            visibility_timeout
            if visibility_timeout is not None
            else settings.queue_visibility_timeout_seconds
        )
        self.poll_interval = poll_interval or settings.queue_poll_interval_seconds

        self.ready_key = f"{self.queue_name}:ready"
        self.inflight_key = f"{self.queue_name}:inflight"
        self.leases_key = f"{self.queue_name}:leases"

    async def send(self, body: str, attributes: Optional[Dict[str, str]] = None) -> str:
        """Enqueue a message body; returns the message id."""
        message_id = uuid4().hex
        envelope = {
            "message_id": message_id,
            "body": body,
            "attributes": attributes or {},
            "sent_at": datetime.utcnow().isoformat(),
            "receive_count": 0,
        }

        await self.redis.lpush(self.ready_key, json.dumps(envelope))

        logger.info(
            "job_queue.sent",
            queue=self.queue_name,
            message_id=message_id,
        )
        return message_id

    async def receive(
        self,
        max_messages: int = 1,
        wait_seconds: int = None,
    ) -> List[QueueMessage]:
        """
        Lease up to ``max_messages`` messages.

        Waits at most ``wait_seconds`` for the first one (long polling, checked
        every ``poll_interval``); returns an empty list when nothing arrived in
        time.
        """
        if wait_seconds is None:
            wait_seconds = settings.queue_wait_seconds

        deadline = time.monotonic() + wait_seconds
        await self.restore_expired()
        message = await self._lease()

        while message is None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return []
            await asyncio.sleep(min(self.poll_interval, remaining))
            await self.restore_expired()
            message = await self._lease()

        messages: List[QueueMessage] = [message]
        while len(messages) < max_messages:
            message = await self._lease()
            if message is None:
                break
            messages.append(message)

        return messages

    async def delete(self, receipt_handle: str) -> bool:
        """Acknowledge a message. Returns False when the lease no longer exists."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.inflight_key, receipt_handle)
            pipe.hdel(self.leases_key, receipt_handle)
            removed, _ = await pipe.execute()

        if not removed:
            logger.warning(
                "job_queue.delete_stale_handle",
                queue=self.queue_name,
                receipt_handle=receipt_handle,
            )
        return bool(removed)

    async def restore_expired(self) -> int:
        """Return messages whose lease ran out to the front of the ready list."""
        restored = await self.redis.eval(
            RESTORE_SCRIPT,
            3,
            self.inflight_key,
            self.leases_key,
            self.ready_key,
            time.time(),
        )

        for raw in restored or []:
            logger.warning(
                "job_queue.redelivered",
                queue=self.queue_name,
                message_id=json.loads(raw).get("message_id"),
            )

        return len(restored or [])

    async def get_queue_stats(self) -> Dict[str, Any]:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.llen(self.ready_key)
            pipe.zcard(self.inflight_key)
            ready, in_flight = await pipe.execute()

        return {
            "queue": self.queue_name,
            "ready": ready or 0,
            "in_flight": in_flight or 0,
        }

    async def _lease(self) -> Optional[QueueMessage]:
        """Pop the oldest ready message and lease it in one step."""
        leased = await self.redis.eval(
            LEASE_SCRIPT,
            3,
            self.ready_key,
            self.leases_key,
            self.inflight_key,
            uuid4().hex,
            time.time() + self.visibility_timeout,
        )
        if not leased:
            return None

        receipt_handle, raw = leased
        envelope = json.loads(raw)

        return QueueMessage(
            message_id=envelope["message_id"],
            body=envelope["body"],
            receipt_handle=receipt_handle,
            attributes=envelope.get("attributes") or {},
            receive_count=envelope["receive_count"],
        )


# Global job queue instance
job_queue: Optional[JobQueue] = None


def init_job_queue(redis_client: Redis, **kwargs) -> JobQueue:
    """Initialize global job queue instance."""
    global job_queue

    if job_queue is None:
        job_queue = JobQueue(redis_client, **kwargs)

    return job_queue


async def get_job_queue() -> JobQueue:
    """Get global job queue instance."""
    global job_queue

    if job_queue is None:
        from api.services.redis import get_redis_client
        redis_client = await get_redis_client()
        job_queue = JobQueue(redis_client)

    return job_queue
