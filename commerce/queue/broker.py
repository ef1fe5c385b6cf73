"""
queue/broker.py
---------------
Durable job queue on Redis Streams.

Each topic is one stream (`queue:<topic>`) read through one consumer group,
so a job is handed to exactly one worker at a time. Delivery is
at-least-once:

  - an entry is XACK'ed and XDEL'ed only after its handler returned;
  - a handler that raises or exceeds QUEUE_HANDLER_TIMEOUT gets the job
    re-queued as a fresh entry with `attempts` incremented, after a
    backoff delay (QUEUE_RETRY_DELAY, doubling per attempt);
  - after QUEUE_MAX_DELIVERIES attempts the job moves to `queue:<topic>:dead`;
  - entries a crashed worker read but never acknowledged are still pending
    for that consumer name and are processed first when it restarts.

Handlers must therefore be idempotent.

Connectivity: publish() retries with bounded exponential backoff and then
raises BrokerUnavailable to its caller; consume() retries its setup
forever at QUEUE_CONSUME_RETRY_DELAY, since consumers are off the request
path and the broker is expected to come back.
"""

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from commerce.core.config import Settings, settings
from commerce.core.exceptions import BrokerUnavailable
from commerce.core.logging import bind_log_context, clear_log_context, get_logger
from commerce.core.redis import get_redis
from commerce.core.retry import RetryPolicy

logger = get_logger(__name__)

STREAM_PREFIX = "queue:"
DEAD_LETTER_SUFFIX = ":dead"

_CONNECTION_ERRORS = (RedisError, OSError)


class Topic(str, Enum):
    DATABASE_CREATION = "database-creation"
    ORDER_PROCESSING = "order-processing"
    ORDER_COMPLETED = "order-completed"


def stream_key(topic: Topic) -> str:
    return f"{STREAM_PREFIX}{Topic(topic).value}"


def dead_letter_key(topic: Topic) -> str:
    return f"{stream_key(topic)}{DEAD_LETTER_SUFFIX}"


Handler = Callable[[Dict[str, Any]], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class QueueMessage:
    entry_id: str
    topic: Topic
    payload: Dict[str, Any]
    attempts: int


class JobQueue:

    def __init__(
        self,
        redis: aioredis.Redis,
        group: str = "commerce-workers",
        consumer: str = "worker-1",
        handler_timeout: float = 300.0,
        max_deliveries: int = 5,
        block_ms: Optional[int] = 5000,
        publish_policy: Optional[RetryPolicy] = None,
        consume_policy: Optional[RetryPolicy] = None,
        redelivery_policy: Optional[RetryPolicy] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._redis = redis
        self.group = group
        self.consumer = consumer
        self.handler_timeout = handler_timeout
        self.max_deliveries = max_deliveries
        self.block_ms = block_ms
        self._publish_policy = publish_policy or RetryPolicy(max_attempts=10, backoff_base=1.0)
        self._consume_policy = consume_policy or RetryPolicy(
            max_attempts=None, backoff_base=5.0, backoff_multiplier=1.0, max_backoff=5.0
        )
        self._redelivery_policy = redelivery_policy or RetryPolicy(
            max_attempts=None, backoff_base=1.0
        )
        self._sleep = sleep

    @classmethod
    def from_settings(cls, redis: aioredis.Redis, settings: Settings) -> "JobQueue":
        return cls(
            redis,
            group=settings.QUEUE_CONSUMER_GROUP,
            consumer=settings.QUEUE_CONSUMER_NAME,
            handler_timeout=settings.QUEUE_HANDLER_TIMEOUT,
            max_deliveries=settings.QUEUE_MAX_DELIVERIES,
            block_ms=settings.QUEUE_BLOCK_MS,
            publish_policy=RetryPolicy(
                max_attempts=settings.QUEUE_PUBLISH_RETRIES,
                backoff_base=settings.QUEUE_RETRY_DELAY,
            ),
            consume_policy=RetryPolicy(
                max_attempts=None,
                backoff_base=settings.QUEUE_CONSUME_RETRY_DELAY,
                backoff_multiplier=1.0,
                max_backoff=settings.QUEUE_CONSUME_RETRY_DELAY,
            ),
            redelivery_policy=RetryPolicy(
                max_attempts=None,
                backoff_base=settings.QUEUE_RETRY_DELAY,
            ),
        )

    # ── Connectivity ──────────────────────────────────────────────────────────

    async def wait_for_connection(self, policy: Optional[RetryPolicy] = None) -> None:
        """PING until the broker answers. Raises BrokerUnavailable when out of retries."""
        policy = policy or self._publish_policy
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._redis.ping()
                return
            except _CONNECTION_ERRORS as exc:
                if not policy.should_retry(attempt):
                    raise BrokerUnavailable(
                        f"Queue broker unreachable after {attempt} attempts: {exc}"
                    ) from exc
                delay = policy.next_delay(attempt)
                logger.warning(
                    "Queue broker not reachable, retrying",
                    attempt=attempt,
                    delay=delay,
                    error=str(exc),
                )
                await self._sleep(delay)

    async def ensure_group(self, topic: Topic) -> None:
        try:
            await self._redis.xgroup_create(stream_key(topic), self.group, id="0", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    # ── Publishing ────────────────────────────────────────────────────────────

    async def publish(self, topic: Topic, payload: Dict[str, Any], attempts: int = 0) -> str:
        """Append a job to the topic's stream. Returns the stream entry id."""
        fields = {
            "payload": json.dumps(payload, default=str),
            "attempts": str(attempts),
        }
        attempt = 0
        while True:
            attempt += 1
            try:
                entry_id = await self._redis.xadd(stream_key(topic), fields)
                logger.info("Job published", topic=Topic(topic).value, entry_id=entry_id)
                return entry_id
            except _CONNECTION_ERRORS as exc:
                if not self._publish_policy.should_retry(attempt):
                    logger.error(
                        "Job publish failed",
                        topic=Topic(topic).value,
                        attempts=attempt,
                        error=str(exc),
                    )
                    raise BrokerUnavailable(
                        f"Could not publish to '{Topic(topic).value}': {exc}"
                    ) from exc
                delay = self._publish_policy.next_delay(attempt)
                logger.warning(
                    "Job publish failed, retrying",
                    topic=Topic(topic).value,
                    attempt=attempt,
                    delay=delay,
                    error=str(exc),
                )
                await self._sleep(delay)

    # ── Consuming ─────────────────────────────────────────────────────────────

    async def process_batch(
        self,
        topic: Topic,
        handler: Handler,
        count: int = 10,
        block_ms: Optional[int] = None,
        pending: bool = False,
    ) -> int:
        """
        Read up to count entries and run handler on each. Returns how many
        entries were read. pending=True re-reads entries this consumer
        received earlier but never acknowledged.
        """
        response = await self._redis.xreadgroup(
            self.group,
            self.consumer,
            {stream_key(topic): "0" if pending else ">"},
            count=count,
            block=None if pending else block_ms,
        )
        entries = _stream_entries(response)
        for entry_id, fields in entries:
            await self._handle_entry(topic, entry_id, fields, handler)
        return len(entries)

    async def recover_pending(self, topic: Topic, handler: Handler) -> int:
        recovered = 0
        while True:
            handled = await self.process_batch(topic, handler, pending=True)
            if handled == 0:
                break
            recovered += handled
        if recovered:
            logger.info("Recovered pending jobs", topic=Topic(topic).value, count=recovered)
        return recovered

    async def consume(
        self,
        topic: Topic,
        handler: Handler,
        stop: Optional[asyncio.Event] = None,
    ) -> None:
        """Run handler for every job on topic until stop is set."""
        stop = stop or asyncio.Event()
        await self._setup_consumer(topic, handler)
        logger.info("Consumer started", topic=Topic(topic).value, consumer=self.consumer)

        while not stop.is_set():
            try:
                await self.process_batch(topic, handler, block_ms=self.block_ms)
            except _CONNECTION_ERRORS as exc:
                logger.error(
                    "Consumer lost broker connection",
                    topic=Topic(topic).value,
                    error=str(exc),
                )
                await self._sleep(self._consume_policy.next_delay(1))
                await self._setup_consumer(topic, handler)

        logger.info("Consumer stopped", topic=Topic(topic).value)

    async def _setup_consumer(self, topic: Topic, handler: Handler) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                await self.wait_for_connection(RetryPolicy(max_attempts=1))
                await self.ensure_group(topic)
                await self.recover_pending(topic, handler)
                return
            except (BrokerUnavailable,) + _CONNECTION_ERRORS as exc:
                delay = self._consume_policy.next_delay(attempt)
                logger.warning(
                    "Consumer setup failed, retrying",
                    topic=Topic(topic).value,
                    attempt=attempt,
                    delay=delay,
                    error=str(exc),
                )
                await self._sleep(delay)

    async def _handle_entry(
        self,
        topic: Topic,
        entry_id: str,
        fields: Dict[str, str],
        handler: Handler,
    ) -> None:
        stream = stream_key(topic)
        clear_log_context()
        bind_log_context(topic=Topic(topic).value, entry_id=entry_id)
        if not fields:
            # Pending entry whose body was already deleted
            await self._ack(stream, entry_id)
            return

        try:
            message = QueueMessage(
                entry_id=entry_id,
                topic=Topic(topic),
                payload=json.loads(fields["payload"]),
                attempts=int(fields.get("attempts", 0)),
            )
        except (KeyError, ValueError) as exc:
            logger.error("Malformed job entry", topic=Topic(topic).value, entry_id=entry_id)
            await self._redis.xadd(dead_letter_key(topic), {**fields, "error": str(exc)})
            await self._ack(stream, entry_id)
            return

        try:
            await asyncio.wait_for(handler(message.payload), timeout=self.handler_timeout)
        except Exception as exc:
            await self._retry_or_bury(message, fields, exc)
        else:
            logger.info(
                "Job handled",
                topic=message.topic.value,
                entry_id=entry_id,
                attempts=message.attempts + 1,
            )
        await self._ack(stream, entry_id)

    async def _retry_or_bury(
        self,
        message: QueueMessage,
        fields: Dict[str, str],
        exc: BaseException,
    ) -> None:
        attempts = message.attempts + 1
        reason = str(exc) or type(exc).__name__
        if attempts >= self.max_deliveries:
            logger.error(
                "Job failed permanently, moved to dead letter stream",
                topic=message.topic.value,
                entry_id=message.entry_id,
                attempts=attempts,
                error=reason,
            )
            await self._redis.xadd(
                dead_letter_key(message.topic),
                {"payload": fields["payload"], "attempts": str(attempts), "error": reason},
            )
            return

        delay = self._redelivery_policy.next_delay(attempts)
        logger.warning(
            "Job failed, re-queued",
            topic=message.topic.value,
            entry_id=message.entry_id,
            attempts=attempts,
            delay=delay,
            error=reason,
        )
        await self._sleep(delay)
        await self._redis.xadd(
            stream_key(message.topic),
            {"payload": fields["payload"], "attempts": str(attempts)},
        )

    async def _ack(self, stream: str, entry_id: str) -> None:
        await self._redis.xack(stream, self.group, entry_id)
        await self._redis.xdel(stream, entry_id)

    # ── Inspection ────────────────────────────────────────────────────────────

    async def length(self, topic: Topic) -> int:
        return await self._redis.xlen(stream_key(topic))

    async def dead_letters(self, topic: Topic) -> List[Dict[str, Any]]:
        entries = await self._redis.xrange(dead_letter_key(topic))
        return [
            {
                "payload": json.loads(fields["payload"]) if "payload" in fields else None,
                "attempts": int(fields.get("attempts", 0)),
                "error": fields.get("error"),
            }
            for _entry_id, fields in entries
        ]


def _stream_entries(response: Any) -> List[Any]:
    """Flatten an XREADGROUP reply into (id, fields) pairs."""
    if not response:
        return []
    return [entry for _stream, stream_entries in response for entry in stream_entries]


def get_job_queue() -> JobQueue:
    """FastAPI dependency: a publisher bound to the process-wide Redis client."""
    return JobQueue.from_settings(get_redis(), settings)
