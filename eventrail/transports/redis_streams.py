"""Low-latency stream transport on Redis Streams (redis.asyncio).

Entries carry the serialized envelope in `eventData`. Reads go through a consumer group:
a batch is acknowledged after the callback returns; entries left pending by a crashed
consumer are reclaimed once idle for `claim_idle_ms`.
"""

import asyncio
import logging
import os
import time
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from eventrail.events.envelope import encode_event
from eventrail.events.models import Event
from eventrail.transports.contract import StreamBatchCallback, StreamMessage

logger = logging.getLogger(__name__)


def _to_str(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _parse_entries(entries: Any) -> list[StreamMessage]:
    """[(id, {field: value}), ...] -> StreamMessage list. Deleted entries (no fields) are dropped."""
    messages: list[StreamMessage] = []
    for msg_id, fields in entries or []:
        if not fields:
            continue
        messages.append(
            StreamMessage(
                id=_to_str(msg_id),
                fields={_to_str(k): _to_str(v) for k, v in fields.items()},
            )
        )
    return messages


class RedisStreamTransport:
    """XADD producer and XREADGROUP consumer over one Redis connection pool."""

    def __init__(
        self,
        client: redis.Redis,
        consumer_group: str = "eventrail",
        consumer_name: str | None = None,
        batch_size: int = 100,
        block_ms: int = 5000,
        claim_idle_ms: int = 30000,
        error_backoff: float = 1.0,
        maxlen: int | None = None,
    ) -> None:
        self._redis = client
        self._group = consumer_group
        self._consumer = consumer_name or f"consumer-{os.getpid()}-{int(time.time() * 1000)}"
        self._batch_size = batch_size
        self._block_ms = block_ms
        self._claim_idle_ms = claim_idle_ms
        self._error_backoff = error_backoff
        self._maxlen = maxlen
        self._running = False

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisStreamTransport":
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    @property
    def consumer_name(self) -> str:
        return self._consumer

    async def add(self, stream_key: str, event: Event) -> str:
        """Append the serialized envelope to the stream. Returns the stream entry id."""
        fields = {
            "eventId": event.id,
            "eventData": encode_event(event).decode("utf-8"),
            "timestamp": str(int(time.time() * 1000)),
        }
        try:
            if self._maxlen:
                message_id = await self._redis.xadd(
                    stream_key, fields, maxlen=self._maxlen, approximate=True
                )
            else:
                message_id = await self._redis.xadd(stream_key, fields)
        except RedisError as e:
            logger.error("Failed to add event %s to stream %s: %s", event.id, stream_key, e)
            raise
        logger.debug("Event %s added to stream %s as %s", event.id, stream_key, message_id)
        return _to_str(message_id)

    async def ensure_group(self, stream_key: str) -> None:
        """Create the consumer group at the stream tail. An existing group is fine."""
        try:
            await self._redis.xgroup_create(stream_key, self._group, id="$", mkstream=True)
            logger.info("Consumer group %s created on %s", self._group, stream_key)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def consume(self, stream_key: str, callback: StreamBatchCallback) -> None:
        """Read batches until stop(). Loop errors are logged and retried after a backoff."""
        await self.ensure_group(stream_key)
        self._running = True
        logger.info(
            "Starting stream consumer %s (group=%s, stream=%s, batch=%d)",
            self._consumer,
            self._group,
            stream_key,
            self._batch_size,
        )
        try:
            while self._running:
                try:
                    response = await self._redis.xreadgroup(
                        self._group,
                        self._consumer,
                        {stream_key: ">"},
                        count=self._batch_size,
                        block=self._block_ms,
                    )
                    for _stream, entries in response or []:
                        batch = _parse_entries(entries)
                        if batch:
                            await self._handle_batch(stream_key, batch, callback)
                    await self._process_pending(stream_key, callback)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("Error in stream consumer loop: %s", e)
                    await asyncio.sleep(self._error_backoff)
        finally:
            self._running = False
            logger.info("Stream consumer %s stopped", self._consumer)

    async def _handle_batch(
        self, stream_key: str, batch: list[StreamMessage], callback: StreamBatchCallback
    ) -> None:
        logger.debug("Processing %d stream messages", len(batch))
        await callback(batch)
        await self._ack(stream_key, [m.id for m in batch])

    async def _process_pending(self, stream_key: str, callback: StreamBatchCallback) -> None:
        """Claim entries idle longer than claim_idle_ms (delivered but never acknowledged)."""
        try:
            result = await self._redis.xautoclaim(
                stream_key,
                self._group,
                self._consumer,
                min_idle_time=self._claim_idle_ms,
                start_id="0-0",
                count=self._batch_size,
            )
        except ResponseError as e:
            logger.error("Error claiming pending messages: %s", e)
            return
        claimed = _parse_entries(result[1] if len(result) > 1 else [])
        if claimed:
            logger.info("Processing %d reclaimed stream messages", len(claimed))
            await self._handle_batch(stream_key, claimed, callback)

    async def _ack(self, stream_key: str, message_ids: list[str]) -> None:
        try:
            acked = await self._redis.xack(stream_key, self._group, *message_ids)
            logger.debug("Acknowledged %s/%d stream messages", acked, len(message_ids))
        except RedisError as e:
            logger.error("Failed to acknowledge stream messages: %s", e)

    async def stream_stats(self, stream_key: str) -> dict[str, Any]:
        """Length, first/last entry ids and per-group pending counts."""
        info = await self._redis.xinfo_stream(stream_key)
        groups = await self._redis.xinfo_groups(stream_key)
        first = info.get("first-entry")
        last = info.get("last-entry")
        return {
            "length": info.get("length", 0),
            "first_entry_id": _to_str(first[0]) if first else None,
            "last_entry_id": _to_str(last[0]) if last else None,
            "groups": [
                {
                    "name": _to_str(g.get("name")),
                    "consumers": g.get("consumers", 0),
                    "pending": g.get("pending", 0),
                    "last_delivered_id": _to_str(g.get("last-delivered-id")),
                }
                for g in groups
            ],
        }

    async def stop(self) -> None:
        self._running = False

    async def close(self) -> None:
        await self._redis.aclose()
