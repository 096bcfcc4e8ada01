"""Durable log transport on Kafka (aiokafka).

Records are keyed by event type so same-type events share a partition. The consumer
commits offsets manually after each batch has been handed to the callback, so a
restarted subscriber resumes from its last acknowledged position.
"""

import asyncio
import logging
from typing import Mapping

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaError

from eventrail.transports.contract import LogRecord, LogRecordCallback

logger = logging.getLogger(__name__)


class KafkaLogPublisher:
    """Producer wrapper. send() waits for broker acknowledgement and raises on failure."""

    def __init__(
        self,
        bootstrap_servers: str,
        client_id: str = "eventrail",
        acks: str | int = "all",
    ) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._client_id = client_id
        self._acks = acks
        self._producer: AIOKafkaProducer | None = None

    async def start(self) -> None:
        if self._producer is not None:
            return
        logger.info("Starting Kafka producer (%s)", self._bootstrap_servers)
        producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            client_id=self._client_id,
            acks=self._acks,
        )
        await producer.start()
        self._producer = producer
        logger.info("Kafka producer started")

    async def stop(self) -> None:
        if self._producer is None:
            return
        logger.info("Stopping Kafka producer...")
        await self._producer.stop()
        self._producer = None
        logger.info("Kafka producer stopped")

    async def send(
        self,
        topic: str,
        key: str | None,
        value: bytes,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        if self._producer is None:
            await self.start()
        assert self._producer is not None
        try:
            await self._producer.send_and_wait(
                topic,
                value,
                key=key.encode("utf-8") if key is not None else None,
                headers=[(k, (v or "").encode("utf-8")) for k, v in (headers or {}).items()],
            )
        except KafkaError as e:
            logger.error("Failed to send message to topic %s: %s", topic, e)
            raise
        logger.debug("Message sent to topic %s (key=%s)", topic, key)


class KafkaLogConsumer:
    """Consumer-group reader. consume() runs until stop() and never raises on a bad record."""

    def __init__(
        self,
        bootstrap_servers: str,
        group_id: str,
        client_id: str = "eventrail",
        auto_offset_reset: str = "latest",
        poll_timeout_ms: int = 1000,
        max_records: int = 100,
        error_backoff: float = 1.0,
    ) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._group_id = group_id
        self._client_id = client_id
        self._auto_offset_reset = auto_offset_reset
        self._poll_timeout_ms = poll_timeout_ms
        self._max_records = max_records
        self._error_backoff = error_backoff
        self._running = False

    async def consume(self, topics: list[str], callback: LogRecordCallback) -> None:
        consumer = AIOKafkaConsumer(
            *topics,
            bootstrap_servers=self._bootstrap_servers,
            group_id=self._group_id,
            client_id=self._client_id,
            auto_offset_reset=self._auto_offset_reset,
            enable_auto_commit=False,
        )
        await consumer.start()
        self._running = True
        logger.info("Kafka consumer started (group=%s, topics=%s)", self._group_id, topics)
        try:
            while self._running:
                try:
                    batches = await consumer.getmany(
                        timeout_ms=self._poll_timeout_ms, max_records=self._max_records
                    )
                except KafkaError as e:
                    logger.error("Kafka poll failed: %s", e)
                    await asyncio.sleep(self._error_backoff)
                    continue
                if not batches:
                    continue
                # Only offsets of records handed to the callback are committed; records
                # left in the batch after stop() are redelivered on the next start.
                offsets = {}
                for tp, messages in batches.items():
                    for msg in messages:
                        if not self._running:
                            break
                        await self._deliver(callback, msg)
                        offsets[tp] = msg.offset + 1
                if not offsets:
                    continue
                try:
                    await consumer.commit(offsets)
                except KafkaError as e:
                    logger.warning("Kafka offset commit failed: %s", e)
        finally:
            self._running = False
            await consumer.stop()
            logger.info("Kafka consumer stopped")

    async def _deliver(self, callback: LogRecordCallback, msg) -> None:
        record = LogRecord(
            topic=msg.topic,
            partition=msg.partition,
            offset=msg.offset,
            key=msg.key,
            value=msg.value if msg.value is not None else b"",
            headers={k: v for k, v in (msg.headers or ())},
        )
        try:
            await callback(record)
        except Exception:
            logger.exception(
                "Kafka record callback failed (%s[%d]@%d)",
                record.topic,
                record.partition,
                record.offset,
            )

    async def stop(self) -> None:
        self._running = False
