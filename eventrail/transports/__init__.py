"""Transports: Kafka durable log and Redis Streams low-latency stream."""

from eventrail.transports.contract import (
    LogConsumer,
    LogPublisher,
    LogRecord,
    StreamMessage,
    StreamTransport,
)

__all__ = ["LogConsumer", "LogPublisher", "LogRecord", "StreamMessage", "StreamTransport"]
