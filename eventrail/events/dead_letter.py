"""Dead-letter forwarder: best-effort publish of undecodable/undispatchable messages."""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from eventrail.events.models import DeadLetterRecord
from eventrail.observability.metrics import EVENTS_DEAD_LETTERED, MetricsSink, NoopMetrics
from eventrail.transports.contract import LogPublisher

logger = logging.getLogger(__name__)

DEAD_LETTER_KEY = "failed-event"


def dead_letter_channel(primary: str, suffix: str = "-dlq") -> str:
    return f"{primary}{suffix}"


def _render_original(message: Any) -> str:
    """Keep the raw payload readable even when it is not valid UTF-8 or JSON."""
    if isinstance(message, (bytes, bytearray)):
        return bytes(message).decode("utf-8", errors="backslashreplace")
    if isinstance(message, str):
        return message
    try:
        return json.dumps(message, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(message)


def record_to_wire(record: DeadLetterRecord) -> dict[str, Any]:
    return {
        "originalMessage": record.original_message,
        "error": record.error,
        "errorType": record.error_type,
        "transport": record.transport,
        "channel": record.channel,
        "timestamp": record.timestamp.isoformat(),
    }


class DeadLetterForwarder:
    """Publishes DeadLetterRecord values to `<primary><suffix>` on the durable log.

    send() never raises: a failing dead-letter path is logged and swallowed.
    """

    def __init__(
        self,
        publisher: LogPublisher,
        primary_channel: str,
        suffix: str = "-dlq",
        metrics: MetricsSink | None = None,
    ) -> None:
        self._publisher = publisher
        self._topic = dead_letter_channel(primary_channel, suffix)
        self._metrics = metrics or NoopMetrics()

    @property
    def topic(self) -> str:
        return self._topic

    async def send(
        self,
        original_message: Any,
        error: BaseException | str,
        transport: str = "",
        channel: str = "",
    ) -> DeadLetterRecord:
        record = DeadLetterRecord(
            original_message=_render_original(original_message),
            error=str(error),
            error_type=type(error).__name__ if isinstance(error, BaseException) else "Error",
            timestamp=datetime.now(timezone.utc),
            transport=transport,
            channel=channel,
        )
        try:
            await self._publisher.send(
                self._topic,
                DEAD_LETTER_KEY,
                json.dumps(record_to_wire(record), ensure_ascii=False).encode("utf-8"),
            )
            self._metrics.increment(EVENTS_DEAD_LETTERED, {"transport": transport or "unknown"})
            logger.warning(
                "Message from %s dead-lettered to %s: %s", transport or "?", self._topic, record.error
            )
        except Exception as e:
            logger.error("Failed to send to dead letter queue %s: %s", self._topic, e)
        return record
