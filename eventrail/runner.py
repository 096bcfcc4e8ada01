"""Entry point for the event bus process: build store, transports and bus; run until signalled."""

import argparse
import asyncio
import logging
import signal
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

from eventrail.config_check import BusSettings, load_subscriptions, parse_settings
from eventrail.events import EventBus, EventStore
from eventrail.logging_config import setup_logging
from eventrail.observability.metrics import InMemoryMetrics
from eventrail.observability.tracing import NoopTracer, OpenTelemetryTracer, Tracer
from eventrail.settings import get_setting, load_settings
from eventrail.transports.kafka import KafkaLogConsumer, KafkaLogPublisher
from eventrail.transports.redis_streams import RedisStreamTransport

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


def _build_store(cfg: BusSettings) -> EventStore:
    db_path = Path(cfg.event_store.db_path)
    if not db_path.is_absolute():
        db_path = _PROJECT_ROOT / db_path
    return EventStore(db_path, busy_timeout=cfg.event_store.busy_timeout)


def _build_tracer(settings: dict) -> Tracer:
    if get_setting(settings, "tracing.enabled", False):
        return OpenTelemetryTracer(get_setting(settings, "tracing.tracer_name", "event-bus"))
    return NoopTracer()


def _build_event_bus(
    cfg: BusSettings, settings: dict, store: EventStore
) -> tuple[EventBus, RedisStreamTransport]:
    kafka = cfg.kafka
    stream = RedisStreamTransport.from_url(
        cfg.redis.url,
        consumer_group=cfg.redis.consumer_group,
        batch_size=cfg.redis.batch_size,
        block_ms=cfg.redis.block_ms,
        claim_idle_ms=cfg.redis.claim_idle_ms,
        error_backoff=cfg.redis.error_backoff,
        maxlen=cfg.redis.maxlen,
    )
    bus = EventBus(
        store=store,
        log_publisher=KafkaLogPublisher(
            kafka.bootstrap_servers, client_id=kafka.client_id, acks=kafka.acks
        ),
        log_consumer=KafkaLogConsumer(
            kafka.bootstrap_servers,
            group_id=kafka.group_id,
            client_id=kafka.client_id,
            auto_offset_reset=kafka.auto_offset_reset,
            poll_timeout_ms=kafka.poll_timeout_ms,
            max_records=kafka.max_records,
        ),
        stream=stream,
        channel=cfg.event_bus.channel,
        stream_key=cfg.event_bus.stream_key,
        dlq_suffix=cfg.event_bus.dlq_suffix,
        tracer=_build_tracer(settings),
        metrics=InMemoryMetrics(),
        default_source=cfg.event_bus.default_source,
    )
    for event_type, handler in load_subscriptions(cfg.event_bus):
        bus.subscribe(event_type, handler)
    return bus, stream


def _install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except NotImplementedError:
            pass  # Windows: KeyboardInterrupt still ends asyncio.run


async def run_bus(settings: dict) -> None:
    """Bootstrap: store -> transports -> bus -> subscriptions -> start -> wait for shutdown."""
    cfg = parse_settings(settings)
    store = _build_store(cfg)
    bus, stream = _build_event_bus(cfg, settings, store)
    shutdown_event = asyncio.Event()
    _install_signal_handlers(shutdown_event)
    await bus.start()
    try:
        await shutdown_event.wait()
    except asyncio.CancelledError:
        pass
    finally:
        await bus.stop()
        await stream.close()
        await store.close()


async def run_replay(
    settings: dict,
    event_type: str | None,
    start_time: datetime | None,
    end_time: datetime | None,
) -> None:
    """Replay stored events through the configured subscriptions. Transports are not started."""
    cfg = parse_settings(settings)
    store = _build_store(cfg)
    bus, stream = _build_event_bus(cfg, settings, store)
    try:
        summary = await bus.replay(event_type, start_time, end_time)
        logger.info(
            "Replay finished: %d events, %d handler failures",
            summary.replayed,
            summary.handler_failures,
        )
    finally:
        await stream.close()
        await store.close()


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="eventrail", description="Dual-transport event bus")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Start the bus and consume until SIGINT/SIGTERM (default)")
    replay = sub.add_parser("replay", help="Re-drive stored events through local handlers")
    replay.add_argument("--type", dest="event_type", default=None)
    replay.add_argument("--since", type=datetime.fromisoformat, default=None)
    replay.add_argument("--until", type=datetime.fromisoformat, default=None)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Synchronous entry for the event bus process."""
    load_dotenv(_PROJECT_ROOT / ".env")
    args = _parse_args(argv)
    settings = load_settings()
    setup_logging(_PROJECT_ROOT, settings)
    try:
        if args.command == "replay":
            asyncio.run(run_replay(settings, args.event_type, args.since, args.until))
        else:
            asyncio.run(run_bus(settings))
    except KeyboardInterrupt:
        pass


__all__ = ["main"]
