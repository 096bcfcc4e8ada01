"""Metrics sink for counts and durations. Observability only; never affects delivery."""

from collections import defaultdict
from typing import Mapping, Protocol

EVENTS_PUBLISHED = "events.published"
EVENTS_PUBLISH_FAILED = "events.publish_failed"
EVENTS_DISPATCHED = "events.dispatched"
EVENTS_HANDLER_FAILED = "events.handler_failed"
EVENTS_DEAD_LETTERED = "events.dead_lettered"
HANDLER_DURATION = "events.handler_duration"

Tags = Mapping[str, str]


class MetricsSink(Protocol):
    def increment(self, name: str, tags: Tags | None = None, value: int = 1) -> None: ...

    def observe(self, name: str, value: float, tags: Tags | None = None) -> None: ...


class NoopMetrics:
    def increment(self, name: str, tags: Tags | None = None, value: int = 1) -> None:
        pass

    def observe(self, name: str, value: float, tags: Tags | None = None) -> None:
        pass


def _key(name: str, tags: Tags | None) -> tuple[str, tuple[tuple[str, str], ...]]:
    return name, tuple(sorted((tags or {}).items()))


class InMemoryMetrics:
    """Keeps counters and observed values in process. Used for local runs and tests."""

    def __init__(self) -> None:
        self.counters: dict[tuple[str, tuple[tuple[str, str], ...]], int] = defaultdict(int)
        self.observations: dict[tuple[str, tuple[tuple[str, str], ...]], list[float]] = (
            defaultdict(list)
        )

    def increment(self, name: str, tags: Tags | None = None, value: int = 1) -> None:
        self.counters[_key(name, tags)] += value

    def observe(self, name: str, value: float, tags: Tags | None = None) -> None:
        self.observations[_key(name, tags)].append(value)

    def count(self, name: str, **tags: str) -> int:
        """Sum of a counter across all tag sets that include the given tags."""
        wanted = set(tags.items())
        return sum(
            v for (n, t), v in self.counters.items() if n == name and wanted <= set(t)
        )
