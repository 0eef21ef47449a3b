from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from typing import Dict


@dataclass
class BusStats:
    published_total: int = 0
    dropped_total: int = 0
    delivered_total: int = 0
    handler_errors_total: int = 0
    queue_depth: int = 0
    subscribers: int = 0
    per_type_published: Dict[str, int] = field(default_factory=dict)


class StatsCounter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats = BusStats()

    def snapshot(self) -> BusStats:
        with self._lock:
            return replace(self._stats, per_type_published=dict(self._stats.per_type_published))

    def published(self, event_type: str) -> None:
        with self._lock:
            self._stats.published_total += 1
            per_type = self._stats.per_type_published
            per_type[event_type] = per_type.get(event_type, 0) + 1

    def dropped(self, n: int = 1) -> None:
        with self._lock:
            self._stats.dropped_total += int(n)

    def delivered(self, n: int = 1) -> None:
        with self._lock:
            self._stats.delivered_total += int(n)

    def handler_error(self) -> None:
        with self._lock:
            self._stats.handler_errors_total += 1

    def set_queue_depth(self, n: int) -> None:
        with self._lock:
            self._stats.queue_depth = int(n)

    def set_subscribers(self, n: int) -> None:
        with self._lock:
            self._stats.subscribers = int(n)
