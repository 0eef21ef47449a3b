from __future__ import annotations

import collections
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from modkeeper.core.events.models import EventSeverity, LifecycleEvent, SourceSubsystem
from modkeeper.core.events.stats import StatsCounter
from modkeeper.core.events.workers import SubscriberWorker


class OverflowPolicy(str, Enum):
    DROP_OLDEST = "DROP_OLDEST"
    DROP_NEWEST = "DROP_NEWEST"


class EventBusConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    max_queue_size: int = Field(default=1000, ge=10, le=100_000)
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST
    shutdown_grace_seconds: float = Field(default=5.0, ge=0.1, le=60.0)
    keep_recent: int = Field(default=200, ge=10, le=10_000)


Handler = Callable[[LifecycleEvent], None]


@dataclass
class _Sub:
    pattern: str
    handler: Handler
    priority: int
    worker: SubscriberWorker


class EventBus:
    """
    In-process lifecycle event bus.

    - publish never blocks (drops per overflow policy)
    - each subscriber receives events sequentially, in publish order
    - a failing handler is isolated and reported as an `error.raised` event
    """

    def __init__(
        self, *, cfg: Optional[EventBusConfig] = None, logger: Optional[logging.Logger] = None, autostart: bool = True
    ):
        self.cfg = cfg or EventBusConfig()
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._cv = threading.Condition(self._lock)
        self._queue: Deque[LifecycleEvent] = collections.deque()
        self._subs: List[_Sub] = []
        self._running = False
        self._accepting = True
        self._stats = StatsCounter()
        self._recent: Deque[Dict[str, Any]] = collections.deque(maxlen=int(self.cfg.keep_recent))
        self._dispatcher = threading.Thread(target=self._dispatch_loop, name="modkeeper-events", daemon=True)
        if self.cfg.enabled and autostart:
            self.start()

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._accepting = True
        self._dispatcher.start()

    def enabled(self) -> bool:
        return bool(self.cfg.enabled) and self._running

    def subscribe(self, pattern: str, handler: Handler, priority: int = 50) -> None:
        """
        pattern supports an exact type ("module.enabled"), a prefix ("module.*")
        or everything ("*"). Lower priority values are delivered first.
        """
        if not callable(handler):
            raise ValueError("handler must be callable")
        with self._lock:
            worker = SubscriberWorker(
                name=f"modkeeper-sub-{len(self._subs) + 1}",
                handler=lambda ev, h=handler: self._safe_handle(h, ev),
            )
            self._subs.append(_Sub(pattern=str(pattern), handler=handler, priority=int(priority), worker=worker))
            self._subs.sort(key=lambda s: s.priority)
            self._stats.set_subscribers(len(self._subs))

    def unsubscribe(self, handler: Handler) -> int:
        with self._lock:
            removed = [s for s in self._subs if s.handler is handler]
            self._subs = [s for s in self._subs if s.handler is not handler]
            self._stats.set_subscribers(len(self._subs))
        for s in removed:
            s.worker.stop(grace_seconds=0.5)
        return len(removed)

    def publish(self, ev: LifecycleEvent) -> bool:
        if not self._accepting or not self.cfg.enabled:
            return False
        with self._lock:
            if len(self._queue) >= int(self.cfg.max_queue_size):
                self._stats.dropped(1)
                if self.cfg.overflow_policy == OverflowPolicy.DROP_NEWEST:
                    self.logger.warning("event dropped (queue full): %s", ev.event_type)
                    return False
                dropped = self._queue.popleft()
                self.logger.warning("event dropped (queue full): %s", dropped.event_type)
            self._queue.append(ev)
            self._stats.published(ev.event_type)
            self._stats.set_queue_depth(len(self._queue))
            self._recent.appendleft(ev.model_dump(mode="json"))
            self._cv.notify()
            return True

    def get_stats(self) -> Dict[str, Any]:
        st = self._stats.snapshot()
        return {
            "enabled": self.enabled(),
            "published_total": st.published_total,
            "dropped_total": st.dropped_total,
            "delivered_total": st.delivered_total,
            "handler_errors_total": st.handler_errors_total,
            "queue_depth": st.queue_depth,
            "subscribers": st.subscribers,
            "per_type_published": st.per_type_published,
        }

    def dump_recent(self, n: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._recent)[: max(1, int(n))]

    def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        self._accepting = False
        grace = float(self.cfg.shutdown_grace_seconds if grace_seconds is None else grace_seconds)
        deadline = time.time() + grace
        while time.time() < deadline:
            with self._lock:
                if not self._queue:
                    break
                self._cv.notify_all()
            time.sleep(0.02)
        self._running = False
        with self._lock:
            self._cv.notify_all()
            subs = list(self._subs)
            self._subs = []
            self._stats.set_subscribers(0)
        if self._dispatcher.is_alive():
            self._dispatcher.join(timeout=max(0.1, grace))
        for s in subs:
            s.worker.stop(grace_seconds=max(0.1, deadline - time.time()))

    # ---- internals ----
    def _dispatch_loop(self) -> None:
        while self._running:
            with self._lock:
                if not self._queue:
                    self._cv.wait(timeout=0.2)
                    continue
                ev = self._queue.popleft()
                self._stats.set_queue_depth(len(self._queue))
                subs = list(self._subs)
            delivered = 0
            for s in subs:
                if _match(s.pattern, ev.event_type):
                    s.worker.submit(ev)
                    delivered += 1
            if delivered:
                self._stats.delivered(delivered)

    def _safe_handle(self, handler: Handler, ev: LifecycleEvent) -> None:
        try:
            handler(ev)
        except Exception as e:  # noqa: BLE001
            self._stats.handler_error()
            self.logger.warning("event handler %s failed on %s: %s", getattr(handler, "__name__", "handler"), ev.event_type, e)
            if ev.event_type == "error.raised":
                return
            self.publish(
                LifecycleEvent(
                    event_type="error.raised",
                    source_subsystem=SourceSubsystem.events,
                    severity=EventSeverity.ERROR,
                    payload={"handler": getattr(handler, "__name__", "handler"), "event_type": ev.event_type, "error": str(e)[:500]},
                )
            )


def _match(pattern: str, event_type: str) -> bool:
    if pattern == "*":
        return True
    if pattern.endswith(".*"):
        return event_type.startswith(pattern[:-1])
    return pattern == event_type
