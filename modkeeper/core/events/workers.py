from __future__ import annotations

import queue
import threading
from typing import Callable

from modkeeper.core.events.models import LifecycleEvent


class SubscriberWorker:
    """
    One thread per subscriber so each handler sees events in publish order.
    Handler errors are the bus's concern; `handler` is expected not to raise.
    """

    def __init__(self, *, name: str, handler: Callable[[LifecycleEvent], None]):
        self.name = name
        self.q: "queue.Queue[LifecycleEvent]" = queue.Queue()
        self._handler = handler
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def submit(self, ev: LifecycleEvent) -> None:
        self.q.put_nowait(ev)

    def pending(self) -> int:
        return self.q.qsize()

    def stop(self, *, grace_seconds: float = 1.0) -> None:
        self._stop.set()
        self._thread.join(timeout=max(0.1, float(grace_seconds)))

    def _run(self) -> None:
        # drain what is already queued before honouring stop
        while True:
            try:
                ev = self.q.get(timeout=0.1)
            except queue.Empty:
                if self._stop.is_set():
                    return
                continue
            self._handler(ev)
