from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from modkeeper.core.events.bus import EventBus
from modkeeper.core.events.models import EventSeverity, LifecycleEvent, SourceSubsystem


_SEVERITY_BY_SUFFIX = {
    "failed": EventSeverity.ERROR,
    "update_failed": EventSeverity.ERROR,
}


class BusPublisher:
    """
    Adapts an EventBus to the `publish(event_name, payload)` capability the
    lifecycle manager needs.
    """

    def __init__(self, bus: EventBus, *, subsystem: SourceSubsystem = SourceSubsystem.lifecycle):
        self.bus = bus
        self.subsystem = subsystem

    def publish(self, event_name: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        suffix = str(event_name).rsplit(".", 1)[-1]
        return self.bus.publish(
            LifecycleEvent(
                event_type=event_name,
                source_subsystem=self.subsystem,
                severity=_SEVERITY_BY_SUFFIX.get(suffix, EventSeverity.INFO),
                payload=dict(payload or {}),
            )
        )


class MemoryPublisher:
    """Keeps published events in order; for embedding and tests."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def publish(self, event_name: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        self.events.append((str(event_name), dict(payload or {})))
        return True

    def names(self) -> List[str]:
        return [name for name, _ in self.events]
