"""
Lifecycle event bus.

The lifecycle manager only needs `publish(event_name, payload)`; `BusPublisher`
maps that onto the in-process `EventBus`.
"""

from modkeeper.core.events.bus import EventBus, EventBusConfig, OverflowPolicy
from modkeeper.core.events.models import EventSeverity, LifecycleEvent, SourceSubsystem
from modkeeper.core.events.publisher import BusPublisher, MemoryPublisher

__all__ = [
    "EventBus",
    "EventBusConfig",
    "OverflowPolicy",
    "EventSeverity",
    "LifecycleEvent",
    "SourceSubsystem",
    "BusPublisher",
    "MemoryPublisher",
]
