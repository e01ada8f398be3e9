from schedviz.domain.collection import Collection, CollectionMetadata, CollectionWindow
from schedviz.domain.diagnostics import Diagnostic
from schedviz.domain.events import (
    MigrateTaskEvent,
    RawEvent,
    StatRuntimeEvent,
    SwitchEvent,
    ThreadDescriptor,
    WakeupEvent,
)
from schedviz.domain.intervals import Interval, ThreadIdentity, ThreadInfo
from schedviz.domain.statistics import Statistics

__all__ = [
    "Collection",
    "CollectionMetadata",
    "CollectionWindow",
    "Diagnostic",
    "Interval",
    "MigrateTaskEvent",
    "RawEvent",
    "StatRuntimeEvent",
    "Statistics",
    "SwitchEvent",
    "ThreadDescriptor",
    "ThreadIdentity",
    "ThreadInfo",
    "WakeupEvent",
]
