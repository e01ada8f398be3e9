"""Controlled enumerations for the schedviz domain.

Every categorical field in the domain MUST reference an enum defined here.
Free-form strings are not acceptable for classification fields.
"""

from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    """Scheduling tracepoints the engine understands."""

    SWITCH = "sched_switch"
    WAKEUP = "sched_wakeup"
    WAKEUP_NEW = "sched_wakeup_new"
    MIGRATE_TASK = "sched_migrate_task"
    STAT_RUNTIME = "sched_stat_runtime"


class EntityKind(str, Enum):
    """The kind of entity an interval describes."""

    CPU = "cpu"
    THREAD = "thread"


class ThreadState(str, Enum):
    """Steady states of a thread between two transitions."""

    UNKNOWN = "unknown"
    SLEEPING = "sleeping"
    WAITING = "waiting"
    RUNNING = "running"


class CpuState(str, Enum):
    """Steady states of a CPU between two switches."""

    UNKNOWN = "unknown"
    IDLE = "idle"
    RUNNING = "running"


class Severity(str, Enum):
    """Diagnostic severity.

    INFO is traceability only, WARNING reduces confidence in a region,
    FATAL stops interval production for the affected CPU.
    """

    INFO = "info"
    WARNING = "warning"
    FATAL = "fatal"


class DiagnosticKind(str, Enum):
    """What a diagnostic is about."""

    CLOCK_SKEW = "clock_skew"
    CLIPPED_EVENTS = "clipped_events"
    SKIPPED_EVENTS = "skipped_events"
    IDENTITY_SPLIT = "identity_split"
    REDUNDANT_WAKEUP = "redundant_wakeup"
    RUNTIME_MISMATCH = "runtime_mismatch"
    PRECONDITION_VIOLATION = "precondition_violation"
    HALTED_CPU_EVENT = "halted_cpu_event"
