"""Adapters for the scheduler tracepoints.

Expected raw formats (``index`` is optional everywhere, ``*prio`` too):

sched_switch:
    {"event": "sched_switch", "timestamp_ns": 1500, "index": 12,
     "prev_pid": 7, "prev_comm": "worker", "prev_prio": 120, "prev_state": 1,
     "next_pid": 0, "next_comm": "swapper/1", "next_prio": 120}

sched_wakeup / sched_wakeup_new:
    {"event": "sched_wakeup", "timestamp_ns": 1000,
     "pid": 7, "comm": "worker", "prio": 120, "target_cpu": 1}

sched_migrate_task:
    {"event": "sched_migrate_task", "timestamp_ns": 1200,
     "pid": 7, "comm": "worker", "prio": 120, "orig_cpu": 1, "dest_cpu": 2}

sched_stat_runtime:
    {"event": "sched_stat_runtime", "timestamp_ns": 1400,
     "pid": 7, "comm": "worker", "runtime": 400, "vruntime": 123456}
"""

from __future__ import annotations

from typing import Any

from schedviz.adapters.base import RecordAdapter
from schedviz.domain.enums import EventType, ThreadState
from schedviz.domain.events import (
    MigrateTaskEvent,
    StatRuntimeEvent,
    SwitchEvent,
    WakeupEvent,
)

# ftrace prints these for a task that was preempted while still runnable.
_RUNNABLE_STATE_LETTERS = frozenset({"R", "R+"})


def parse_prev_state(value: Any) -> ThreadState:
    """Map a kernel ``prev_state`` to where the outgoing thread goes.

    Accepts the numeric task state (0 is TASK_RUNNING) or the letter form
    printed by ftrace.  A runnable task stays queued; anything else sleeps.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"invalid prev_state {value!r}")
    if isinstance(value, int):
        return ThreadState.WAITING if value == 0 else ThreadState.SLEEPING
    text = str(value).strip()
    if not text:
        raise ValueError("empty prev_state")
    if text.lstrip("-").isdigit():
        return parse_prev_state(int(text))
    return ThreadState.WAITING if text in _RUNNABLE_STATE_LETTERS else ThreadState.SLEEPING


class SwitchAdapter(RecordAdapter):
    """Maps ``sched_switch`` records to SwitchEvents."""

    @property
    def event_names(self) -> tuple[str, ...]:
        return (EventType.SWITCH.value,)

    def can_handle(self, raw: dict[str, Any]) -> bool:
        return raw.get("event") == EventType.SWITCH.value

    def adapt(self, raw: dict[str, Any], cpu: int, seq: int) -> SwitchEvent:
        return SwitchEvent(
            **self.common(raw, cpu, seq),
            prev=self.descriptor(raw, "prev_"),
            prev_state=parse_prev_state(self.require(raw, "prev_state")),
            next=self.descriptor(raw, "next_"),
        )


class WakeupAdapter(RecordAdapter):
    """Maps ``sched_wakeup`` and ``sched_wakeup_new`` records to WakeupEvents."""

    @property
    def event_names(self) -> tuple[str, ...]:
        return (EventType.WAKEUP.value, EventType.WAKEUP_NEW.value)

    def can_handle(self, raw: dict[str, Any]) -> bool:
        return raw.get("event") in self.event_names

    def adapt(self, raw: dict[str, Any], cpu: int, seq: int) -> WakeupEvent:
        return WakeupEvent(
            **self.common(raw, cpu, seq),
            type=EventType(raw["event"]),
            thread=self.descriptor(raw),
            target_cpu=self.require_int(raw, "target_cpu"),
        )


class MigrateTaskAdapter(RecordAdapter):
    """Maps ``sched_migrate_task`` records to MigrateTaskEvents."""

    @property
    def event_names(self) -> tuple[str, ...]:
        return (EventType.MIGRATE_TASK.value,)

    def can_handle(self, raw: dict[str, Any]) -> bool:
        return raw.get("event") == EventType.MIGRATE_TASK.value

    def adapt(self, raw: dict[str, Any], cpu: int, seq: int) -> MigrateTaskEvent:
        return MigrateTaskEvent(
            **self.common(raw, cpu, seq),
            thread=self.descriptor(raw),
            orig_cpu=self.require_int(raw, "orig_cpu"),
            dest_cpu=self.require_int(raw, "dest_cpu"),
        )


class StatRuntimeAdapter(RecordAdapter):
    """Maps ``sched_stat_runtime`` records to StatRuntimeEvents."""

    @property
    def event_names(self) -> tuple[str, ...]:
        return (EventType.STAT_RUNTIME.value,)

    def can_handle(self, raw: dict[str, Any]) -> bool:
        return raw.get("event") == EventType.STAT_RUNTIME.value

    def adapt(self, raw: dict[str, Any], cpu: int, seq: int) -> StatRuntimeEvent:
        vruntime = raw.get("vruntime")
        return StatRuntimeEvent(
            **self.common(raw, cpu, seq),
            thread=self.descriptor(raw),
            runtime_ns=self.require_int(raw, "runtime"),
            vruntime_ns=0 if vruntime is None else self.require_int(raw, "vruntime"),
        )


def default_adapters() -> list[RecordAdapter]:
    """Adapters for every tracepoint the engine interprets."""
    return [SwitchAdapter(), WakeupAdapter(), MigrateTaskAdapter(), StatRuntimeAdapter()]
