"""Canonical scheduling events — the contract between the normalizer and inference.

A RawEvent is a *claim by one CPU's trace buffer* that a transition happened
at a given timestamp.  Events form a closed tagged union discriminated on
``type``: downstream code matches over exactly these variants and never has
to inspect free-form property maps.

All variants are frozen.  They are built once by the normalizer from the
immutable source records and never mutated afterwards.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from schedviz.domain.enums import EventType, ThreadState

UNKNOWN_PRIORITY = -1


# ── Thread Descriptor ────────────────────────────────────────────────────────

class ThreadDescriptor(BaseModel):
    """What an event reports about one thread at the moment it fired."""

    pid: int = Field(..., ge=0, description="Kernel PID (TID) of the thread")
    command: str = Field(..., max_length=256, description="Reported comm at event time")
    priority: int = Field(
        default=UNKNOWN_PRIORITY,
        ge=UNKNOWN_PRIORITY,
        description="Kernel priority, -1 when the tracepoint did not carry it",
    )

    model_config = {"frozen": True}

    def __str__(self) -> str:
        return f"PID {self.pid} ('{self.command}', prio {self.priority})"


# ── Events ───────────────────────────────────────────────────────────────────

class _EventBase(BaseModel, ABC):
    cpu: int = Field(..., ge=0, description="CPU whose buffer recorded the event")
    timestamp_ns: int = Field(..., description="Event timestamp in nanoseconds")
    seq: int = Field(..., ge=0, description="Position within the CPU's capture order")
    capture_index: Optional[int] = Field(
        default=None,
        ge=0,
        description="Position of the record in the drained archive, if known",
    )

    model_config = {"frozen": True}

    @property
    def order_key(self) -> tuple[int, int, int]:
        """Global ordering key: timestamp, then CPU id, then capture order."""
        return (self.timestamp_ns, self.cpu, self.seq)

    def involves(self, pid: int) -> bool:
        return any(t.pid == pid for t in self.threads)

    @property
    @abstractmethod
    def threads(self) -> tuple[ThreadDescriptor, ...]:
        """Every thread the event reports on."""


class SwitchEvent(_EventBase):
    """``sched_switch``: *prev* leaves the CPU, *next* starts running on it."""

    type: Literal[EventType.SWITCH] = EventType.SWITCH
    prev: ThreadDescriptor
    prev_state: ThreadState = Field(
        ..., description="Where prev goes: WAITING if still runnable, else SLEEPING",
    )
    next: ThreadDescriptor

    @field_validator("prev_state")
    @classmethod
    def prev_state_must_be_off_cpu(cls, v: ThreadState) -> ThreadState:
        if v not in (ThreadState.WAITING, ThreadState.SLEEPING):
            raise ValueError(f"prev_state must be waiting or sleeping, got {v.value}")
        return v

    @property
    def threads(self) -> tuple[ThreadDescriptor, ...]:
        return (self.prev, self.next)


class WakeupEvent(_EventBase):
    """``sched_wakeup`` / ``sched_wakeup_new``: a thread is queued on *target_cpu*."""

    type: Literal[EventType.WAKEUP, EventType.WAKEUP_NEW] = EventType.WAKEUP
    thread: ThreadDescriptor
    target_cpu: int = Field(..., ge=0)

    @property
    def threads(self) -> tuple[ThreadDescriptor, ...]:
        return (self.thread,)


class MigrateTaskEvent(_EventBase):
    """``sched_migrate_task``: a thread moves from *orig_cpu* to *dest_cpu*."""

    type: Literal[EventType.MIGRATE_TASK] = EventType.MIGRATE_TASK
    thread: ThreadDescriptor
    orig_cpu: int = Field(..., ge=0)
    dest_cpu: int = Field(..., ge=0)

    @property
    def threads(self) -> tuple[ThreadDescriptor, ...]:
        return (self.thread,)


class StatRuntimeEvent(_EventBase):
    """``sched_stat_runtime``: accounting update for the running thread."""

    type: Literal[EventType.STAT_RUNTIME] = EventType.STAT_RUNTIME
    thread: ThreadDescriptor
    runtime_ns: int = Field(..., ge=0, description="Run time accrued since the previous update")
    vruntime_ns: int = Field(default=0, ge=0)

    @property
    def threads(self) -> tuple[ThreadDescriptor, ...]:
        return (self.thread,)


RawEvent = Annotated[
    Union[SwitchEvent, WakeupEvent, MigrateTaskEvent, StatRuntimeEvent],
    Field(discriminator="type"),
]

raw_event_adapter: TypeAdapter[RawEvent] = TypeAdapter(RawEvent)
