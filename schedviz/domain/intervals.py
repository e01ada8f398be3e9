"""Interval domain models — the output timeline of an inference pass.

An Interval is a span of constant state for one CPU or one thread.  For a
fixed entity, intervals are strictly ordered, never overlap, and cover the
collection window without gaps.  Spans the engine cannot infer carry an
explicit UNKNOWN state instead of being left out.
"""

from __future__ import annotations

from typing import Optional, Union

from pydantic import BaseModel, Field, model_validator

from schedviz.domain.enums import CpuState, EntityKind, ThreadState


class ThreadIdentity(BaseModel):
    """A logical thread: a PID plus the reuse generation it belongs to.

    Epochs start at 0 and increase each time the identity resolver decides
    the PID was handed to an unrelated thread.
    """

    pid: int = Field(..., ge=0)
    epoch: int = Field(default=0, ge=0)
    command: str = Field(default="", description="Command the epoch was first seen with")

    model_config = {"frozen": True}

    @property
    def key(self) -> tuple[int, int]:
        return (self.pid, self.epoch)

    def __str__(self) -> str:
        return f"{self.pid}.{self.epoch}"


class EntityRef(BaseModel):
    """Structured reference to the CPU or thread an interval describes."""

    kind: EntityKind
    identifier: str = Field(..., min_length=1, max_length=64)

    model_config = {"frozen": True}

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.identifier}"


class Interval(BaseModel):
    """A closed span ``[start_ns, end_ns)`` of constant state.

    CPU intervals: ``cpu`` is the entity, ``thread`` the occupant while
    RUNNING.  Thread intervals: ``thread`` is the entity, ``cpu`` is where it
    runs (RUNNING) or is queued (WAITING).
    """

    entity_kind: EntityKind
    cpu: Optional[int] = None
    thread: Optional[ThreadIdentity] = None
    start_ns: int
    end_ns: int
    state: Union[CpuState, ThreadState]

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def check_shape(self) -> "Interval":
        if self.end_ns <= self.start_ns:
            raise ValueError(f"empty interval [{self.start_ns}, {self.end_ns})")
        if self.entity_kind == EntityKind.CPU:
            if self.cpu is None or not isinstance(self.state, CpuState):
                raise ValueError("CPU interval needs a cpu and a CPU state")
        elif self.thread is None or not isinstance(self.state, ThreadState):
            raise ValueError("thread interval needs a thread and a thread state")
        return self

    @property
    def entity(self) -> EntityRef:
        if self.entity_kind == EntityKind.CPU:
            return EntityRef(kind=EntityKind.CPU, identifier=str(self.cpu))
        return EntityRef(kind=EntityKind.THREAD, identifier=str(self.thread))

    @property
    def duration_ns(self) -> int:
        return self.end_ns - self.start_ns

    def overlap_ns(self, start_ns: int, end_ns: int) -> int:
        """Length of the intersection with ``[start_ns, end_ns)``."""
        return max(0, min(self.end_ns, end_ns) - max(self.start_ns, start_ns))

    def to_dict(self) -> dict:
        return {
            "entity": str(self.entity),
            "start_ns": self.start_ns,
            "end_ns": self.end_ns,
            "state": self.state.value,
            "cpu": self.cpu,
            "thread": str(self.thread) if self.thread else None,
        }


class ThreadInfo(BaseModel):
    """Everything a pass observed about one thread identity."""

    identity: ThreadIdentity
    commands: list[str] = Field(default_factory=list)
    priorities: list[int] = Field(default_factory=list)
    first_seen_ns: int
    last_seen_ns: int

    model_config = {"frozen": True}
