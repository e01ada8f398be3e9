"""Collection — one capture session's raw trace plus metadata.

A collection is read-only input to the engine.  Raw records stay as the
dicts the capture side produced; only the normalizer turns them into
canonical events.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from schedviz.foundation.identifiers import new_collection_id


class CollectionWindow(BaseModel):
    """Validated time bounds of a capture.  Intervals are clipped to it."""

    start_ns: int
    end_ns: int

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def end_not_before_start(self) -> "CollectionWindow":
        if self.end_ns < self.start_ns:
            raise ValueError(f"window end {self.end_ns} precedes start {self.start_ns}")
        return self

    @property
    def duration_ns(self) -> int:
        return self.end_ns - self.start_ns

    def contains(self, timestamp_ns: int) -> bool:
        return self.start_ns <= timestamp_ns <= self.end_ns

    def clip(self, start_ns: int, end_ns: int) -> tuple[int, int]:
        """Clip ``[start_ns, end_ns)`` to this window; may return an empty span."""
        start = max(start_ns, self.start_ns)
        end = min(end_ns, self.end_ns)
        return start, max(start, end)


class CollectionMetadata(BaseModel):
    """Capture-side facts about a collection."""

    description: str = Field(default="", max_length=1024)
    target_machine: str = Field(default="", max_length=256)
    start_ns: Optional[int] = Field(default=None, description="Declared capture start, if known")
    end_ns: Optional[int] = Field(default=None, description="Declared capture end, if known")
    event_types: list[str] = Field(
        default_factory=list,
        description="Tracepoint names the capture enabled; empty means undeclared",
    )
    overflowed_cpus: list[int] = Field(
        default_factory=list,
        description="CPUs whose trace buffer overran during capture",
    )
    overwrite: bool = Field(
        default=True,
        description="True if overruns overwrote the oldest events, False if new ones were dropped",
    )

    model_config = {"frozen": True}


class Collection(BaseModel):
    """Raw records grouped by the CPU whose buffer recorded them.

    Each group is in capture order.  Records are plain dicts keyed by
    tracepoint field names (see the adapters for the accepted shapes).
    """

    collection_id: str = Field(default_factory=new_collection_id)
    metadata: CollectionMetadata = Field(default_factory=CollectionMetadata)
    records: dict[int, list[dict[str, Any]]] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @property
    def cpus(self) -> list[int]:
        return sorted(self.records)

    @property
    def record_count(self) -> int:
        return sum(len(group) for group in self.records.values())

    def summary(self) -> dict:
        """Lightweight summary suitable for listings and logging."""
        return {
            "collection_id": self.collection_id,
            "description": self.metadata.description,
            "target_machine": self.metadata.target_machine,
            "cpus": self.cpus,
            "record_count": self.record_count,
        }
