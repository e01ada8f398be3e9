"""Abstract base for tracepoint record adapters.

Record adapters translate one raw trace record (a dict of tracepoint
fields, as drained from a CPU's buffer) into the canonical event variant
for that tracepoint.

Architectural rules:
    1. Adapters must NOT mutate the incoming record dict.
    2. adapt() must return a fully valid event or raise ValueError.
    3. No adapter infers state — only field mapping and validation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from schedviz.domain.events import RawEvent, ThreadDescriptor, UNKNOWN_PRIORITY


class RecordAdapter(ABC):
    """Base class for converting raw tracepoint records into canonical events."""

    @abstractmethod
    def can_handle(self, raw: dict[str, Any]) -> bool:
        """Return True if this adapter knows how to translate *raw*.

        Must be a fast, non-destructive check (e.g. the tracepoint name).
        """
        ...

    @abstractmethod
    def adapt(self, raw: dict[str, Any], cpu: int, seq: int) -> RawEvent:
        """Translate a raw record recorded on *cpu* at position *seq*.

        The input dict must NOT be mutated.

        Raises:
            ValueError: If the record cannot be normalised.
        """
        ...

    @property
    @abstractmethod
    def event_names(self) -> tuple[str, ...]:
        """Tracepoint names this adapter handles."""
        ...

    @property
    def name(self) -> str:
        return "/".join(self.event_names)

    # ── Field helpers ────────────────────────────────────────────────────

    @staticmethod
    def require(raw: dict[str, Any], field: str) -> Any:
        value = raw.get(field)
        if value is None:
            raise ValueError(f"{raw.get('event', 'record')} missing '{field}'")
        return value

    @classmethod
    def require_int(cls, raw: dict[str, Any], field: str) -> int:
        value = cls.require(raw, field)
        if isinstance(value, bool):
            raise ValueError(f"'{field}' must be an integer, got {value!r}")
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"'{field}' must be an integer, got {value!r}") from exc

    @classmethod
    def descriptor(cls, raw: dict[str, Any], prefix: str = "") -> ThreadDescriptor:
        """Build a thread descriptor from ``<prefix>pid/comm/prio`` fields."""
        prio = raw.get(f"{prefix}prio")
        return ThreadDescriptor(
            pid=cls.require_int(raw, f"{prefix}pid"),
            command=str(cls.require(raw, f"{prefix}comm")),
            priority=UNKNOWN_PRIORITY if prio is None else cls.require_int(raw, f"{prefix}prio"),
        )

    @classmethod
    def common(cls, raw: dict[str, Any], cpu: int, seq: int) -> dict[str, Any]:
        """Fields every event variant carries."""
        index = raw.get("index")
        return {
            "cpu": cpu,
            "timestamp_ns": cls.require_int(raw, "timestamp_ns"),
            "seq": seq,
            "capture_index": None if index is None else cls.require_int(raw, "index"),
        }
