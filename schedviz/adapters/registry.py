"""Adapter Registry — selects the record adapter for a tracepoint.

The registry holds a list of registered RecordAdapters.  When a raw record
arrives, it iterates through adapters in registration order and selects
the first one whose can_handle() returns True.

No heuristics.  No guessing.  Fail fast if nothing matches.

Selection is read-only, so per-CPU normalization tasks may share one
registry.  Counters are kept per task in an AdapterStats map and folded
back with absorb(), which holds the registry lock: interpretations of
different collections run on different worker threads.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from schedviz.adapters.base import RecordAdapter
from schedviz.adapters.sched import default_adapters
from schedviz.domain.events import RawEvent

logger = logging.getLogger(__name__)


class AdapterStats:
    """Per-adapter normalization statistics for observability."""

    __slots__ = ("adapter_name", "accepted_count", "rejected_count")

    def __init__(self, adapter_name: str) -> None:
        self.adapter_name = adapter_name
        self.accepted_count: int = 0
        self.rejected_count: int = 0

    def to_dict(self) -> dict:
        return {
            "adapter_name": self.adapter_name,
            "accepted_count": self.accepted_count,
            "rejected_count": self.rejected_count,
        }


class NoAdapterFoundError(Exception):
    """Raised when no registered adapter can handle a record."""


class AdaptationError(Exception):
    """Raised when a matched adapter fails to translate the record."""

    def __init__(self, adapter_name: str, reason: str) -> None:
        self.adapter_name = adapter_name
        self.reason = reason
        super().__init__(f"Adapter '{adapter_name}' failed: {reason}")


class AdapterRegistry:
    """Registry of record adapters with selection and stats tracking.

    Usage:
        registry = AdapterRegistry()
        registry.register(SwitchAdapter())
        registry.register(WakeupAdapter())

        event = registry.adapt(raw_record, cpu=1, seq=0)
    """

    def __init__(self) -> None:
        self._adapters: list[RecordAdapter] = []
        self._stats: dict[str, AdapterStats] = {}
        self._lock = threading.Lock()

    def register(self, adapter: RecordAdapter) -> None:
        """Add an adapter to the registry."""
        self._adapters.append(adapter)
        with self._lock:
            self._stats[adapter.name] = AdapterStats(adapter.name)
        logger.info("Registered adapter: %s", adapter.name)

    def select(self, raw: dict[str, Any]) -> RecordAdapter | None:
        """Return the first adapter that can handle *raw*, or None."""
        for adapter in self._adapters:
            if adapter.can_handle(raw):
                return adapter
        return None

    def adapt(
        self,
        raw: dict[str, Any],
        cpu: int,
        seq: int,
        stats: dict[str, AdapterStats] | None = None,
    ) -> RawEvent:
        """Route a raw record through the first matching adapter.

        Args:
            raw: The raw record dict drained from a CPU buffer.
            cpu: CPU whose buffer recorded it.
            seq: Position of the record within that CPU's capture order.
            stats: Counters to update instead of the registry's own.

        Returns:
            A validated canonical event.

        Raises:
            NoAdapterFoundError: If no adapter's can_handle() returns True.
            AdaptationError: If the matched adapter fails to translate.
        """
        adapter = self.select(raw)
        if adapter is None:
            raise NoAdapterFoundError(
                f"No adapter can handle record with event {raw.get('event')!r}"
            )
        counters = {} if stats is None else stats
        entry = counters.setdefault(adapter.name, AdapterStats(adapter.name))
        try:
            event = adapter.adapt(raw, cpu, seq)
        except ValueError as exc:
            entry.rejected_count += 1
            logger.warning("Adapter '%s' rejected record on CPU %d: %s", adapter.name, cpu, exc)
            raise AdaptationError(adapter.name, str(exc)) from exc
        else:
            entry.accepted_count += 1
        finally:
            if stats is None:
                self.absorb(counters)
        return event

    def absorb(self, stats: dict[str, AdapterStats]) -> None:
        """Fold counters gathered by a normalization task into the registry."""
        with self._lock:
            for name, entry in stats.items():
                own = self._stats.setdefault(name, AdapterStats(name))
                own.accepted_count += entry.accepted_count
                own.rejected_count += entry.rejected_count

    @property
    def event_names(self) -> set[str]:
        """Every tracepoint name some registered adapter handles."""
        return {name for a in self._adapters for name in a.event_names}

    @property
    def adapter_names(self) -> list[str]:
        """List of registered adapter names in registration order."""
        return [a.name for a in self._adapters]

    @property
    def stats(self) -> list[dict]:
        """Per-adapter stats for observability endpoints."""
        with self._lock:
            return [s.to_dict() for s in self._stats.values()]

    @property
    def total_accepted(self) -> int:
        with self._lock:
            return sum(s.accepted_count for s in self._stats.values())

    @property
    def total_rejected(self) -> int:
        with self._lock:
            return sum(s.rejected_count for s in self._stats.values())


def default_registry() -> AdapterRegistry:
    """A registry with every scheduler tracepoint adapter registered."""
    registry = AdapterRegistry()
    for adapter in default_adapters():
        registry.register(adapter)
    return registry
