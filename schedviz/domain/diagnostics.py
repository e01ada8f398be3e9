"""Diagnostics — what an inference pass could not take at face value.

Diagnostics are observations about the trace, not exceptions.  They are
emitted in pass order and handed to callers unchanged, so a caller can tell
a fully trustworthy collection from a partial one.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from schedviz.domain.enums import DiagnosticKind, Severity


class Diagnostic(BaseModel):
    """One immutable diagnostic record."""

    severity: Severity
    kind: DiagnosticKind
    timestamp_ns: int
    cpu: Optional[int] = Field(default=None, description="CPU the diagnostic is scoped to")
    other_cpu: Optional[int] = Field(
        default=None, description="Second CPU involved, e.g. the other side of a clock inversion",
    )
    pid: Optional[int] = None
    message: str = Field(..., min_length=1, max_length=1024)

    model_config = {"frozen": True}

    @property
    def is_fatal(self) -> bool:
        return self.severity == Severity.FATAL


class DiagnosticLog:
    """Append-only collector used while a pass is running."""

    __slots__ = ("_entries",)

    def __init__(self) -> None:
        self._entries: list[Diagnostic] = []

    def emit(
        self,
        severity: Severity,
        kind: DiagnosticKind,
        timestamp_ns: int,
        message: str,
        cpu: int | None = None,
        pid: int | None = None,
        other_cpu: int | None = None,
    ) -> Diagnostic:
        diagnostic = Diagnostic(
            severity=severity,
            kind=kind,
            timestamp_ns=timestamp_ns,
            cpu=cpu,
            other_cpu=other_cpu,
            pid=pid,
            message=message,
        )
        self._entries.append(diagnostic)
        return diagnostic

    def extend(self, diagnostics: list[Diagnostic]) -> None:
        self._entries.extend(diagnostics)

    @property
    def entries(self) -> list[Diagnostic]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
