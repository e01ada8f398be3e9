"""DiagnosticFormatter — plain-text rendering of an interpretation's diagnostics.

FATAL entries are rendered apart from the rest and called out in the
header, so a reader can tell at a glance whether a collection is fully
or only partially trustworthy.

Usage:
    text = DiagnosticFormatter.format_plain(result)
"""

from __future__ import annotations

from schedviz.core.engine import InterpretationResult
from schedviz.domain.diagnostics import Diagnostic
from schedviz.domain.enums import Severity

_MARKERS = {
    Severity.INFO: "  ·",
    Severity.WARNING: "  !",
    Severity.FATAL: "!!!",
}


class DiagnosticFormatter:
    """Deterministic formatter for diagnostics."""

    @staticmethod
    def format_line(diagnostic: Diagnostic) -> str:
        where = []
        if diagnostic.cpu is not None:
            where.append(f"cpu={diagnostic.cpu}")
        if diagnostic.other_cpu is not None:
            where.append(f"other_cpu={diagnostic.other_cpu}")
        if diagnostic.pid is not None:
            where.append(f"pid={diagnostic.pid}")
        location = f" [{' '.join(where)}]" if where else ""
        return (
            f"{_MARKERS[diagnostic.severity]} {diagnostic.severity.value.upper():<7} "
            f"t={diagnostic.timestamp_ns} {diagnostic.kind.value}{location}: {diagnostic.message}"
        )

    @classmethod
    def format_plain(cls, result: InterpretationResult) -> str:
        """Render every diagnostic, FATAL ones first in their own section."""
        fatal = [d for d in result.diagnostics if d.severity == Severity.FATAL]
        other = [d for d in result.diagnostics if d.severity != Severity.FATAL]

        lines = [f"Diagnostics for collection {result.collection_id}"]
        lines.append("=" * 50)
        if fatal:
            halted = ", ".join(str(cpu) for cpu in sorted(result.halted_cpus))
            lines.append(f"STATUS: PARTIAL (halted CPUs: {halted})")
        else:
            lines.append("STATUS: COMPLETE")
        lines.append(f"Window: [{result.window.start_ns}, {result.window.end_ns})")
        lines.append(f"Intervals: {len(result.intervals)}")
        lines.append("")

        if fatal:
            lines.append("--- FATAL ---")
            lines.extend(cls.format_line(d) for d in fatal)
            lines.append("")

        lines.append(f"--- Warnings and notes ({len(other)}) ---")
        lines.extend(cls.format_line(d) for d in other)
        return "\n".join(lines)
