"""
Pass Results

Everything a migration pass reports back to the host: entries, timings and
counters.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from relive.core.paths import ReferencePath, describe_member


class EntrySeverity(str, Enum):
    """Severity of a result entry."""

    TRACE = "trace"
    INFORMATION = "information"
    WARNING = "warning"
    ERROR = "error"


class ResultEntry:
    """
    A message produced during a pass.

    Two entries are equal when they are about the same member (by identity)
    and share a severity, so hosts can de-duplicate repeated reports.
    """

    __slots__ = ("severity", "message", "exception", "member", "path")

    def __init__(
        self,
        severity: EntrySeverity,
        message: Optional[str] = None,
        exception: Optional[BaseException] = None,
        member: Any = None,
        path: Optional[ReferencePath] = None,
    ):
        self.severity = severity
        self.message = message if message is not None else _format_exception(exception)
        self.exception = exception
        self.member = member
        self.path = path

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResultEntry):
            return NotImplemented
        return self.member is other.member and self.severity == other.severity

    def __hash__(self) -> int:
        return hash((id(self.member), self.severity))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "message": self.message,
            "exception": type(self.exception).__name__ if self.exception else None,
            "member": describe_member(self.member) if self.member is not None else None,
            "path": str(self.path) if self.path is not None else None,
        }

    def __repr__(self) -> str:
        member = f" ({describe_member(self.member)})" if self.member is not None else ""
        return f"<{self.severity.value}{member}: {self.message}>"


@dataclass
class TimingEntry:
    """Accumulated time and instance count for one bucket."""

    name: str
    milliseconds: float = 0.0
    instances: int = 0

    def add(self, milliseconds: float, instances: int) -> None:
        self.milliseconds += milliseconds
        self.instances += instances


@dataclass
class InstanceTimingEntry(TimingEntry):
    """Timing bucket optionally broken down by the root each sample came from."""

    roots: Dict[str, TimingEntry] = field(default_factory=dict)

    def add_root(self, root: str, milliseconds: float, instances: int) -> None:
        entry = self.roots.get(root)
        if entry is None:
            entry = self.roots[root] = TimingEntry(root)
        entry.add(milliseconds, instances)


@dataclass
class PassResult:
    """Outcome of a single migration pass."""

    NO_ACTION: ClassVar[Optional["PassResult"]] = None

    entries: List[ResultEntry] = field(default_factory=list)
    no_action: bool = False
    created_at: float = field(default_factory=time.time)

    instances_processed: int = 0
    type_timings: Dict[str, InstanceTimingEntry] = field(default_factory=dict)
    upgrader_timings: Dict[str, InstanceTimingEntry] = field(default_factory=dict)
    auto_skipped_types: List[str] = field(default_factory=list)

    # Milliseconds
    static_field_time: float = 0.0
    watched_instance_time: float = 0.0
    instance_queue_time: float = 0.0
    diagnostics_time: float = 0.0
    processing_time: float = 0.0

    @classmethod
    def no_action_result(cls) -> "PassResult":
        """The shared result for passes with nothing queued."""
        if cls.NO_ACTION is None:
            cls.NO_ACTION = cls(no_action=True)
        return cls.NO_ACTION

    @property
    def has_errors(self) -> bool:
        return any(e.severity is EntrySeverity.ERROR for e in self.entries)

    @property
    def has_warnings(self) -> bool:
        return any(e.severity is EntrySeverity.WARNING for e in self.entries)

    @property
    def success(self) -> bool:
        return not self.has_errors

    @property
    def errors(self) -> List[ResultEntry]:
        return [e for e in self.entries if e.severity is EntrySeverity.ERROR]

    @property
    def warnings(self) -> List[ResultEntry]:
        return [e for e in self.entries if e.severity is EntrySeverity.WARNING]

    def add_entry(self, entry: ResultEntry) -> None:
        self.entries.append(entry)

    def add_timing(
        self,
        table: Dict[str, InstanceTimingEntry],
        name: str,
        milliseconds: float,
        instances: int,
        root: Optional[str] = None,
    ) -> None:
        entry = table.get(name)
        if entry is None:
            entry = table[name] = InstanceTimingEntry(name)
        entry.add(milliseconds, instances)
        if root is not None:
            entry.add_root(root, milliseconds, instances)

    def get_stats(self) -> Dict[str, Any]:
        """Summary suitable for structured logging."""
        return {
            "success": self.success,
            "no_action": self.no_action,
            "errors": len(self.errors),
            "warnings": len(self.warnings),
            "instances_processed": self.instances_processed,
            "auto_skipped_types": len(self.auto_skipped_types),
            "static_field_ms": round(self.static_field_time, 3),
            "watched_instance_ms": round(self.watched_instance_time, 3),
            "instance_queue_ms": round(self.instance_queue_time, 3),
            "diagnostics_ms": round(self.diagnostics_time, 3),
            "processing_ms": round(self.processing_time, 3),
        }


@dataclass
class TaskOutcome:
    """Result of processing one queued instance."""

    instances: int = 1
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, error: BaseException) -> "TaskOutcome":
        return cls(instances=1, error=error)


def _format_exception(exception: Optional[BaseException]) -> str:
    if exception is None:
        return ""
    return f"{type(exception).__name__}: {exception}"
