"""
Task Scheduler

Deferred population work. Upgraders queue a task once the placeholder for
an old value is cached; the engine drains the queues after static fields and
watched instances were visited. Work that needs a fully populated graph,
like re-hashing migrated keys, goes to the late queue, which only runs when
the default queue is empty.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Optional, Tuple

import structlog

from relive.core.paths import ReferencePath, describe_member
from relive.core.result import EntrySeverity

if TYPE_CHECKING:
    from relive.core.engine import MigrationEngine
    from relive.upgraders.base import InstanceUpgrader

logger = structlog.get_logger(__name__)


@dataclass
class InstanceTask:
    """Populate ``new`` from ``old`` with ``upgrader``, in the context it was queued in."""

    upgrader: "InstanceUpgrader"
    old: Any
    new: Any
    src_field: Any = None
    dst_field: Any = None
    path: Optional[ReferencePath] = None
    late: bool = False
    done: bool = field(default=False, compare=False)

    @property
    def context(self) -> Tuple[Any, Any, Optional[ReferencePath]]:
        return self.src_field, self.dst_field, self.path


class TaskScheduler:
    """
    Two FIFO queues of :class:`InstanceTask`.

    A failing task is logged as an error against the old value's type and
    counted as processed; the remaining tasks still run.
    """

    def __init__(self, engine: "MigrationEngine"):
        self._engine = engine
        self._default: Deque[InstanceTask] = deque()
        self._late: Deque[InstanceTask] = deque()
        self._pending: Dict[int, List[InstanceTask]] = {}

    def __len__(self) -> int:
        return len(self._default) + len(self._late)

    @property
    def pending_count(self) -> int:
        return sum(1 for t in self._default if not t.done) + sum(1 for t in self._late if not t.done)

    def schedule(self, upgrader: "InstanceUpgrader", old: Any, new: Any, late: bool = False) -> InstanceTask:
        """Queue population of ``new``; the current diagnostic context is captured."""
        src_field, dst_field, path = self._engine.capture_context()
        task = InstanceTask(upgrader, old, new, src_field, dst_field, path, late)

        (self._late if late else self._default).append(task)
        self._pending.setdefault(id(new), []).append(task)
        return task

    def drain(self) -> int:
        """Run tasks until both queues are empty. Returns the number of tasks run."""
        count = 0
        while self._default or self._late:
            task = self._default.popleft() if self._default else self._late.popleft()
            if task.done:
                continue
            self._run(task)
            count += 1
        return count

    def ensure_processed(self, new: Any) -> None:
        """Run the pending tasks populating ``new`` right away."""
        tasks = self._pending.pop(id(new), None)
        if not tasks:
            return
        for task in tasks:
            if not task.done and task.new is new:
                self._run(task)

    def clear(self) -> None:
        self._default.clear()
        self._late.clear()
        self._pending.clear()

    def _run(self, task: InstanceTask) -> None:
        task.done = True
        engine = self._engine
        result = engine.result
        config = engine.config

        saved = engine.capture_context()
        engine.restore_context(task.context)
        start = time.perf_counter()
        try:
            outcome = task.upgrader.process_instance(task.old, task.new)
        finally:
            elapsed = (time.perf_counter() - start) * 1000
            engine.restore_context(saved)

        result.instances_processed += outcome.instances

        root = None
        if config.trace_roots and task.path is not None:
            root = describe_member(task.path.root.member)

        if config.include_type_timings:
            old_type = type(task.old)
            result.add_timing(
                result.type_timings,
                f"{old_type.__module__}.{old_type.__qualname__}",
                elapsed,
                outcome.instances,
                root,
            )
        if config.include_upgrader_timings:
            result.add_timing(result.upgrader_timings, task.upgrader.name, elapsed, outcome.instances, root)

        if not outcome.succeeded:
            old_type = type(task.old)
            engine.log(
                EntrySeverity.ERROR,
                f"{task.upgrader.name} failed to upgrade an instance of "
                f"{old_type.__module__}.{old_type.__qualname__}: "
                f"{type(outcome.error).__name__}: {outcome.error}",
                exception=outcome.error,
                member=old_type,
                path=task.path,
            )
