"""
Run Registry
============
In-process index of pipeline runs and the worker tasks executing them.

Runs are the live PipelineRun objects the Stage Runner mutates; the API
reads them from here. Terminal run history is also written to disk by the
ResultsWriter, so the registry may be trimmed without losing reports.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from conductor.models.pipeline_run import PipelineKind, PipelineRun

logger = logging.getLogger(__name__)

RunKey = Tuple[PipelineKind, int]


class RunRegistry:

    def __init__(self, max_finished: int = 500) -> None:
        self._runs: Dict[RunKey, PipelineRun] = {}
        self._tasks: Dict[RunKey, asyncio.Task] = {}
        self.max_finished = max_finished

    def add(self, run: PipelineRun) -> None:
        self._runs[(run.kind, run.run_id)] = run

    def attach_task(self, run: PipelineRun, task: asyncio.Task) -> None:
        key = (run.kind, run.run_id)
        self._tasks[key] = task
        task.add_done_callback(lambda _t: self._tasks.pop(key, None))

    def get(self, kind: PipelineKind, run_id: int) -> Optional[PipelineRun]:
        return self._runs.get((kind, run_id))

    def list(self, kind: Optional[PipelineKind] = None) -> List[PipelineRun]:
        runs = [r for r in self._runs.values() if kind is None or r.kind == kind]
        return sorted(runs, key=lambda r: (r.kind.value, r.run_id))

    def active_tasks(self) -> List[asyncio.Task]:
        return [t for t in self._tasks.values() if not t.done()]

    def prune(self) -> int:
        """Drop the oldest terminal runs beyond ``max_finished``."""
        finished = sorted(
            (r for r in self._runs.values() if r.is_terminal),
            key=lambda r: r.finished_at or r.created_at,
        )
        excess = len(finished) - self.max_finished
        for run in finished[:max(0, excess)]:
            self._runs.pop((run.kind, run.run_id), None)
        if excess > 0:
            logger.debug("Pruned %d finished runs from registry", excess)
        return max(0, excess)
