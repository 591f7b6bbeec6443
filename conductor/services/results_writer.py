"""
Results Writer
==============
Persists run reports and captured stage output under RESULTS_DIR.

Layout:
    RESULTS_DIR/<KIND>-<run_id>.json                 — terminal run report
    RESULTS_DIR/output/<KIND>-<run_id>/<stage>.log   — captured stage output

The returned log path is what StageResult.output_ref points at. Write
failures are logged and reported as None; a report that cannot be written
never changes a run's outcome.
"""
import json
import logging
import os
import re
from typing import Optional

from conductor.core.config import RESULTS_DIR
from conductor.models.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def _slug(name: str) -> str:
    return _UNSAFE_CHARS.sub("-", name.strip().lower()).strip("-") or "stage"


class ResultsWriter:
    """File-system sink for run reports and stage output."""

    def __init__(self, results_dir: str = RESULTS_DIR) -> None:
        self.results_dir = results_dir

    def write_run(self, run: PipelineRun) -> Optional[str]:
        """Serialise a run (status, stage log, failure) to JSON."""
        path = os.path.join(self.results_dir, f"{run.key}.json")
        try:
            os.makedirs(self.results_dir, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(run.model_dump(mode="json"), f, indent=2)
            logger.info("Run report written to %s", path)
            return path
        except OSError as e:
            logger.error("Failed to write run report %s: %s", path, e)
            return None

    def write_stage_output(self, run: PipelineRun, stage_name: str, output: str) -> Optional[str]:
        directory = os.path.join(self.results_dir, "output", run.key)
        path = os.path.join(directory, f"{_slug(stage_name)}.log")
        try:
            os.makedirs(directory, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write(output)
            return path
        except OSError as e:
            logger.error("Failed to write stage output %s: %s", path, e)
            return None
