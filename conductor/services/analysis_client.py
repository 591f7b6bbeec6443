"""
Analysis Client
===============
Submits a checked-out revision to the static-analysis service.

The service answers asynchronously: its quality gate verdict arrives later
on POST /webhooks/quality-gate carrying the same runId.

Contract:
    POST {ANALYSIS_API_URL}/analyses
    {"runId": 42, "projectKey": "app", "revision": "<sha>"} → {"taskId": "..."}
"""
import logging
from typing import Optional

import httpx

from conductor.core.config import (
    ANALYSIS_API_TOKEN,
    ANALYSIS_API_URL,
    ANALYSIS_PROJECT_KEY,
    HTTP_TIMEOUT_SECONDS,
)
from conductor.core.exceptions import ConfigurationError
from conductor.utils.retry import with_retries

logger = logging.getLogger(__name__)


class AnalysisClient:

    def __init__(
        self,
        base_url: str = ANALYSIS_API_URL,
        token: Optional[str] = ANALYSIS_API_TOKEN,
        project_key: str = ANALYSIS_PROJECT_KEY,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.project_key = project_key
        self.headers = {"Accept": "application/json", "User-Agent": "pipeline-conductor"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    async def submit(self, run_id: int, revision: str) -> str:
        """Submit the revision for analysis and return the service's task id."""
        if not self.base_url:
            raise ConfigurationError("ANALYSIS_API_URL is not configured")

        payload = {"runId": run_id, "projectKey": self.project_key, "revision": revision}

        async def _post() -> httpx.Response:
            async with httpx.AsyncClient(headers=self.headers, timeout=HTTP_TIMEOUT_SECONDS) as client:
                response = await client.post(f"{self.base_url}/analyses", json=payload)
                response.raise_for_status()
                return response

        response = await with_retries(_post, f"analysis submit for run {run_id}")
        task_id = str(response.json().get("taskId", ""))
        logger.info("Run %d submitted for analysis (task=%s)", run_id, task_id or "<none>")
        return task_id
