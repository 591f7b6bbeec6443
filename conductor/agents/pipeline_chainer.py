"""
Pipeline Chainer
================
Starts the downstream CD run once CI has published its artifact.

Contract:
    trigger(downstream_pipeline, params) -> run_id

    - Parameters are validated against DownstreamTriggerParams before send.
    - The call is awaited: the CI stage only succeeds once the downstream
      side acknowledged with a run id. It does not wait for the CD run itself.
    - An unreachable downstream fails loudly (TransientInfraError after the
      bounded retries) so a dropped trigger never passes silently.
    - A trigger that went out is never retracted, even if the CI run is
      aborted afterwards.

Targets:
    LocalDownstream   — the CD pipeline hosted by this same process
    HttpDownstream    — a remote conductor instance (POST /pipelines/cd/trigger)
"""
import logging
from typing import Awaitable, Callable, Dict, Mapping, Optional, Protocol, Union

import httpx
from pydantic import ValidationError

from conductor.core.config import HTTP_TIMEOUT_SECONDS
from conductor.core.exceptions import ConfigurationError, StageFailedError
from conductor.models.events import DownstreamTriggerParams
from conductor.utils.retry import with_retries

logger = logging.getLogger(__name__)


class DownstreamTarget(Protocol):
    async def submit(self, pipeline_id: str, params: DownstreamTriggerParams) -> int:
        ...


class LocalDownstream:
    """Hands the trigger to an in-process submit callable."""

    def __init__(self, submit: Callable[[DownstreamTriggerParams], Awaitable[int]]) -> None:
        self._submit = submit

    async def submit(self, pipeline_id: str, params: DownstreamTriggerParams) -> int:
        return await self._submit(params)


class HttpDownstream:
    """
    Remote trigger.

    POST <url> {"pipelineId": "cd", "params": {"imageTag": "42", "sourceRunId": 42}}
    → {"runId": 7}
    """

    def __init__(self, url: str, token: Optional[str] = None) -> None:
        if not url:
            raise ConfigurationError("DOWNSTREAM_TRIGGER_URL is not configured")
        self.url = url
        self.headers = {"Accept": "application/json", "User-Agent": "pipeline-conductor"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    async def submit(self, pipeline_id: str, params: DownstreamTriggerParams) -> int:
        payload = {"pipelineId": pipeline_id, "params": params.to_wire()}

        async def _post() -> httpx.Response:
            async with httpx.AsyncClient(headers=self.headers, timeout=HTTP_TIMEOUT_SECONDS) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
                return response

        response = await with_retries(_post, f"trigger {pipeline_id}")
        run_id = response.json().get("runId")
        if run_id is None:
            raise StageFailedError(f"Downstream {pipeline_id} did not acknowledge with a runId")
        return int(run_id)


class PipelineChainer:

    def __init__(self, targets: Optional[Dict[str, DownstreamTarget]] = None) -> None:
        self.targets: Dict[str, DownstreamTarget] = dict(targets or {})

    def register(self, pipeline_id: str, target: DownstreamTarget) -> None:
        self.targets[pipeline_id] = target

    async def trigger(
        self,
        downstream_pipeline: str,
        params: Union[DownstreamTriggerParams, Mapping[str, object]],
    ) -> int:
        target = self.targets.get(downstream_pipeline)
        if target is None:
            raise ConfigurationError(f"No downstream pipeline registered as '{downstream_pipeline}'")

        if not isinstance(params, DownstreamTriggerParams):
            try:
                params = DownstreamTriggerParams.model_validate(params)
            except ValidationError as e:
                raise ConfigurationError(
                    f"Invalid parameters for {downstream_pipeline}",
                    {"errors": e.errors(include_url=False)},
                ) from e

        logger.info(
            "Triggering %s with imageTag=%s sourceRunId=%d",
            downstream_pipeline, params.image_tag, params.source_run_id,
        )
        run_id = await target.submit(downstream_pipeline, params)
        logger.info("Downstream %s acknowledged run %d", downstream_pipeline, run_id)
        return run_id
