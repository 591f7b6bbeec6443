"""
POST /pipelines/{pipeline_id}/trigger
Entry point of the CD pipeline when CI runs in another conductor instance.
Body and response mirror HttpDownstream: {pipelineId, params:{imageTag, sourceRunId}} → {runId}.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from conductor.agents.orchestrator import Orchestrator
from conductor.api.dependencies import get_orchestrator
from conductor.core.constants import CD_PIPELINE_NAME
from conductor.models.events import DownstreamTriggerParams

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipelines", tags=["Pipelines"])


class TriggerParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_tag: str = Field(alias="imageTag")
    source_run_id: int = Field(alias="sourceRunId")


class TriggerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pipeline_id: Optional[str] = Field(default=None, alias="pipelineId")
    params: TriggerParams


class TriggerResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_id: int = Field(alias="runId")


@router.post("/{pipeline_id}/trigger", response_model=TriggerResponse)
async def trigger_pipeline(
    pipeline_id: str,
    request: TriggerRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    if pipeline_id != CD_PIPELINE_NAME:
        raise HTTPException(status_code=404, detail=f"Pipeline '{pipeline_id}' cannot be triggered remotely")
    if request.pipeline_id and request.pipeline_id != pipeline_id:
        raise HTTPException(status_code=400, detail="pipelineId does not match the URL")

    try:
        params = DownstreamTriggerParams(
            image_tag=request.params.image_tag,
            source_run_id=request.params.source_run_id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    run_id = await orchestrator.submit_cd(params)
    logger.info("Remote trigger accepted: CD run %d for image tag %s", run_id, params.image_tag)
    return TriggerResponse(run_id=run_id)
