"""Analytics run endpoints.

WHAT:
    Thin HTTP wrappers around the flow orchestrator:
    - POST /analytics/trigger           : start a run for a user (202 / 409)
    - GET  /analytics/status/{run_id}   : run state and progress
    - GET  /analytics/debug/flow/{run_id}: finalization job details for operators

WHY:
    - Triggering never waits for the run; clients poll status
    - A user with a run in flight gets 409 with the current lock status,
      not a second run

REFERENCES:
    - merchant_analytics/services/flow_orchestrator.py
    - merchant_analytics/workers/arq_worker.py
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from merchant_analytics.deps import get_orchestrator
from merchant_analytics.schemas import (
    ErrorResponse,
    FlowDebugResponse,
    RunStatusResponse,
    TriggerRequest,
    TriggerResponse,
)
from merchant_analytics.services.errors import RunConflictError
from merchant_analytics.services.flow_orchestrator import FlowOrchestrator
from merchant_analytics.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["Analytics"])


@router.post(
    "/trigger",
    status_code=202,
    response_model=TriggerResponse,
    responses={409: {"model": ErrorResponse, "description": "A run is already in flight for this user"}},
    summary="Trigger an analytics run",
)
async def trigger_analytics(
    payload: TriggerRequest,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    try:
        run_id = await orchestrator.trigger_run(payload.user_id, payload.portal_id)
    except RunConflictError as e:
        logger.warning("[API] Rejected trigger for user %s: %s", payload.user_id, e)
        return JSONResponse(
            status_code=409,
            content=ErrorResponse(detail=e.message, status=e.status).model_dump(),
        )
    except Exception as e:
        logger.exception("[API] Failed to trigger analytics for user %s", payload.user_id)
        capture_exception(e, extra={"operation": "trigger_analytics", "user_id": payload.user_id})
        raise HTTPException(status_code=500, detail="Failed to queue analytics run")

    return TriggerResponse(message="Analytics job successfully queued.", run_id=run_id)


@router.get(
    "/status/{run_id}",
    response_model=RunStatusResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Run status",
)
async def get_run_status(
    run_id: str,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    status = await orchestrator.describe_run(run_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return status


@router.get(
    "/debug/flow/{run_id}",
    response_model=FlowDebugResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Finalization job details",
)
async def debug_flow(
    run_id: str,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    """Failure reason, stacktrace and return value of the run's finalization.

    `is_stuck` is true while the job is active or still waiting on merchants.
    """
    details = await orchestrator.describe_finalization(run_id)
    if details is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return details
