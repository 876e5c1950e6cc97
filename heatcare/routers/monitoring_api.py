"""
Monitoring API — HTTP endpoints for the per-patient monitoring scheduler.

Endpoints:
  POST   /api/monitoring/checkups                Start (or restart) a chain
  DELETE /api/monitoring/checkups/{id}?track=    Cancel one track, or all
  POST   /api/monitoring/escalate                Restart a chain one level up
  POST   /api/monitoring/deescalate              Restart a chain one level down
  POST   /api/monitoring/responses               Classify a reply and apply it
  POST   /api/monitoring/classify-response       Classify a reply only
  GET    /api/monitoring/status/{id}             Chain state per track
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from heatcare.monitoring.errors import TransientStoreError
from heatcare.monitoring.jobs import CheckinJob
from heatcare.monitoring.responses import action_for, classify_response
from heatcare.monitoring.tracks import MonitoringTrack, parse_track

logger = logging.getLogger("monitoring.api")

router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])


# ── Request / Response Models ──


class StartChainRequest(BaseModel):
    """Request body for POST /api/monitoring/checkups."""

    patient_id: str
    track: str = MonitoringTrack.SYMPTOM.value
    level: Optional[str] = None
    total_checks: Optional[int] = Field(default=None, ge=1)
    context: dict[str, Any] = Field(default_factory=dict)


class ChangeLevelRequest(BaseModel):
    """Request body for POST /api/monitoring/escalate and /deescalate."""

    patient_id: str
    track: str = MonitoringTrack.SYMPTOM.value
    new_level: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)


class PatientReplyRequest(BaseModel):
    """Request body for POST /api/monitoring/responses."""

    patient_id: str
    text: str


class ClassifyRequest(BaseModel):
    text: str


class ChainResponse(BaseModel):
    success: bool
    scheduled: bool = False
    job: Optional[dict[str, Any]] = None
    message: str = ""


class CancelResponse(BaseModel):
    success: bool
    cancelled: dict[str, bool] = Field(default_factory=dict)


class ReplyResponse(BaseModel):
    response: str
    action: str
    handled: bool
    job: Optional[dict[str, Any]] = None


# ── Helpers ──


def _require_controller():
    from heatcare.monitoring.setup import get_controller

    controller = get_controller()
    if controller is None:
        raise HTTPException(status_code=503, detail="Monitoring not initialized")
    return controller


def _track_or_400(value: str) -> MonitoringTrack:
    try:
        return parse_track(value)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid track: {value}. "
                   f"Valid tracks: {[t.value for t in MonitoringTrack]}",
        )


def _chain_response(job: CheckinJob | None, message: str = "") -> ChainResponse:
    if job is None:
        return ChainResponse(success=True, scheduled=False, message=message or "No chain scheduled")
    return ChainResponse(
        success=True,
        scheduled=True,
        job=job.model_dump(mode="json"),
        message=message,
    )


# ── Endpoints ──


@router.post("/checkups", response_model=ChainResponse)
async def start_checkups(request: StartChainRequest):
    """Start a monitoring chain, replacing any chain already on that track."""
    controller = _require_controller()
    track = _track_or_400(request.track)
    try:
        job = await controller.start(
            request.patient_id, track, request.level, request.context,
            total_checks=request.total_checks,
        )
    except TransientStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return _chain_response(job, f"{track.value} monitoring started" if job else "")


@router.delete("/checkups/{patient_id}", response_model=CancelResponse)
async def cancel_checkups(patient_id: str, track: str = "all"):
    """Cancel one track, or every track with track=all."""
    controller = _require_controller()
    try:
        if track == "all":
            cancelled = await controller.cancel_all(patient_id)
        else:
            parsed = _track_or_400(track)
            cancelled = {parsed.value: await controller.cancel(patient_id, parsed)}
    except TransientStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return CancelResponse(success=True, cancelled=cancelled)


@router.post("/escalate", response_model=ChainResponse)
async def escalate(request: ChangeLevelRequest):
    controller = _require_controller()
    return await _change_level(controller.escalate, request)


@router.post("/deescalate", response_model=ChainResponse)
async def deescalate(request: ChangeLevelRequest):
    controller = _require_controller()
    return await _change_level(controller.deescalate, request)


async def _change_level(operation, request: ChangeLevelRequest) -> ChainResponse:
    track = _track_or_400(request.track)
    try:
        job = await operation(request.patient_id, track, request.new_level, request.context)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TransientStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return _chain_response(job)


@router.post("/responses", response_model=ReplyResponse)
async def handle_reply(request: PatientReplyRequest):
    """
    Apply a patient's poll reply to their chains.

    Replies that are not poll answers come back with handled=False and
    must be routed to the conversational handler by the caller.
    """
    from heatcare.monitoring.setup import get_interpreter

    interpreter = get_interpreter()
    if interpreter is None:
        raise HTTPException(status_code=503, detail="Monitoring not initialized")
    try:
        result = await interpreter.handle(request.patient_id, request.text)
    except TransientStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return ReplyResponse(
        response=result.response.value,
        action=result.action.value,
        handled=result.handled,
        job=result.job.model_dump(mode="json") if result.job else None,
    )


@router.post("/classify-response")
async def classify(request: ClassifyRequest):
    response = classify_response(request.text)
    return {
        "response": response.value,
        "action": action_for(response, request.text).value,
    }


@router.get("/status/{patient_id}")
async def monitoring_status(patient_id: str):
    """Chain state and pending job for every track."""
    controller = _require_controller()
    return await controller.status(patient_id)
