"""
FastAPI route definitions for the proctoring service.

  GET  /health
  POST /sessions                              — create (pending)
  GET  /sessions/{id}
  POST /sessions/{id}/consent | start | complete
  POST /sessions/{id}/detections              — record one detection result
  POST /sessions/{id}/stream                  — snapshot / video / audio chunk
  POST /sessions/{id}/interventions           — warning | pause | terminate
  GET  /exams/{exam_id}/live                  — live monitoring view
  GET  /exams/{exam_id}/alerts/pending
  POST /alerts/{id}/acknowledge | resolve
  POST /violations/{id}/review
  PUT  /exams/{exam_id}/settings
  GET  /exams/{exam_id}/settings
  POST /reports                               — {sessionId, format}
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from proctoring import schemas
from proctoring.config import Settings, get_settings
from proctoring.detection.types import DetectionResult, EventType, InterventionType, Severity
from proctoring.ingestion.stream import ChunkKind, StreamChunk, StreamIngestor
from proctoring.monitoring.feed import AlertFeed
from proctoring.monitoring.live import LiveMonitoringAggregator, RiskStatus
from proctoring.reports.generator import ReportGenerator
from proctoring.session.manager import SessionManager
from proctoring.storage.minio_client import check_minio_connection
from proctoring.store.proctoring_store import ProctoringStore
from proctoring.timeline import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Service container ─────────────────────────────────────────────────────────

@dataclass
class Services:
    settings: Settings
    store:    ProctoringStore
    manager:  SessionManager
    feed:     AlertFeed
    ingestor: StreamIngestor
    reports:  ReportGenerator
    detector: Any = None
    extra:    dict[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        settings:  Settings | None = None,
        store:     ProctoringStore | None = None,
        publisher: Any = None,
        uploader:  Any = None,
        detector:  Any = None,
    ) -> "Services":
        settings = settings or get_settings()
        store    = store or ProctoringStore(settings=settings)
        manager  = SessionManager(store, settings=settings, publisher=publisher)
        feed     = AlertFeed()
        feed.attach_manager(manager)
        return cls(
            settings = settings,
            store    = store,
            manager  = manager,
            feed     = feed,
            ingestor = StreamIngestor(store, uploader=uploader, settings=settings),
            reports  = ReportGenerator(store),
            detector = detector,
        )


def get_services(request: Request) -> Services:
    return request.app.state.services


# ── Request bodies ────────────────────────────────────────────────────────────

class _Body(BaseModel):
    """Accepts camelCase (browser clients) and snake_case field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateSessionRequest(_Body):
    exam_id:     str
    student_id:  str
    device_info: dict[str, Any] = Field(default_factory=dict)


class ConsentRequest(_Body):
    device_info: dict[str, Any] = Field(default_factory=dict)


class DetectionRequest(_Body):
    event_type:     EventType
    severity:       Severity
    confidence:     float = Field(ge=0.0, le=1.0)
    details:        dict[str, Any] = Field(default_factory=dict)
    requires_alert: bool = False
    timestamp:      datetime | None = None


class StreamRequest(_Body):
    kind:         ChunkKind
    data:         str                    # base64
    timestamp:    float | None = None    # epoch seconds
    content_type: str | None = None


class InterventionRequest(_Body):
    message:   str
    action:    InterventionType = InterventionType.WARNING
    issued_by: str | None = None
    alert_id:  str | None = None


class AlertActionRequest(_Body):
    teacher_id: str | None = None
    notes:      str | None = None


class ReviewRequest(_Body):
    reviewer_id:       str
    notes:             str | None = None
    is_false_positive: bool | None = None
    action_taken:      str | None = None


class ReportRequest(_Body):
    session_id: str
    format:     str = "json"


# ── Health ────────────────────────────────────────────────────────────────────

@router.get("/health")
def health(services: Services = Depends(get_services)) -> dict[str, Any]:
    db_ok    = services.store.check_connection()
    minio_ok = check_minio_connection()
    models   = services.detector.status() if services.detector is not None else {}

    return {
        "status": "ok" if db_ok else "degraded",
        "models": models,
        "dependencies": {
            "database":  "ok" if db_ok else "error",
            "minio":     "ok" if minio_ok else "error",
            "messaging": "ok" if services.feed.connected else "error",
        },
    }


# ── Sessions ──────────────────────────────────────────────────────────────────

@router.post("/sessions", response_model=schemas.Session, status_code=201)
async def create_session(req: CreateSessionRequest, services: Services = Depends(get_services)):
    return await services.manager.create_session(req.exam_id, req.student_id, req.device_info)


@router.get("/sessions/{session_id}", response_model=schemas.Session)
async def get_session(session_id: str, services: Services = Depends(get_services)):
    return await services.manager.get_session(session_id)


@router.post("/sessions/{session_id}/consent", response_model=schemas.Session)
async def record_consent(
    session_id: str,
    req:        ConsentRequest | None = None,
    services:   Services = Depends(get_services),
):
    device_info = req.device_info if req is not None else None
    return await services.manager.record_consent(session_id, device_info)


@router.post("/sessions/{session_id}/start")
async def start_session(session_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    changed = await services.manager.start_session(session_id)
    return await _transition_response(services, session_id, changed)


@router.post("/sessions/{session_id}/complete")
async def complete_session(session_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    changed = await services.manager.complete_session(session_id)
    return await _transition_response(services, session_id, changed)


async def _transition_response(services: Services, session_id: str, changed: bool) -> dict[str, Any]:
    session = await services.manager.get_session(session_id)
    return {"sessionId": session_id, "changed": changed, "status": session.status.value}


@router.post("/sessions/{session_id}/detections", response_model=schemas.DetectionOutcome)
async def record_detection(
    session_id: str,
    req:        DetectionRequest,
    services:   Services = Depends(get_services),
):
    result = DetectionResult(
        timestamp      = req.timestamp or utcnow(),
        event_type     = req.event_type,
        severity       = req.severity,
        confidence     = req.confidence,
        details        = req.details,
        requires_alert = req.requires_alert,
    )
    return await services.manager.handle_detection(session_id, result)


@router.post("/sessions/{session_id}/stream")
async def ingest_stream(
    session_id: str,
    req:        StreamRequest,
    services:   Services = Depends(get_services),
) -> dict[str, Any]:
    try:
        data = base64.b64decode(req.data, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Chunk data is not valid base64")

    chunk = StreamChunk(session_id, req.kind, data, req.timestamp, req.content_type)
    result = await services.ingestor.process(chunk)
    return {
        "sessionId": result.session_id,
        "kind":      result.kind.value,
        "accepted":  result.accepted,
        "objectKey": result.object_key,
        "eventId":   result.event_id,
        "reason":    result.reason,
    }


@router.post("/sessions/{session_id}/interventions")
async def send_intervention(
    session_id: str,
    req:        InterventionRequest,
    services:   Services = Depends(get_services),
) -> dict[str, Any]:
    intervention = await services.manager.send_intervention(
        session_id, req.message, req.action, req.issued_by, req.alert_id,
    )
    session = await services.manager.get_session(session_id)
    return {
        "applied":      intervention is not None,
        "intervention": intervention.model_dump(mode="json") if intervention else None,
        "status":       session.status.value,
    }


# ── Live monitoring ───────────────────────────────────────────────────────────

@router.get("/exams/{exam_id}/live")
async def live_view(exam_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    monitor = LiveMonitoringAggregator(exam_id, services.store, services.manager, settings=services.settings)
    snapshot = await monitor.refresh()
    return {
        "examId":   exam_id,
        "sessions": [s.to_dict() for s in snapshot.sessions],
        "counts":   {status.value: snapshot.count(status) for status in RiskStatus},
        "pendingAlerts": [a.model_dump(mode="json") for a in snapshot.pending_alerts],
    }


@router.get("/exams/{exam_id}/alerts/pending", response_model=list[schemas.Alert])
async def pending_alerts(exam_id: str, services: Services = Depends(get_services)):
    monitor = LiveMonitoringAggregator(exam_id, services.store, services.manager, settings=services.settings)
    return await monitor.get_pending_alerts()


@router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: str,
    req:      AlertActionRequest | None = None,
    services: Services = Depends(get_services),
):
    req = req or AlertActionRequest()
    alert = await asyncio.to_thread(services.store.acknowledge_alert, alert_id, req.teacher_id)
    return alert if alert is not None else _unknown_alert(alert_id)


@router.post("/alerts/{alert_id}/resolve")
async def resolve_alert(
    alert_id: str,
    req:      AlertActionRequest | None = None,
    services: Services = Depends(get_services),
):
    req = req or AlertActionRequest()
    alert = await asyncio.to_thread(services.store.resolve_alert, alert_id, req.teacher_id, req.notes)
    return alert if alert is not None else _unknown_alert(alert_id)


def _unknown_alert(alert_id: str) -> dict:
    # Acting on an alert that does not exist is a no-op, not an error
    return {"alertId": alert_id, "changed": False}


@router.post("/violations/{violation_id}/review", response_model=schemas.Violation)
async def review_violation(
    violation_id: str,
    req:          ReviewRequest,
    services:     Services = Depends(get_services),
):
    violation = await services.manager.review_violation(
        violation_id, req.reviewer_id, req.notes, req.is_false_positive, req.action_taken,
    )
    if violation is None:
        raise HTTPException(status_code=404, detail="Violation not found")
    return violation


# ── Settings ──────────────────────────────────────────────────────────────────

@router.put("/exams/{exam_id}/settings", response_model=schemas.ProctoringSettings)
async def put_settings(
    exam_id:  str,
    body:     dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
):
    try:
        data = schemas.ProctoringSettings.model_validate({**body, "exam_id": exam_id})
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))
    return await asyncio.to_thread(services.store.upsert_settings, data)


@router.get("/exams/{exam_id}/settings", response_model=schemas.ProctoringSettings)
async def get_settings_for_exam(exam_id: str, services: Services = Depends(get_services)):
    found = await asyncio.to_thread(services.store.get_exam_settings, exam_id)
    if found is None:
        raise HTTPException(status_code=404, detail="No proctoring settings for exam")
    return found


# ── Reports ───────────────────────────────────────────────────────────────────

@router.post("/reports")
async def generate_report(req: ReportRequest, services: Services = Depends(get_services)):
    response = await services.reports.generate(req.session_id, req.format)
    if response.status == "not_found":
        raise HTTPException(status_code=404, detail=response.message)
    if response.status == "not_implemented":
        raise HTTPException(status_code=501, detail=response.message)
    if response.format == "html":
        return HTMLResponse(content=response.body)
    return response.body
