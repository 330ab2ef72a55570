"""
ProctoredExamRunner — drives one student's proctored attempt end to end.

    consent → permissions + captures → session start → detection engine
            → (recording) → periodic snapshots → complete | terminate

Intervention notifications from the SessionManager steer the attempt while
it runs: a warning is shown to the student, a pause stops the detection
engine, and a terminate (teacher or auto policy) tears everything down.
Every one of them reaches the student through ``notify``; nothing ends the
attempt silently.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from proctoring import schemas
from proctoring.capture.media import (
    AudioOptions,
    CaptureConfig,
    MediaCaptureController,
    RecordedMedia,
    ScreenOptions,
    VideoOptions,
)
from proctoring.config import Settings, get_settings
from proctoring.detection.detector import Detector
from proctoring.detection.engine import DetectionEngine
from proctoring.detection.types import (
    ALERT_SEVERITIES,
    DetectionConfig,
    DetectionResult,
    EventType,
    InterventionType,
    Severity,
)
from proctoring.events import Subscription
from proctoring.ingestion.stream import ChunkKind, StreamChunk, StreamIngestor
from proctoring.session.manager import SessionManager
from proctoring.timeline import utcnow

logger = logging.getLogger(__name__)


class RunnerPhase(str, Enum):
    CONSENT    = "consent"
    SETUP      = "setup"
    ACTIVE     = "active"
    PAUSED     = "paused"
    COMPLETED  = "completed"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class StudentNotice:
    kind:     str                   # info | warning | intervention | error
    title:    str
    message:  str
    severity: Severity | None = None


Notify = Callable[[StudentNotice], Any]


class ProctoredExamRunner:
    def __init__(
        self,
        manager:        SessionManager,
        capture:        MediaCaptureController,
        detector:       Detector,
        ingestor:       StreamIngestor | None = None,
        notify:         Notify | None = None,
        settings:       Settings | None = None,
        engine_factory: Callable[..., DetectionEngine] = DetectionEngine,
        clock:          Callable[[], float] = time.time,
    ) -> None:
        self.manager   = manager
        self.capture   = capture
        self.detector  = detector
        self.ingestor  = ingestor
        self.notify    = notify
        self.settings  = settings or get_settings()
        self._engine_factory = engine_factory
        self._clock    = clock

        self.phase       = RunnerPhase.CONSENT
        self.session_id: str | None = None
        self.exam_settings: schemas.ProctoringSettings | None = None
        self.engine:     DetectionEngine | None = None
        self.recording:  RecordedMedia | None = None
        self.end_reason: str | None = None

        self._subscriptions: list[Subscription] = []
        self._snapshot_task: asyncio.Task | None = None
        self._pending:       set[asyncio.Task] = set()

    # ── Start ─────────────────────────────────────────────────────────────────

    async def begin(
        self,
        exam_id:     str,
        student_id:  str,
        consent:     bool = True,
        device_info: dict[str, Any] | None = None,
    ) -> bool:
        """Run consent and setup; True once the session is active and monitored."""
        if not consent:
            await self._tell("error", "Consent required", "Proctoring consent was declined.")
            self.phase = RunnerPhase.TERMINATED
            return False

        self.phase = RunnerPhase.SETUP
        self.exam_settings = await self._load_settings(exam_id)
        requirements = self.exam_settings

        permission = await asyncio.to_thread(
            self.capture.request_permissions,
            CaptureConfig(
                video = VideoOptions() if requirements.require_webcam else None,
                audio = AudioOptions() if requirements.require_microphone else None,
            ),
        )
        if not permission.success:
            await self._tell("error", "Device access failed", permission.message or "Device access failed.")
            return False

        info = {**(device_info or {}), **self.capture.device_info()}
        session = await self.manager.create_session(exam_id, student_id, info)
        self.session_id = session.id
        await self.manager.record_consent(session.id)

        if not await self._start_captures(requirements):
            self.capture.stop_all_captures()
            await self.manager.terminate_session(session.id)
            self.phase = RunnerPhase.TERMINATED
            return False

        await self.manager.start_session(session.id)
        self._subscriptions.append(self.manager.interventions.subscribe(self._on_intervention))
        self._start_engine(requirements)

        if requirements.record_full_session:
            result = self.capture.start_recording()
            if not result.success:
                logger.warning("Session %s recording not started: %s", session.id, result.message)

        self._snapshot_task = asyncio.get_running_loop().create_task(
            self._snapshot_loop(requirements.snapshot_interval), name=f"snapshots-{session.id}",
        )
        self.phase = RunnerPhase.ACTIVE
        await self._tell("info", "Proctoring Started", "Your exam session is now being monitored.")
        return True

    async def _load_settings(self, exam_id: str) -> schemas.ProctoringSettings:
        found = await asyncio.to_thread(self.manager.store.get_exam_settings, exam_id)
        return found or schemas.ProctoringSettings(exam_id=exam_id)

    async def _start_captures(self, requirements: schemas.ProctoringSettings) -> bool:
        starts = []
        if requirements.require_webcam:
            starts.append(("Camera", self.capture.start_video_capture))
        if requirements.require_microphone:
            starts.append(("Microphone", self.capture.start_audio_capture))
        if requirements.require_screen_share:
            starts.append(("Screen share", lambda: self.capture.start_screen_capture(ScreenOptions())))

        for label, start in starts:
            result = await asyncio.to_thread(start)
            if not result.ok:
                await self._tell("error", f"{label} unavailable", result.message or f"{label} could not start.")
                return False
        return True

    def _start_engine(self, requirements: schemas.ProctoringSettings) -> None:
        config = requirements.detection_config(DetectionConfig.from_settings(self.settings)).merged(
            audio={"enabled": requirements.audio_analysis_enabled and requirements.require_microphone},
        )
        self.engine = self._engine_factory(self.detector, self.capture, config, clock=self._clock)
        self._subscriptions.append(self.manager.bind_engine(self.engine, self.session_id))
        self._subscriptions.append(self.engine.on_detection(self._on_detection))
        self.engine.start()

    # ── Running ───────────────────────────────────────────────────────────────

    async def _on_detection(self, result: DetectionResult) -> None:
        if result.requires_alert:
            await self._tell(
                "warning", "Proctoring warning",
                result.description or "Suspicious activity detected", result.severity,
            )

    async def report_client_event(
        self,
        event_type:  EventType,
        severity:    Severity,
        description: str,
    ) -> schemas.DetectionOutcome | None:
        """Record an event observed outside the detectors (focus loss, fullscreen exit, network)."""
        if self.session_id is None or self.phase is not RunnerPhase.ACTIVE:
            return None
        result = DetectionResult(
            timestamp      = utcnow(),
            event_type     = event_type,
            severity       = severity,
            confidence     = 1.0,
            details        = {"description": description, "source": "client"},
            requires_alert = severity in ALERT_SEVERITIES,
        )
        return await self.manager.handle_detection(self.session_id, result)

    async def _snapshot_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            blob = await asyncio.to_thread(self.capture.capture_snapshot_blob)
            if blob is None or self.ingestor is None:
                continue
            try:
                await self.ingestor.process(StreamChunk(self.session_id, ChunkKind.SNAPSHOT, blob, self._clock()))
            except Exception as exc:
                logger.warning("Snapshot for session %s not stored: %s", self.session_id, exc)

    # ── Interventions ─────────────────────────────────────────────────────────

    def _on_intervention(self, intervention: schemas.Intervention) -> None:
        if intervention.session_id != self.session_id:
            return
        # Runs in its own task: a terminate may arrive from inside an engine tick it cancels
        task = asyncio.get_running_loop().create_task(self._apply_intervention(intervention))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _apply_intervention(self, intervention: schemas.Intervention) -> None:
        kind = intervention.intervention_type
        default = "You have received a warning from the proctor."
        await self._tell("intervention", kind.value.capitalize(), intervention.message or default,
                         Severity.CRITICAL if kind is InterventionType.TERMINATE else None)

        if kind is InterventionType.PAUSE and self.phase is RunnerPhase.ACTIVE:
            self.phase = RunnerPhase.PAUSED
            if self.engine is not None:
                self.engine.stop()
            logger.info("Session %s paused by proctor", self.session_id)
        elif kind is InterventionType.TERMINATE:
            if intervention.issued_by is None:
                reason = "Exam terminated automatically after a critical violation"
            else:
                reason = f"Exam terminated by proctor {intervention.issued_by}"
            await self.terminate(reason, notify_student=False)

    async def resume(self) -> bool:
        if self.phase is not RunnerPhase.PAUSED or self.session_id is None:
            return False
        if not await self.manager.resume_session(self.session_id):
            return False
        self.phase = RunnerPhase.ACTIVE
        if self.engine is not None:
            self.engine.start()
        await self._tell("info", "Exam resumed", "Monitoring has resumed.")
        return True

    # ── Finish ────────────────────────────────────────────────────────────────

    async def complete(self) -> RecordedMedia | None:
        if self.session_id is None or self.phase in (RunnerPhase.COMPLETED, RunnerPhase.TERMINATED):
            return None
        self.recording = await self._teardown()
        await self._upload_recording()
        await self.manager.complete_session(self.session_id)
        self.phase = RunnerPhase.COMPLETED
        logger.info("Session %s completed", self.session_id)
        return self.recording

    async def terminate(self, reason: str, notify_student: bool = True) -> None:
        if self.phase in (RunnerPhase.COMPLETED, RunnerPhase.TERMINATED):
            return
        self.phase = RunnerPhase.TERMINATED
        self.end_reason = reason
        self.recording = await self._teardown()
        await self._upload_recording()
        if self.session_id is not None:
            await self.manager.terminate_session(self.session_id)
        logger.warning("Session %s terminated: %s", self.session_id, reason)
        if notify_student:
            await self._tell("intervention", "Exam terminated", reason, Severity.CRITICAL)

    async def _teardown(self) -> RecordedMedia | None:
        if self._snapshot_task is not None:
            self._snapshot_task.cancel()
            self._snapshot_task = None
        if self.engine is not None:
            self.engine.stop()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

        recording = self.capture.stop_recording()
        self.capture.stop_all_captures()
        return recording

    async def _upload_recording(self) -> None:
        if self.recording is None or self.ingestor is None or self.session_id is None:
            return
        try:
            await self.ingestor.process(StreamChunk(
                self.session_id, ChunkKind.VIDEO, self.recording.data, self._clock(),
                content_type=self.recording.mime_type,
            ))
        except Exception as exc:
            logger.warning("Recording for session %s not stored: %s", self.session_id, exc)

    async def _tell(self, kind: str, title: str, message: str, severity: Severity | None = None) -> None:
        if self.notify is None:
            return
        try:
            outcome = self.notify(StudentNotice(kind, title, message, severity))
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception as exc:
            logger.warning("Student notification failed: %s", exc)
