"""
DetectionEngine — runs the per-modality checks on a fixed cadence and turns
raw detector output into DetectionResults.

One asyncio task per enabled modality:

    face   → no_face (duration escalated) / multiple_faces (critical)
    object → object_detected (high) for any blocked label
    gaze   → looking_away (duration escalated)
    audio  → audio_conversation (high) / audio_unusual (medium)

Each loop awaits its tick before sleeping, so a slow detector delays that
modality instead of stacking concurrent ticks. Tick failures are logged and
the loop carries on.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from typing import Any, Awaitable, Callable

from proctoring.detection.detector import Detector, FrameSource, bbox_to_dict
from proctoring.detection.escalation import DurationEscalator
from proctoring.detection.types import (
    DetectionConfig,
    DetectionResult,
    EventType,
    Severity,
)
from proctoring.events import EventChannel, Subscriber, Subscription
from proctoring.timeline import from_epoch

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# Fixed confidences for rule-derived events
_NO_FACE_CONFIDENCE       = 0.95
_UNUSUAL_AUDIO_CONFIDENCE = 0.70


class DetectionEngine:
    def __init__(
        self,
        detector: Detector,
        frames:   FrameSource,
        config:   DetectionConfig | None = None,
        clock:    Clock = time.time,
    ) -> None:
        self.detector = detector
        self.frames   = frames
        self.config   = config or DetectionConfig.from_settings()
        self.results: EventChannel[DetectionResult] = EventChannel("detections")

        self._clock      = clock
        self._tasks:     dict[str, asyncio.Task] = {}
        self._generation = 0
        self._running    = False
        self._emitted:   Counter[str] = Counter()
        self._errors:    Counter[str] = Counter()
        self._build_escalators()

    # ── Subscription ──────────────────────────────────────────────────────────

    def on_detection(self, callback: Subscriber[DetectionResult]) -> Subscription:
        return self.results.subscribe(callback)

    subscribe = on_detection

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Spawn one loop per enabled modality. Must be called from a running loop."""
        if self._running:
            return
        loop = asyncio.get_running_loop()
        self._running = True
        generation = self._generation

        ticks = self._ticks()
        for module in self.config.active_modules():
            interval = getattr(self.config, module).check_interval
            self._tasks[module] = loop.create_task(
                self._run_loop(module, ticks[module], interval, generation),
                name=f"detection-{module}",
            )
        logger.info("DetectionEngine started: %s", ", ".join(self._tasks) or "no modules")

    def stop(self) -> None:
        """Cancel all loops. Results from ticks still in flight are dropped."""
        self._generation += 1
        if not self._running and not self._tasks:
            return
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()
        self._running = False
        self._face_absence.reset()
        self._gaze_away.reset()
        logger.info("DetectionEngine stopped")

    def update_config(
        self,
        face:   dict[str, Any] | None = None,
        object: dict[str, Any] | None = None,
        gaze:   dict[str, Any] | None = None,
        audio:  dict[str, Any] | None = None,
    ) -> DetectionConfig:
        was_running = self._running
        self.stop()
        self.config = self.config.merged(face=face, object=object, gaze=gaze, audio=audio)
        self._build_escalators()
        if was_running:
            self.start()
        return self.config

    def get_statistics(self) -> dict[str, Any]:
        return {
            "running":        self._running,
            "active_modules": self.config.active_modules() if self._running else [],
            "emitted":        dict(self._emitted),
            "errors":         dict(self._errors),
            "total_emitted":  sum(self._emitted.values()),
        }

    # ── Scheduling ────────────────────────────────────────────────────────────

    async def _run_loop(
        self,
        module:     str,
        tick:       Callable[[], Awaitable[Any]],
        interval:   float,
        generation: int,
    ) -> None:
        while self._generation == generation:
            try:
                await tick()
            except Exception as exc:
                self._errors[module] += 1
                logger.warning("%s check failed, skipping tick: %s", module, exc)
            await asyncio.sleep(interval)

    def _ticks(self) -> dict[str, Callable[[], Awaitable[Any]]]:
        return {
            "face":   self.run_face_check,
            "object": self.run_object_check,
            "gaze":   self.run_gaze_check,
            "audio":  self.run_audio_check,
        }

    def _build_escalators(self) -> None:
        self._face_absence = DurationEscalator(
            self.config.face.max_look_away_duration, self.config.face.high_severity_after,
        )
        self._gaze_away = DurationEscalator(
            self.config.gaze.max_off_screen_time, self.config.gaze.high_severity_after,
        )

    async def _emit(self, result: DetectionResult, generation: int) -> DetectionResult | None:
        if generation != self._generation:
            return None
        self._emitted[result.event_type.value] += 1
        await self.results.publish(result)
        return result

    # ── Ticks ─────────────────────────────────────────────────────────────────

    async def run_face_check(self) -> DetectionResult | None:
        generation = self._generation
        frame = self.frames.latest_video_frame()
        if frame is None:
            return None

        detection = await self.detector.detect_faces(frame)
        if generation != self._generation:
            return None

        now   = self._clock()
        faces = [f for f in detection.faces if f.confidence >= self.config.face.min_confidence]

        if not faces:
            escalation = self._face_absence.observe(True, now)
            if escalation is None:
                return None
            return await self._emit(DetectionResult(
                timestamp      = from_epoch(now),
                event_type     = EventType.NO_FACE,
                severity       = escalation.severity,
                confidence     = _NO_FACE_CONFIDENCE,
                details        = {
                    "duration":    escalation.duration,
                    "description": f"No face detected for {escalation.duration:.1f} seconds",
                },
                requires_alert = escalation.requires_alert,
            ), generation)

        self._face_absence.observe(False, now)
        if len(faces) < 2:
            return None

        return await self._emit(DetectionResult(
            timestamp      = from_epoch(now),
            event_type     = EventType.MULTIPLE_FACES,
            severity       = Severity.CRITICAL,
            confidence     = max(f.confidence for f in faces),
            details        = {
                "faceCount":   len(faces),
                "faces":       [
                    {"confidence": round(f.confidence, 3), "bbox": bbox_to_dict(f.bbox)}
                    for f in faces
                ],
                "description": f"{len(faces)} faces detected in frame",
            },
            requires_alert = True,
        ), generation)

    async def run_object_check(self) -> DetectionResult | None:
        generation = self._generation
        frame = self.frames.latest_video_frame()
        if frame is None:
            return None

        detection = await self.detector.detect_objects(frame)
        if generation != self._generation:
            return None

        cfg     = self.config.object
        blocked = {label.lower() for label in cfg.blocked_objects}
        hits    = [
            o for o in detection.objects
            if o.label.lower() in blocked and o.confidence >= cfg.min_confidence
        ]
        if not hits:
            return None

        labels = sorted({o.label for o in hits})
        return await self._emit(DetectionResult(
            timestamp      = from_epoch(self._clock()),
            event_type     = EventType.OBJECT_DETECTED,
            severity       = Severity.HIGH,
            confidence     = max(o.confidence for o in hits),
            details        = {
                "objects":       labels,
                "allDetections": [
                    {"label": o.label, "confidence": round(o.confidence, 3), "bbox": bbox_to_dict(o.bbox)}
                    for o in detection.objects
                ],
                "description":   f"Unauthorized objects detected: {', '.join(labels)}",
            },
            requires_alert = True,
        ), generation)

    async def run_gaze_check(self) -> DetectionResult | None:
        generation = self._generation
        frame = self.frames.latest_video_frame()
        if frame is None:
            return None

        gaze = await self.detector.track_gaze(frame)
        if generation != self._generation:
            return None

        # Low-confidence estimates neither start nor end an episode
        if gaze.confidence < self.config.gaze.min_confidence:
            return None

        now = self._clock()
        escalation = self._gaze_away.observe(not gaze.looking_at_screen, now)
        if escalation is None:
            return None

        return await self._emit(DetectionResult(
            timestamp      = from_epoch(now),
            event_type     = EventType.LOOKING_AWAY,
            severity       = escalation.severity,
            confidence     = gaze.confidence,
            details        = {
                "duration":      escalation.duration,
                "gazeDirection": {"x": gaze.direction[0], "y": gaze.direction[1]},
                "description":   f"Looking away from screen for {escalation.duration:.1f} seconds",
            },
            requires_alert = escalation.requires_alert,
        ), generation)

    async def run_audio_check(self) -> DetectionResult | None:
        generation = self._generation
        window = self.frames.latest_audio_samples()
        if window is None:
            return None

        samples, sample_rate = window
        audio = await self.detector.analyze_audio(samples, sample_rate)
        if generation != self._generation:
            return None

        levels = {
            "averageVolume": round(audio.average_volume, 3),
            "peakVolume":    round(audio.peak_volume, 3),
        }
        if audio.multiple_voices:
            result = DetectionResult(
                timestamp      = from_epoch(self._clock()),
                event_type     = EventType.AUDIO_CONVERSATION,
                severity       = Severity.HIGH,
                confidence     = audio.confidence,
                details        = {**levels, "description": "Multiple voices detected in audio stream"},
                requires_alert = True,
            )
        elif not audio.is_silent and audio.average_volume > self.config.audio.conversation_threshold:
            result = DetectionResult(
                timestamp      = from_epoch(self._clock()),
                event_type     = EventType.AUDIO_UNUSUAL,
                severity       = Severity.MEDIUM,
                confidence     = _UNUSUAL_AUDIO_CONFIDENCE,
                details        = {**levels, "description": "Unusual audio patterns detected"},
                requires_alert = False,
            )
        else:
            return None

        return await self._emit(result, generation)
