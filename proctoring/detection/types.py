"""
Shared vocabulary of the proctoring core: enums, the DetectionResult emitted
by the engine, and the per-modality DetectionConfig.

Enum values are the strings stored in the database and sent over the wire,
so they must stay lowercase snake_case.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from proctoring.config import Settings, get_settings


class Severity(str, Enum):
    INFO     = "info"
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank


_SEVERITY_RANK = {
    Severity.INFO:     0,
    Severity.LOW:      1,
    Severity.MEDIUM:   2,
    Severity.HIGH:     3,
    Severity.CRITICAL: 4,
}

# Severities a violation can carry, in report order
VIOLATION_SEVERITIES = (Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)
ALERT_SEVERITIES     = (Severity.HIGH, Severity.CRITICAL)


class EventType(str, Enum):
    NO_FACE               = "no_face"
    MULTIPLE_FACES        = "multiple_faces"
    FACE_NOT_MATCHING     = "face_not_matching"
    LOOKING_AWAY          = "looking_away"
    OBJECT_DETECTED       = "object_detected"
    AUDIO_CONVERSATION    = "audio_conversation"
    AUDIO_UNUSUAL         = "audio_unusual"
    TAB_SWITCH            = "tab_switch"
    WINDOW_SWITCH         = "window_switch"
    SCREEN_SHARE_DETECTED = "screen_share_detected"
    FULLSCREEN_EXIT       = "fullscreen_exit"
    BROWSER_FOCUS_LOST    = "browser_focus_lost"
    COPY_PASTE            = "copy_paste"
    NETWORK_DISCONNECTION = "network_disconnection"
    NETWORK_RECONNECTION  = "network_reconnection"
    SNAPSHOT_CAPTURED     = "snapshot_captured"
    SYSTEM_INFO           = "system_info"


class ViolationCategory(str, Enum):
    IDENTITY_FRAUD          = "identity_fraud"
    UNAUTHORIZED_ASSISTANCE = "unauthorized_assistance"
    UNAUTHORIZED_MATERIALS  = "unauthorized_materials"
    TECHNICAL_VIOLATION     = "technical_violation"
    BEHAVIORAL_ANOMALY      = "behavioral_anomaly"
    ENVIRONMENTAL_ISSUE     = "environmental_issue"


_CATEGORY_BY_EVENT = {
    EventType.FACE_NOT_MATCHING:     ViolationCategory.IDENTITY_FRAUD,
    EventType.MULTIPLE_FACES:        ViolationCategory.UNAUTHORIZED_ASSISTANCE,
    EventType.AUDIO_CONVERSATION:    ViolationCategory.UNAUTHORIZED_ASSISTANCE,
    EventType.OBJECT_DETECTED:       ViolationCategory.UNAUTHORIZED_MATERIALS,
    EventType.COPY_PASTE:            ViolationCategory.UNAUTHORIZED_MATERIALS,
    EventType.NO_FACE:               ViolationCategory.BEHAVIORAL_ANOMALY,
    EventType.LOOKING_AWAY:          ViolationCategory.BEHAVIORAL_ANOMALY,
    EventType.AUDIO_UNUSUAL:         ViolationCategory.ENVIRONMENTAL_ISSUE,
}


def category_for(event_type: EventType) -> ViolationCategory:
    return _CATEGORY_BY_EVENT.get(event_type, ViolationCategory.TECHNICAL_VIOLATION)


_ALERT_TITLES = {
    EventType.MULTIPLE_FACES:        "Multiple Faces Detected",
    EventType.NO_FACE:               "No Face Detected",
    EventType.FACE_NOT_MATCHING:     "Face Mismatch",
    EventType.LOOKING_AWAY:          "Student Looking Away",
    EventType.OBJECT_DETECTED:       "Unauthorized Object Detected",
    EventType.AUDIO_CONVERSATION:    "Conversation Detected",
    EventType.AUDIO_UNUSUAL:         "Unusual Audio",
    EventType.TAB_SWITCH:            "Tab Switched",
    EventType.WINDOW_SWITCH:         "Window Switched",
    EventType.SCREEN_SHARE_DETECTED: "Screen Sharing Detected",
    EventType.FULLSCREEN_EXIT:       "Fullscreen Exited",
    EventType.BROWSER_FOCUS_LOST:    "Browser Focus Lost",
    EventType.COPY_PASTE:            "Copy/Paste Detected",
    EventType.NETWORK_DISCONNECTION: "Network Disconnected",
}


def alert_title(event_type: EventType) -> str:
    return _ALERT_TITLES.get(event_type, "Proctoring Alert")


class SessionStatus(str, Enum):
    PENDING    = "pending"
    ACTIVE     = "active"
    PAUSED     = "paused"
    COMPLETED  = "completed"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.TERMINATED)


class AlertStatus(str, Enum):
    PENDING      = "pending"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED     = "resolved"


class InterventionType(str, Enum):
    WARNING   = "warning"
    PAUSE     = "pause"
    TERMINATE = "terminate"


# ── Engine output ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DetectionResult:
    """One emitted outcome of a detection cycle."""
    timestamp:      datetime
    event_type:     EventType
    severity:       Severity
    confidence:     float
    details:        dict[str, Any] = field(default_factory=dict)
    requires_alert: bool = False

    @property
    def description(self) -> str:
        return str(self.details.get("description", ""))

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp":     self.timestamp.isoformat(),
            "eventType":     self.event_type.value,
            "severity":      self.severity.value,
            "confidence":    round(self.confidence, 4),
            "details":       self.details,
            "requiresAlert": self.requires_alert,
        }


# ── Configuration ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FaceDetectionConfig:
    enabled:                bool  = True
    min_confidence:         float = 0.70
    check_interval:         float = 5.0
    max_look_away_duration: float = 10.0
    high_severity_after:    float = 10.0


@dataclass(frozen=True)
class ObjectDetectionConfig:
    enabled:         bool  = True
    min_confidence:  float = 0.70
    check_interval:  float = 10.0
    blocked_objects: tuple[str, ...] = ("cell phone", "mobile phone", "book", "notebook", "paper")


@dataclass(frozen=True)
class GazeTrackingConfig:
    enabled:             bool  = True
    min_confidence:      float = 0.60
    check_interval:      float = 3.0
    max_off_screen_time: float = 8.0
    high_severity_after: float = 15.0


@dataclass(frozen=True)
class AudioAnalysisConfig:
    enabled:                bool  = True
    check_interval:         float = 10.0
    conversation_threshold: float = 0.50


@dataclass(frozen=True)
class DetectionConfig:
    face:   FaceDetectionConfig   = field(default_factory=FaceDetectionConfig)
    object: ObjectDetectionConfig = field(default_factory=ObjectDetectionConfig)
    gaze:   GazeTrackingConfig    = field(default_factory=GazeTrackingConfig)
    audio:  AudioAnalysisConfig   = field(default_factory=AudioAnalysisConfig)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "DetectionConfig":
        s = settings or get_settings()
        return cls(
            face=FaceDetectionConfig(
                min_confidence         = s.face_min_confidence,
                check_interval         = s.face_check_interval,
                max_look_away_duration = s.max_look_away_duration,
                high_severity_after    = s.face_high_severity_after,
            ),
            object=ObjectDetectionConfig(
                min_confidence  = s.object_min_confidence,
                check_interval  = s.object_check_interval,
                blocked_objects = tuple(s.blocked_objects),
            ),
            gaze=GazeTrackingConfig(
                min_confidence      = s.gaze_min_confidence,
                check_interval      = s.gaze_check_interval,
                max_off_screen_time = s.max_off_screen_time,
                high_severity_after = s.gaze_high_severity_after,
            ),
            audio=AudioAnalysisConfig(
                check_interval         = s.audio_check_interval,
                conversation_threshold = s.conversation_threshold,
            ),
        )

    def merged(
        self,
        face:   dict[str, Any] | None = None,
        object: dict[str, Any] | None = None,
        gaze:   dict[str, Any] | None = None,
        audio:  dict[str, Any] | None = None,
    ) -> "DetectionConfig":
        """Return a copy with the given per-modality fields replaced."""
        obj = dict(object or {})
        if "blocked_objects" in obj:
            obj["blocked_objects"] = tuple(obj["blocked_objects"])
        return DetectionConfig(
            face   = replace(self.face,   **(face or {})),
            object = replace(self.object, **obj),
            gaze   = replace(self.gaze,   **(gaze or {})),
            audio  = replace(self.audio,  **(audio or {})),
        )

    def active_modules(self) -> list[str]:
        modules = []
        if self.face.enabled:
            modules.append("face")
        if self.object.enabled:
            modules.append("object")
        if self.gaze.enabled:
            modules.append("gaze")
        if self.audio.enabled:
            modules.append("audio")
        return modules
