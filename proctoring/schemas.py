"""
Pydantic views of the proctoring records.

Store methods return these instead of ORM rows so callers never touch a
detached SQLAlchemy object; the same models are the HTTP response bodies.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from proctoring.detection.types import (
    AlertStatus,
    DetectionConfig,
    EventType,
    InterventionType,
    SessionStatus,
    Severity,
    ViolationCategory,
)
from proctoring.timeline import as_utc


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    # SQLite hands back naive datetimes
    @field_validator("*", mode="after")
    @classmethod
    def _utc(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return as_utc(value)
        return value


class ProctoringSettings(_Record):
    id:                         str | None = None
    exam_id:                    str
    auto_terminate_on_critical: bool = False
    violation_threshold:        Severity = Severity.MEDIUM

    face_detection_enabled:     bool  = True
    face_check_interval:        float = 5.0
    face_min_confidence:        float = 0.7
    max_look_away_duration:     float = 10.0
    face_high_severity_after:   float = 10.0

    object_detection_enabled:   bool  = True
    object_check_interval:      float = 10.0
    object_min_confidence:      float = 0.7
    blocked_objects:            list[str] = Field(
        default_factory=lambda: ["cell phone", "mobile phone", "book", "notebook", "paper"]
    )

    gaze_tracking_enabled:      bool  = True
    gaze_check_interval:        float = 3.0
    gaze_min_confidence:        float = 0.6
    max_off_screen_time:        float = 8.0
    gaze_high_severity_after:   float = 15.0

    audio_analysis_enabled:     bool  = True
    audio_check_interval:       float = 10.0
    conversation_threshold:     float = 0.5

    snapshot_interval:          float = 30.0
    record_full_session:        bool  = False
    require_webcam:             bool  = True
    require_microphone:         bool  = True
    require_screen_share:       bool  = False

    def detection_config(self, base: DetectionConfig | None = None) -> DetectionConfig:
        return (base or DetectionConfig()).merged(
            face={
                "enabled":                self.face_detection_enabled,
                "check_interval":         self.face_check_interval,
                "min_confidence":         self.face_min_confidence,
                "max_look_away_duration": self.max_look_away_duration,
                "high_severity_after":    self.face_high_severity_after,
            },
            object={
                "enabled":         self.object_detection_enabled,
                "check_interval":  self.object_check_interval,
                "min_confidence":  self.object_min_confidence,
                "blocked_objects": self.blocked_objects,
            },
            gaze={
                "enabled":             self.gaze_tracking_enabled,
                "check_interval":      self.gaze_check_interval,
                "min_confidence":      self.gaze_min_confidence,
                "max_off_screen_time": self.max_off_screen_time,
                "high_severity_after": self.gaze_high_severity_after,
            },
            audio={
                "enabled":                self.audio_analysis_enabled,
                "check_interval":         self.audio_check_interval,
                "conversation_threshold": self.conversation_threshold,
            },
        )


class Session(_Record):
    id:                  str
    exam_id:             str
    student_id:          str
    settings_id:         str | None = None
    status:              SessionStatus
    started_at:          datetime | None = None
    ended_at:            datetime | None = None
    duration_seconds:    int | None = None
    last_activity_at:    datetime | None = None
    consent_given:       bool = False
    consent_at:          datetime | None = None
    device_info:         dict[str, Any] = Field(default_factory=dict)
    total_events:        int = 0
    flagged_events:      int = 0
    total_violations:    int = 0
    low_violations:      int = 0
    medium_violations:   int = 0
    high_violations:     int = 0
    critical_violations: int = 0
    confidence_score:    float | None = None
    confidence_samples:  int = 0
    proctoring_notes:    str | None = None
    created_at:          datetime | None = None


class Event(_Record):
    id:            str
    session_id:    str
    event_type:    EventType
    severity:      Severity
    detected_at:   datetime
    description:   str | None = None
    snapshot_url:  str | None = None
    ai_confidence: float | None = None
    flagged:       bool = False
    metadata:      dict[str, Any] = Field(default_factory=dict, validation_alias="event_metadata")


class Violation(_Record):
    id:                str
    session_id:        str
    event_id:          str
    violation_type:    EventType
    category:          ViolationCategory
    severity:          Severity
    description:       str | None = None
    detected_at:       datetime
    ai_confidence:     float | None = None
    evidence_url:      str | None = None
    reviewed:          bool = False
    review_notes:      str | None = None
    reviewed_by:       str | None = None
    reviewed_at:       datetime | None = None
    action_taken:      str | None = None
    is_false_positive: bool | None = None


class Alert(_Record):
    id:               str
    session_id:       str
    event_id:         str | None = None
    violation_id:     str | None = None
    alert_type:       EventType
    severity:         Severity
    title:            str
    message:          str | None = None
    status:           AlertStatus
    created_at:       datetime
    acknowledged_by:  str | None = None
    acknowledged_at:  datetime | None = None
    resolved_by:      str | None = None
    resolved_at:      datetime | None = None
    resolution_notes: str | None = None


class Intervention(_Record):
    id:                str
    session_id:        str
    alert_id:          str | None = None
    intervention_type: InterventionType
    message:           str
    issued_by:         str | None = None
    sent_at:           datetime


class DetectionOutcome(BaseModel):
    """What one recorded detection cycle produced."""
    session_id:   str
    event:        Event | None = None
    violation:    Violation | None = None
    alert:        Alert | None = None
    intervention: Intervention | None = None
    terminated:   bool = False
    accepted:     bool = True


class AlertNotice(BaseModel):
    """Alert as pushed to live monitors (in-process or over RabbitMQ)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    alert_id:   str
    session_id: str
    exam_id:    str | None = None
    student_id: str | None = None
    alert_type: EventType
    severity:   Severity
    title:      str
    message:    str | None = None
    created_at: datetime

    @classmethod
    def from_alert(cls, alert: Alert, session: Session | None = None) -> "AlertNotice":
        return cls(
            alert_id   = alert.id,
            session_id = alert.session_id,
            exam_id    = session.exam_id if session else None,
            student_id = session.student_id if session else None,
            alert_type = alert.alert_type,
            severity   = alert.severity,
            title      = alert.title,
            message    = alert.message,
            created_at = alert.created_at,
        )
