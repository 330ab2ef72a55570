"""
SQLAlchemy ORM models for the proctoring tables.

Write ownership:
  - proctoring_settings          → exam configuration (upserted by admins)
  - proctoring_sessions          → status / counters, mutated by the store only
  - proctoring_events            → append-only detection log
  - proctoring_violations        → append-only; reviewer columns are the only update
  - proctoring_alerts            → status moves pending → acknowledged → resolved
  - proctoring_interventions     → write-once
"""
import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from proctoring.db.database import Base
from proctoring.timeline import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


class ProctoringSettingsRow(Base):
    __tablename__ = "proctoring_settings"

    id                        = Column(String(36), primary_key=True, default=_uuid)
    exam_id                   = Column(String(36), nullable=False, unique=True)
    auto_terminate_on_critical = Column(Boolean, nullable=False, default=False)
    violation_threshold       = Column(String(20), nullable=False, default="medium")

    face_detection_enabled    = Column(Boolean, nullable=False, default=True)
    face_check_interval       = Column(Float, nullable=False, default=5.0)
    face_min_confidence       = Column(Float, nullable=False, default=0.7)
    max_look_away_duration    = Column(Float, nullable=False, default=10.0)
    face_high_severity_after  = Column(Float, nullable=False, default=10.0)

    object_detection_enabled  = Column(Boolean, nullable=False, default=True)
    object_check_interval     = Column(Float, nullable=False, default=10.0)
    object_min_confidence     = Column(Float, nullable=False, default=0.7)
    blocked_objects           = Column(JSONType, nullable=False, default=list)

    gaze_tracking_enabled     = Column(Boolean, nullable=False, default=True)
    gaze_check_interval       = Column(Float, nullable=False, default=3.0)
    gaze_min_confidence       = Column(Float, nullable=False, default=0.6)
    max_off_screen_time       = Column(Float, nullable=False, default=8.0)
    gaze_high_severity_after  = Column(Float, nullable=False, default=15.0)

    audio_analysis_enabled    = Column(Boolean, nullable=False, default=True)
    audio_check_interval      = Column(Float, nullable=False, default=10.0)
    conversation_threshold    = Column(Float, nullable=False, default=0.5)

    snapshot_interval         = Column(Float, nullable=False, default=30.0)
    record_full_session       = Column(Boolean, nullable=False, default=False)
    require_webcam            = Column(Boolean, nullable=False, default=True)
    require_microphone        = Column(Boolean, nullable=False, default=True)
    require_screen_share      = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class ProctoringSessionRow(Base):
    __tablename__ = "proctoring_sessions"
    __table_args__ = (Index("ix_proctoring_sessions_exam_status", "exam_id", "status"),)

    id               = Column(String(36), primary_key=True, default=_uuid)
    exam_id          = Column(String(36), nullable=False)
    student_id       = Column(String(36), nullable=False)
    settings_id      = Column(String(36), ForeignKey("proctoring_settings.id"), nullable=True)
    status           = Column(String(20), nullable=False, default="pending")

    started_at       = Column(DateTime(timezone=True))
    ended_at         = Column(DateTime(timezone=True))
    duration_seconds = Column(Integer)
    last_activity_at = Column(DateTime(timezone=True))

    consent_given    = Column(Boolean, nullable=False, default=False)
    consent_at       = Column(DateTime(timezone=True))
    device_info      = Column(JSONType, nullable=False, default=dict)

    total_events     = Column(Integer, nullable=False, default=0)
    flagged_events   = Column(Integer, nullable=False, default=0)
    total_violations = Column(Integer, nullable=False, default=0)
    low_violations      = Column(Integer, nullable=False, default=0)
    medium_violations   = Column(Integer, nullable=False, default=0)
    high_violations     = Column(Integer, nullable=False, default=0)
    critical_violations = Column(Integer, nullable=False, default=0)
    confidence_score    = Column(Float)
    confidence_samples  = Column(Integer, nullable=False, default=0)

    proctoring_notes = Column(Text)
    created_at       = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class ProctoringEventRow(Base):
    __tablename__ = "proctoring_events"
    __table_args__ = (Index("ix_proctoring_events_session_time", "session_id", "detected_at"),)

    id             = Column(String(36), primary_key=True, default=_uuid)
    session_id     = Column(String(36), ForeignKey("proctoring_sessions.id"), nullable=False)
    event_type     = Column(String(50), nullable=False)
    severity       = Column(String(20), nullable=False)
    detected_at    = Column(DateTime(timezone=True), nullable=False)
    description    = Column(Text)
    snapshot_url   = Column(String(512))
    ai_confidence  = Column(Float)
    flagged        = Column(Boolean, nullable=False, default=False)
    event_metadata = Column("metadata", JSONType, nullable=False, default=dict)


class ProctoringViolationRow(Base):
    __tablename__ = "proctoring_violations"
    __table_args__ = (Index("ix_proctoring_violations_session_time", "session_id", "detected_at"),)

    id                = Column(String(36), primary_key=True, default=_uuid)
    session_id        = Column(String(36), ForeignKey("proctoring_sessions.id"), nullable=False)
    event_id          = Column(String(36), ForeignKey("proctoring_events.id"), nullable=False)
    violation_type    = Column(String(50), nullable=False)
    category          = Column(String(50), nullable=False)
    severity          = Column(String(20), nullable=False)
    description       = Column(Text)
    detected_at       = Column(DateTime(timezone=True), nullable=False)
    ai_confidence     = Column(Float)
    evidence_url      = Column(String(512))

    reviewed          = Column(Boolean, nullable=False, default=False)
    review_notes      = Column(Text)
    reviewed_by       = Column(String(36))
    reviewed_at       = Column(DateTime(timezone=True))
    action_taken      = Column(String(100))
    is_false_positive = Column(Boolean)


class ProctoringAlertRow(Base):
    __tablename__ = "proctoring_alerts"
    __table_args__ = (Index("ix_proctoring_alerts_session_status", "session_id", "status"),)

    id               = Column(String(36), primary_key=True, default=_uuid)
    session_id       = Column(String(36), ForeignKey("proctoring_sessions.id"), nullable=False)
    event_id         = Column(String(36), ForeignKey("proctoring_events.id"))
    violation_id     = Column(String(36), ForeignKey("proctoring_violations.id"))
    alert_type       = Column(String(50), nullable=False)
    severity         = Column(String(20), nullable=False)
    title            = Column(String(255), nullable=False)
    message          = Column(Text)
    status           = Column(String(20), nullable=False, default="pending")
    created_at       = Column(DateTime(timezone=True), nullable=False)

    acknowledged_by  = Column(String(36))
    acknowledged_at  = Column(DateTime(timezone=True))
    resolved_by      = Column(String(36))
    resolved_at      = Column(DateTime(timezone=True))
    resolution_notes = Column(Text)


class ProctoringInterventionRow(Base):
    __tablename__ = "proctoring_interventions"

    id                = Column(String(36), primary_key=True, default=_uuid)
    session_id        = Column(String(36), ForeignKey("proctoring_sessions.id"), nullable=False)
    alert_id          = Column(String(36), ForeignKey("proctoring_alerts.id"))
    intervention_type = Column(String(20), nullable=False)
    message           = Column(Text, nullable=False)
    issued_by         = Column(String(36))           # None → automatic policy
    sent_at           = Column(DateTime(timezone=True), nullable=False)
