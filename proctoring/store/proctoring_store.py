"""
ProctoringStore — the persistence boundary for sessions, events, violations,
alerts and interventions.

Every method opens its own transaction through get_db(). Results are
converted to pydantic records before the transaction closes.

Status changes are compare-and-set:

    UPDATE proctoring_sessions SET status = :target ... WHERE id = :id AND status IN (:allowed)

so a transition that lost a race (or targets a finished session) updates no
row and is reported as a no-op instead of an error.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, TypeVar

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DbSession, sessionmaker

from proctoring import schemas
from proctoring.config import Settings, get_settings
from proctoring.db.database import get_db
from proctoring.db.models import (
    ProctoringAlertRow,
    ProctoringEventRow,
    ProctoringInterventionRow,
    ProctoringSessionRow,
    ProctoringSettingsRow,
    ProctoringViolationRow,
)
from proctoring.detection.types import (
    ALERT_SEVERITIES,
    AlertStatus,
    DetectionResult,
    EventType,
    InterventionType,
    SessionStatus,
    Severity,
    alert_title,
    category_for,
)
from proctoring.errors import PersistenceError, SessionNotFoundError
from proctoring.timeline import as_utc, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPEN_STATUSES = (SessionStatus.PENDING.value, SessionStatus.ACTIVE.value, SessionStatus.PAUSED.value)

AUTO_TERMINATE_MESSAGE = (
    "Your exam has been terminated automatically because a critical proctoring "
    "violation was detected: {description}"
)


class ProctoringStore:
    def __init__(self, session_factory: sessionmaker | None = None, settings: Settings | None = None) -> None:
        self._factory  = session_factory
        self._attempts = max(1, (settings or get_settings()).write_attempts)

    # ── Transaction helpers ───────────────────────────────────────────────────

    def _write(self, op: Callable[[DbSession], T], what: str) -> T:
        """Run ``op`` in a transaction, retrying database failures."""
        last_exc: Exception | None = None
        for attempt in range(1, self._attempts + 1):
            try:
                with get_db(self._factory) as db:
                    return op(db)
            except SQLAlchemyError as exc:
                last_exc = exc
                logger.warning("%s failed (attempt %d/%d): %s", what, attempt, self._attempts, exc)
        logger.error("%s dropped after %d attempts", what, self._attempts, exc_info=last_exc)
        raise PersistenceError(f"{what} failed: {last_exc}") from last_exc

    def _once(self, op: Callable[[DbSession], T], what: str) -> T:
        try:
            with get_db(self._factory) as db:
                return op(db)
        except SQLAlchemyError as exc:
            logger.error("%s failed: %s", what, exc, exc_info=True)
            raise PersistenceError(f"{what} failed: {exc}") from exc

    def check_connection(self) -> bool:
        """Returns True if the store's database is reachable."""
        try:
            with get_db(self._factory) as db:
                db.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning("DB connectivity check failed: %s", exc)
            return False

    # ── Settings ──────────────────────────────────────────────────────────────

    def upsert_settings(self, data: schemas.ProctoringSettings) -> schemas.ProctoringSettings:
        values = data.model_dump(exclude={"id"}, mode="json")

        def op(db: DbSession) -> schemas.ProctoringSettings:
            row = db.scalar(select(ProctoringSettingsRow).where(ProctoringSettingsRow.exam_id == data.exam_id))
            if row is None:
                row = ProctoringSettingsRow(**values)
                db.add(row)
            else:
                for key, value in values.items():
                    setattr(row, key, value)
                row.updated_at = utcnow()
            db.flush()
            return schemas.ProctoringSettings.model_validate(row)

        return self._write(op, f"upsert settings for exam {data.exam_id}")

    def get_exam_settings(self, exam_id: str) -> schemas.ProctoringSettings | None:
        def op(db: DbSession):
            row = db.scalar(select(ProctoringSettingsRow).where(ProctoringSettingsRow.exam_id == exam_id))
            return schemas.ProctoringSettings.model_validate(row) if row else None

        return self._once(op, f"read settings for exam {exam_id}")

    def get_session_settings(self, session_id: str) -> schemas.ProctoringSettings | None:
        """Settings attached to the session, else the exam's current settings."""
        def op(db: DbSession):
            session = _session_row(db, session_id)
            row = None
            if session.settings_id:
                row = db.get(ProctoringSettingsRow, session.settings_id)
            if row is None:
                row = db.scalar(select(ProctoringSettingsRow).where(ProctoringSettingsRow.exam_id == session.exam_id))
            return schemas.ProctoringSettings.model_validate(row) if row else None

        return self._once(op, f"read settings for session {session_id}")

    # ── Sessions ──────────────────────────────────────────────────────────────

    def create_session(
        self,
        exam_id:     str,
        student_id:  str,
        device_info: dict[str, Any] | None = None,
        settings_id: str | None = None,
    ) -> schemas.Session:
        def op(db: DbSession) -> schemas.Session:
            sid = settings_id
            if sid is None:
                sid = db.scalar(
                    select(ProctoringSettingsRow.id).where(ProctoringSettingsRow.exam_id == exam_id)
                )
            row = ProctoringSessionRow(
                exam_id     = exam_id,
                student_id  = student_id,
                settings_id = sid,
                status      = SessionStatus.PENDING.value,
                device_info = device_info or {},
                created_at  = utcnow(),
            )
            db.add(row)
            db.flush()
            return schemas.Session.model_validate(row)

        session = self._write(op, f"create session for student {student_id}")
        logger.info("Session %s created (exam=%s student=%s)", session.id, exam_id, student_id)
        return session

    def get_session(self, session_id: str) -> schemas.Session | None:
        def op(db: DbSession):
            row = db.get(ProctoringSessionRow, session_id)
            return schemas.Session.model_validate(row) if row else None

        return self._once(op, f"read session {session_id}")

    def require_session(self, session_id: str) -> schemas.Session:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def record_consent(self, session_id: str, device_info: dict[str, Any] | None = None) -> schemas.Session:
        def op(db: DbSession) -> schemas.Session:
            row = _session_row(db, session_id)
            if row.status == SessionStatus.PENDING.value and not row.consent_given:
                row.consent_given = True
                row.consent_at    = utcnow()
                if device_info:
                    row.device_info = {**(row.device_info or {}), **device_info}
                db.flush()
            return schemas.Session.model_validate(row)

        return self._write(op, f"record consent for session {session_id}")

    def transition(
        self,
        session_id:   str,
        target:       SessionStatus,
        allowed_from: Iterable[SessionStatus],
        at:           datetime | None = None,
    ) -> bool:
        """Compare-and-set the session status; False when nothing changed."""
        def op(db: DbSession) -> bool:
            row = _session_row(db, session_id)
            return _apply_transition(db, row, target, allowed_from, at or utcnow())

        changed = self._once(op, f"transition session {session_id} to {target.value}")
        if changed:
            logger.info("Session %s → %s", session_id, target.value)
        else:
            logger.info("Session %s transition to %s ignored (not allowed from current status)",
                        session_id, target.value)
        return changed

    def touch_activity(self, session_id: str, at: datetime | None = None) -> bool:
        def op(db: DbSession) -> bool:
            _session_row(db, session_id)
            result = db.execute(
                _update(ProctoringSessionRow)
                .where(ProctoringSessionRow.id == session_id)
                .where(ProctoringSessionRow.status.in_(OPEN_STATUSES))
                .values(last_activity_at=at or utcnow())
            )
            return result.rowcount == 1

        return self._write(op, f"touch session {session_id}")

    def list_exam_sessions(self, exam_id: str, statuses: Iterable[SessionStatus] | None = None) -> list[schemas.Session]:
        def op(db: DbSession) -> list[schemas.Session]:
            stmt = select(ProctoringSessionRow).where(ProctoringSessionRow.exam_id == exam_id)
            if statuses is not None:
                stmt = stmt.where(ProctoringSessionRow.status.in_([s.value for s in statuses]))
            stmt = stmt.order_by(ProctoringSessionRow.started_at, ProctoringSessionRow.created_at)
            return [schemas.Session.model_validate(r) for r in db.scalars(stmt)]

        return self._once(op, f"list sessions for exam {exam_id}")

    # ── Detections ────────────────────────────────────────────────────────────

    def record_detection(
        self,
        session_id:          str,
        result:              DetectionResult,
        violation_threshold: Severity = Severity.MEDIUM,
        auto_terminate:      bool = False,
        snapshot_url:        str | None = None,
    ) -> schemas.DetectionOutcome:
        """
        Persist one detection cycle in a single transaction:

            event                           always
            violation                       severity ≥ violation_threshold
            alert                           severity high / critical
            terminate + intervention        critical with auto_terminate

        Only active sessions accept detections; anything else returns an
        outcome with ``accepted=False`` and writes nothing.
        """
        severity = result.severity
        flagged  = severity is not Severity.INFO and severity.at_least(violation_threshold)
        raise_alert = severity in ALERT_SEVERITIES
        terminate   = auto_terminate and severity is Severity.CRITICAL

        def op(db: DbSession) -> schemas.DetectionOutcome:
            _session_row(db, session_id)
            Row = ProctoringSessionRow
            counters: dict[str, Any] = {
                "total_events":       Row.total_events + 1,
                "confidence_score":   (
                    (func.coalesce(Row.confidence_score, 0.0) * Row.confidence_samples + result.confidence)
                    / (Row.confidence_samples + 1)
                ),
                "confidence_samples": Row.confidence_samples + 1,
                "last_activity_at":   result.timestamp,
            }
            if flagged:
                column = f"{severity.value}_violations"
                counters["flagged_events"]   = Row.flagged_events + 1
                counters["total_violations"] = Row.total_violations + 1
                counters[column]             = getattr(Row, column) + 1

            claimed = db.execute(
                _update(Row)
                .where(Row.id == session_id)
                .where(Row.status == SessionStatus.ACTIVE.value)
                .values(**counters)
            )
            if claimed.rowcount != 1:
                return schemas.DetectionOutcome(session_id=session_id, accepted=False)

            event = ProctoringEventRow(
                session_id     = session_id,
                event_type     = result.event_type.value,
                severity       = severity.value,
                detected_at    = result.timestamp,
                description    = result.description,
                snapshot_url   = snapshot_url,
                ai_confidence  = result.confidence,
                flagged        = flagged,
                event_metadata = {**result.details, "requiresAlert": result.requires_alert},
            )
            db.add(event)
            db.flush()

            violation = alert = intervention = None
            if flagged:
                violation = ProctoringViolationRow(
                    session_id     = session_id,
                    event_id       = event.id,
                    violation_type = result.event_type.value,
                    category       = category_for(result.event_type).value,
                    severity       = severity.value,
                    description    = result.description,
                    detected_at    = result.timestamp,
                    ai_confidence  = result.confidence,
                    evidence_url   = snapshot_url,
                )
                db.add(violation)
                db.flush()

            if raise_alert:
                alert = ProctoringAlertRow(
                    session_id   = session_id,
                    event_id     = event.id,
                    violation_id = violation.id if violation is not None else None,
                    alert_type   = result.event_type.value,
                    severity     = severity.value,
                    title        = alert_title(result.event_type),
                    message      = result.description,
                    status       = AlertStatus.PENDING.value,
                    created_at   = result.timestamp,
                )
                db.add(alert)
                db.flush()

            if terminate:
                row = db.get(Row, session_id)
                db.refresh(row)
                _apply_transition(db, row, SessionStatus.TERMINATED, (SessionStatus.ACTIVE,), result.timestamp)
                intervention = ProctoringInterventionRow(
                    session_id        = session_id,
                    alert_id          = alert.id if alert is not None else None,
                    intervention_type = InterventionType.TERMINATE.value,
                    message           = AUTO_TERMINATE_MESSAGE.format(description=result.description),
                    issued_by         = None,
                    sent_at           = result.timestamp,
                )
                db.add(intervention)
                db.flush()

            return schemas.DetectionOutcome(
                session_id   = session_id,
                event        = schemas.Event.model_validate(event),
                violation    = schemas.Violation.model_validate(violation) if violation else None,
                alert        = schemas.Alert.model_validate(alert) if alert else None,
                intervention = schemas.Intervention.model_validate(intervention) if intervention else None,
                terminated   = terminate,
            )

        return self._write(op, f"record {result.event_type.value} for session {session_id}")

    def record_event(
        self,
        session_id:   str,
        event_type:   EventType,
        severity:     Severity = Severity.INFO,
        description:  str = "",
        metadata:     dict[str, Any] | None = None,
        snapshot_url: str | None = None,
        detected_at:  datetime | None = None,
    ) -> schemas.Event | None:
        """Append an unflagged event (snapshots, system notes) to an open session."""
        detected_at = detected_at or utcnow()

        def op(db: DbSession) -> schemas.Event | None:
            _session_row(db, session_id)
            claimed = db.execute(
                _update(ProctoringSessionRow)
                .where(ProctoringSessionRow.id == session_id)
                .where(ProctoringSessionRow.status.in_(OPEN_STATUSES))
                .values(total_events=ProctoringSessionRow.total_events + 1)
            )
            if claimed.rowcount != 1:
                return None
            event = ProctoringEventRow(
                session_id     = session_id,
                event_type     = event_type.value,
                severity       = severity.value,
                detected_at    = detected_at,
                description    = description,
                snapshot_url   = snapshot_url,
                flagged        = False,
                event_metadata = metadata or {},
            )
            db.add(event)
            db.flush()
            return schemas.Event.model_validate(event)

        return self._write(op, f"record {event_type.value} for session {session_id}")

    # ── Ordered reads ─────────────────────────────────────────────────────────

    def list_events(self, session_id: str) -> list[schemas.Event]:
        return self._list(ProctoringEventRow, schemas.Event, session_id, ProctoringEventRow.detected_at)

    def list_violations(self, session_id: str) -> list[schemas.Violation]:
        return self._list(ProctoringViolationRow, schemas.Violation, session_id, ProctoringViolationRow.detected_at)

    def list_alerts(self, session_id: str) -> list[schemas.Alert]:
        return self._list(ProctoringAlertRow, schemas.Alert, session_id, ProctoringAlertRow.created_at)

    def list_interventions(self, session_id: str) -> list[schemas.Intervention]:
        return self._list(ProctoringInterventionRow, schemas.Intervention, session_id, ProctoringInterventionRow.sent_at)

    def _list(self, row_type, record_type, session_id: str, order_column) -> list:
        def op(db: DbSession) -> list:
            stmt = (
                select(row_type)
                .where(row_type.session_id == session_id)
                .order_by(order_column, row_type.id)
            )
            return [record_type.model_validate(r) for r in db.scalars(stmt)]

        return self._once(op, f"list {row_type.__tablename__} for session {session_id}")

    # ── Alerts ────────────────────────────────────────────────────────────────

    def get_alert(self, alert_id: str) -> schemas.Alert | None:
        def op(db: DbSession):
            row = db.get(ProctoringAlertRow, alert_id)
            return schemas.Alert.model_validate(row) if row else None

        return self._once(op, f"read alert {alert_id}")

    def pending_alerts_for_exam(self, exam_id: str) -> list[schemas.Alert]:
        def op(db: DbSession) -> list[schemas.Alert]:
            stmt = (
                select(ProctoringAlertRow)
                .join(ProctoringSessionRow, ProctoringSessionRow.id == ProctoringAlertRow.session_id)
                .where(ProctoringSessionRow.exam_id == exam_id)
                .where(ProctoringAlertRow.status == AlertStatus.PENDING.value)
                .order_by(ProctoringAlertRow.created_at.desc(), ProctoringAlertRow.id.desc())
            )
            return [schemas.Alert.model_validate(r) for r in db.scalars(stmt)]

        return self._once(op, f"list pending alerts for exam {exam_id}")

    def unresolved_alerts(self, session_ids: Iterable[str]) -> list[schemas.Alert]:
        ids = list(session_ids)
        if not ids:
            return []

        def op(db: DbSession) -> list[schemas.Alert]:
            stmt = (
                select(ProctoringAlertRow)
                .where(ProctoringAlertRow.session_id.in_(ids))
                .where(ProctoringAlertRow.status != AlertStatus.RESOLVED.value)
                .order_by(ProctoringAlertRow.created_at)
            )
            return [schemas.Alert.model_validate(r) for r in db.scalars(stmt)]

        return self._once(op, "list unresolved alerts")

    def acknowledge_alert(self, alert_id: str, acknowledged_by: str | None = None) -> schemas.Alert | None:
        """pending → acknowledged. Any other state (or a missing alert) is left as is."""
        def op(db: DbSession):
            db.execute(
                _update(ProctoringAlertRow)
                .where(ProctoringAlertRow.id == alert_id)
                .where(ProctoringAlertRow.status == AlertStatus.PENDING.value)
                .values(
                    status          = AlertStatus.ACKNOWLEDGED.value,
                    acknowledged_by = acknowledged_by,
                    acknowledged_at = utcnow(),
                )
            )
            row = db.get(ProctoringAlertRow, alert_id)
            return schemas.Alert.model_validate(row) if row else None

        return self._write(op, f"acknowledge alert {alert_id}")

    def resolve_alert(
        self,
        alert_id:    str,
        resolved_by: str | None = None,
        notes:       str | None = None,
    ) -> schemas.Alert | None:
        """pending/acknowledged → resolved. Resolving twice is a no-op."""
        def op(db: DbSession):
            db.execute(
                _update(ProctoringAlertRow)
                .where(ProctoringAlertRow.id == alert_id)
                .where(ProctoringAlertRow.status.in_(
                    [AlertStatus.PENDING.value, AlertStatus.ACKNOWLEDGED.value]
                ))
                .values(
                    status           = AlertStatus.RESOLVED.value,
                    resolved_by      = resolved_by,
                    resolved_at      = utcnow(),
                    resolution_notes = notes,
                )
            )
            row = db.get(ProctoringAlertRow, alert_id)
            return schemas.Alert.model_validate(row) if row else None

        return self._write(op, f"resolve alert {alert_id}")

    # ── Interventions ─────────────────────────────────────────────────────────

    def record_intervention(
        self,
        session_id:        str,
        intervention_type: InterventionType,
        message:           str,
        issued_by:         str | None = None,
        alert_id:          str | None = None,
        target:            SessionStatus | None = None,
        allowed_from:      Iterable[SessionStatus] = (),
    ) -> tuple[schemas.Intervention | None, bool]:
        """
        Log an intervention and optionally move the session, atomically.

        Returns ``(intervention, transitioned)``. A finished session accepts
        neither: the call is a no-op returning ``(None, False)``.
        """
        allowed = tuple(allowed_from)

        def op(db: DbSession):
            row = _session_row(db, session_id)
            if SessionStatus(row.status).is_terminal:
                return None, False

            now = utcnow()
            transitioned = False
            if target is not None:
                transitioned = _apply_transition(db, row, target, allowed, now)
                if not transitioned and target.is_terminal:
                    # another writer finished the session after it was read
                    return None, False

            intervention = ProctoringInterventionRow(
                session_id        = session_id,
                alert_id          = alert_id,
                intervention_type = intervention_type.value,
                message           = message,
                issued_by         = issued_by,
                sent_at           = now,
            )
            db.add(intervention)
            db.flush()
            return schemas.Intervention.model_validate(intervention), transitioned

        what = f"{intervention_type.value} intervention for session {session_id}"
        # Status changes are not retried
        if target is not None:
            return self._once(op, what)
        return self._write(op, what)

    # ── Review ────────────────────────────────────────────────────────────────

    def review_violation(
        self,
        violation_id:      str,
        reviewer_id:       str,
        notes:             str | None = None,
        is_false_positive: bool | None = None,
        action_taken:      str | None = None,
    ) -> schemas.Violation | None:
        def op(db: DbSession):
            row = db.get(ProctoringViolationRow, violation_id)
            if row is None:
                return None
            row.reviewed          = True
            row.review_notes      = notes
            row.reviewed_by       = reviewer_id
            row.reviewed_at       = utcnow()
            row.is_false_positive = is_false_positive
            row.action_taken      = action_taken
            db.flush()
            return schemas.Violation.model_validate(row)

        return self._write(op, f"review violation {violation_id}")


# ── Module helpers ────────────────────────────────────────────────────────────

def _update(model):
    # Rows already loaded in the session are refreshed explicitly where read back
    return update(model).execution_options(synchronize_session=False)


def _session_row(db: DbSession, session_id: str) -> ProctoringSessionRow:
    row = db.get(ProctoringSessionRow, session_id)
    if row is None:
        raise SessionNotFoundError(session_id)
    return row


def _apply_transition(
    db:           DbSession,
    row:          ProctoringSessionRow,
    target:       SessionStatus,
    allowed_from: Iterable[SessionStatus],
    at:           datetime,
) -> bool:
    allowed = [s.value for s in allowed_from]
    values: dict[str, Any] = {"status": target.value, "last_activity_at": at}

    if target is SessionStatus.ACTIVE and row.started_at is None:
        values["started_at"] = at
    if target.is_terminal:
        values["ended_at"] = at
        started = as_utc(row.started_at)
        if started is not None:
            values["duration_seconds"] = max(0, int((as_utc(at) - started).total_seconds()))

    stmt = (
        _update(ProctoringSessionRow)
        .where(ProctoringSessionRow.id == row.id)
        .where(ProctoringSessionRow.status.in_(allowed))
    )
    if target.is_terminal:
        stmt = stmt.where(ProctoringSessionRow.ended_at.is_(None))
    changed = db.execute(stmt.values(**values)).rowcount == 1
    if changed:
        db.refresh(row)
    return changed
