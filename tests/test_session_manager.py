"""
Tests for the session state machine and detection recording.
Run with: pytest tests/test_session_manager.py -v
"""
import asyncio
from datetime import timedelta

import pytest


class TestTransitions:
    def test_lifecycle_sets_timestamps_once(self, manager, store):
        from proctoring.detection.types import SessionStatus

        async def run():
            session = await manager.create_session("exam-1", "student-1")
            assert session.status is SessionStatus.PENDING
            assert await manager.start_session(session.id) is True
            assert await manager.pause_session(session.id) is True
            assert await manager.resume_session(session.id) is True
            assert await manager.complete_session(session.id) is True
            return await manager.get_session(session.id)

        done = asyncio.run(run())
        assert done.status is SessionStatus.COMPLETED
        assert done.started_at is not None
        assert done.ended_at is not None
        assert done.duration_seconds is not None and done.duration_seconds >= 0

    def test_finished_session_ignores_further_transitions(self, manager, active_session):
        from proctoring.detection.types import SessionStatus
        session = active_session()

        async def run():
            assert await manager.complete_session(session.id) is True
            first = await manager.get_session(session.id)
            assert await manager.terminate_session(session.id) is False
            assert await manager.resume_session(session.id) is False
            assert await manager.start_session(session.id) is False
            return first, await manager.get_session(session.id)

        first, after = asyncio.run(run())
        assert after.status is SessionStatus.COMPLETED
        assert after.ended_at == first.ended_at

    def test_start_only_from_pending(self, manager, active_session):
        session = active_session()
        assert asyncio.run(manager.start_session(session.id)) is False

    def test_consent_recorded_once(self, manager):
        async def run():
            session = await manager.create_session("exam-1", "student-1")
            first = await manager.record_consent(session.id, {"camera": "FaceTime HD"})
            second = await manager.record_consent(session.id)
            return first, second

        first, second = asyncio.run(run())
        assert first.consent_given is True
        assert first.device_info["camera"] == "FaceTime HD"
        assert second.consent_at == first.consent_at

    def test_unknown_session_raises(self, manager):
        from proctoring.errors import SessionNotFoundError
        with pytest.raises(SessionNotFoundError):
            asyncio.run(manager.get_session("missing"))


class TestHandleDetection:
    def test_critical_detection_writes_event_violation_and_alert(self, manager, store, active_session, detection):
        from proctoring.detection.types import AlertStatus, SessionStatus, Severity, ViolationCategory
        session = active_session()
        notices = []
        manager.alerts.subscribe(notices.append)

        outcome = asyncio.run(manager.handle_detection(session.id, detection()))
        assert outcome.accepted is True
        assert outcome.event.flagged is True
        assert outcome.violation.severity is Severity.CRITICAL
        assert outcome.violation.category is ViolationCategory.UNAUTHORIZED_ASSISTANCE
        assert outcome.alert.status is AlertStatus.PENDING
        assert outcome.alert.violation_id == outcome.violation.id
        assert outcome.terminated is False

        after = store.get_session(session.id)
        assert after.status is SessionStatus.ACTIVE
        assert (after.total_events, after.flagged_events, after.total_violations) == (1, 1, 1)
        assert after.critical_violations == 1
        assert after.confidence_score == pytest.approx(0.9)

        assert len(notices) == 1
        assert notices[0].exam_id == "exam-1"
        assert notices[0].student_id == "student-1"

    def test_below_threshold_is_event_only(self, manager, store, active_session, detection):
        from proctoring.detection.types import EventType, Severity
        session = active_session(violation_threshold=Severity.HIGH)

        outcome = asyncio.run(manager.handle_detection(
            session.id, detection(EventType.NO_FACE, Severity.MEDIUM, 0.95, "No face detected for 12.0 seconds"),
        ))
        assert outcome.event is not None
        assert outcome.event.flagged is False
        assert outcome.violation is None
        assert outcome.alert is None
        assert store.get_session(session.id).total_violations == 0

    def test_high_raises_alert(self, manager, active_session, detection):
        from proctoring.detection.types import EventType, Severity
        session = active_session()
        outcome = asyncio.run(manager.handle_detection(
            session.id, detection(EventType.OBJECT_DETECTED, Severity.HIGH, 0.8, "Unauthorized objects detected: book"),
        ))
        assert outcome.alert is not None
        assert outcome.alert.title == "Unauthorized Object Detected"

    def test_auto_terminate_on_critical(self, manager, store, active_session, detection):
        from proctoring.detection.types import InterventionType, SessionStatus
        session = active_session(auto_terminate_on_critical=True)
        interventions = []
        manager.interventions.subscribe(interventions.append)

        outcome = asyncio.run(manager.handle_detection(session.id, detection()))
        assert outcome.terminated is True
        assert outcome.intervention.intervention_type is InterventionType.TERMINATE
        assert outcome.intervention.issued_by is None
        assert outcome.intervention.alert_id == outcome.alert.id

        after = store.get_session(session.id)
        assert after.status is SessionStatus.TERMINATED
        assert after.ended_at is not None
        assert [i.id for i in store.list_interventions(session.id)] == [outcome.intervention.id]
        assert interventions == [outcome.intervention]

    def test_terminated_session_rejects_new_detections(self, manager, store, active_session, detection):
        session = active_session(auto_terminate_on_critical=True)

        async def run():
            await manager.handle_detection(session.id, detection())
            return await manager.handle_detection(session.id, detection())

        second = asyncio.run(run())
        assert second.accepted is False
        assert second.event is None
        assert len(store.list_events(session.id)) == 1
        assert len(store.list_violations(session.id)) == 1
        assert len(store.list_alerts(session.id)) == 1

    def test_pending_and_paused_sessions_reject_detections(self, manager, store, active_session, detection):
        async def run():
            pending = await manager.create_session("exam-1", "student-2")
            paused = active_session(student_id="student-3")
            await manager.pause_session(paused.id)
            return (
                await manager.handle_detection(pending.id, detection()),
                await manager.handle_detection(paused.id, detection()),
                pending.id,
                paused.id,
            )

        on_pending, on_paused, pending_id, paused_id = asyncio.run(run())
        assert on_pending.accepted is False
        assert on_paused.accepted is False
        assert store.list_events(pending_id) == []
        assert store.list_events(paused_id) == []

    def test_failed_termination_rolls_back_everything(self, manager, store, active_session, detection):
        from sqlalchemy import event
        from sqlalchemy.exc import OperationalError

        from proctoring.db.models import ProctoringInterventionRow
        from proctoring.detection.types import SessionStatus
        from proctoring.errors import PersistenceError

        session = active_session(auto_terminate_on_critical=True)

        def fail_insert(mapper, connection, target):
            raise OperationalError("INSERT INTO proctoring_interventions", {}, Exception("disk I/O error"))

        event.listen(ProctoringInterventionRow, "before_insert", fail_insert)
        try:
            with pytest.raises(PersistenceError):
                asyncio.run(manager.handle_detection(session.id, detection()))
        finally:
            event.remove(ProctoringInterventionRow, "before_insert", fail_insert)

        after = store.get_session(session.id)
        assert after.status is SessionStatus.ACTIVE
        assert after.ended_at is None
        assert after.total_events == 0
        assert store.list_events(session.id) == []
        assert store.list_violations(session.id) == []
        assert store.list_alerts(session.id) == []
        assert store.list_interventions(session.id) == []

    def test_bound_engine_feeds_the_manager(self, manager, store, active_session, make_engine, detector):
        session = active_session()
        engine = make_engine()
        manager.bind_engine(engine, session.id)
        detector.show_faces(0.9, 0.85)

        asyncio.run(engine.run_face_check())
        events = store.list_events(session.id)
        assert [e.event_type.value for e in events] == ["multiple_faces"]
        assert events[0].metadata["faceCount"] == 2


class TestInterventions:
    def test_pause_intervention(self, manager, store, active_session):
        from proctoring.detection.types import InterventionType, SessionStatus
        session = active_session()

        intervention = asyncio.run(manager.send_intervention(
            session.id, "Please stay in front of the camera", InterventionType.PAUSE, "teacher-1",
        ))
        after = store.get_session(session.id)
        assert after.status is SessionStatus.PAUSED
        assert after.ended_at is None
        assert intervention.intervention_type is InterventionType.PAUSE
        assert intervention.message == "Please stay in front of the camera"
        assert store.list_interventions(session.id)[0].issued_by == "teacher-1"

    def test_warning_leaves_status_alone(self, manager, store, active_session):
        from proctoring.detection.types import InterventionType, SessionStatus
        session = active_session()
        intervention = asyncio.run(manager.send_intervention(session.id, "Eyes on screen"))
        assert intervention.intervention_type is InterventionType.WARNING
        assert store.get_session(session.id).status is SessionStatus.ACTIVE

    def test_terminate_intervention_ends_session(self, manager, store, active_session):
        from proctoring.detection.types import InterventionType, SessionStatus
        session = active_session()
        asyncio.run(manager.send_intervention(session.id, "Phone use", InterventionType.TERMINATE, "teacher-1"))
        after = store.get_session(session.id)
        assert after.status is SessionStatus.TERMINATED
        assert after.ended_at is not None

    def test_intervention_on_finished_session_is_noop(self, manager, store, active_session):
        from proctoring.detection.types import InterventionType
        session = active_session()

        async def run():
            await manager.terminate_session(session.id)
            return await manager.send_intervention(session.id, "too late", InterventionType.PAUSE)

        assert asyncio.run(run()) is None
        assert store.list_interventions(session.id) == []

    def test_second_terminate_loses(self, manager, active_session):
        session = active_session()

        async def run():
            return [await manager.terminate_session(session.id) for _ in range(3)]

        assert asyncio.run(run()) == [True, False, False]

    def test_terminate_overtaken_by_another_writer_is_a_noop(self, manager, store, active_session, monkeypatch):
        from proctoring.detection.types import InterventionType, SessionStatus
        from proctoring.store import proctoring_store
        session = active_session()
        real_transition = proctoring_store._apply_transition
        overtaken = []

        def finished_meanwhile(db, row, target, allowed_from, at):
            # the row was read as active; another writer terminates it first
            if not overtaken:
                overtaken.append(target)
                store.transition(session.id, SessionStatus.TERMINATED, (SessionStatus.ACTIVE,))
            return real_transition(db, row, target, allowed_from, at)

        monkeypatch.setattr(proctoring_store, "_apply_transition", finished_meanwhile)
        result = asyncio.run(manager.send_intervention(
            session.id, "Exam ended by proctor", InterventionType.TERMINATE, "teacher-1",
        ))

        assert overtaken == [SessionStatus.TERMINATED]
        assert result is None
        assert store.list_interventions(session.id) == []
        assert store.get_session(session.id).status is SessionStatus.TERMINATED


class TestStoreReads:
    def test_events_come_back_in_time_order(self, store, active_session, detection):
        from proctoring.detection.types import EventType, Severity
        from proctoring.timeline import utcnow
        session = active_session()
        base = utcnow()
        for offset in (30, 10, 20):
            store.record_detection(session.id, detection(
                EventType.OBJECT_DETECTED, Severity.HIGH, at=base + timedelta(seconds=offset),
            ))
        detected = [e.detected_at for e in store.list_events(session.id)]
        assert detected == sorted(detected)
        created = [a.created_at for a in store.list_alerts(session.id)]
        assert created == sorted(created)

    def test_alert_status_only_moves_forward(self, store, active_session, detection):
        from proctoring.detection.types import AlertStatus
        session = active_session()
        alert = store.record_detection(session.id, detection()).alert

        acked = store.acknowledge_alert(alert.id, "teacher-1")
        assert acked.status is AlertStatus.ACKNOWLEDGED
        resolved = store.resolve_alert(alert.id, "teacher-1", "spoke to student")
        assert resolved.status is AlertStatus.RESOLVED

        again = store.resolve_alert(alert.id, "teacher-2", "second try")
        assert again.status is AlertStatus.RESOLVED
        assert again.resolved_by == "teacher-1"
        assert again.resolved_at == resolved.resolved_at
        assert store.acknowledge_alert(alert.id, "teacher-2").status is AlertStatus.RESOLVED

    def test_missing_alert_returns_none(self, store):
        assert store.resolve_alert("nope") is None
        assert store.acknowledge_alert("nope") is None

    def test_pending_alerts_newest_first(self, store, active_session, detection):
        from proctoring.timeline import utcnow
        first = active_session(student_id="a")
        second = active_session(student_id="b")
        other_exam = active_session(exam_id="exam-2", student_id="c")
        base = utcnow()
        store.record_detection(first.id, detection(at=base))
        store.record_detection(second.id, detection(at=base + timedelta(seconds=5)))
        store.record_detection(other_exam.id, detection(at=base + timedelta(seconds=9)))

        pending = store.pending_alerts_for_exam("exam-1")
        assert [a.session_id for a in pending] == [second.id, first.id]

    def test_review_violation(self, manager, store, active_session, detection):
        session = active_session()
        violation = store.record_detection(session.id, detection()).violation
        reviewed = asyncio.run(manager.review_violation(
            violation.id, "teacher-1", "twin sibling walked in", is_false_positive=True,
        ))
        assert reviewed.reviewed is True
        assert reviewed.is_false_positive is True
        assert reviewed.reviewed_by == "teacher-1"

    def test_record_event_refused_after_finish(self, store, active_session):
        from proctoring.detection.types import EventType, SessionStatus
        session = active_session()
        assert store.record_event(session.id, EventType.SNAPSHOT_CAPTURED) is not None
        store.transition(session.id, SessionStatus.COMPLETED, (SessionStatus.ACTIVE,))
        assert store.record_event(session.id, EventType.SNAPSHOT_CAPTURED) is None
        assert store.touch_activity(session.id) is False
