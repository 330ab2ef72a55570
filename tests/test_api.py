"""
Tests for the HTTP API, end to end over a temporary SQLite store.
Run with: pytest tests/test_api.py -v
"""
import base64

import pytest

CRITICAL_DETECTION = {
    "eventType":     "multiple_faces",
    "severity":      "critical",
    "confidence":    0.9,
    "details":       {"faceCount": 2, "description": "2 faces detected in frame"},
    "requiresAlert": True,
}


@pytest.fixture
def started(client):
    """Create, consent and start a session; returns its id."""
    created = client.post("/sessions", json={
        "examId": "exam-1", "studentId": "student-1", "deviceInfo": {"browser": "Firefox"},
    })
    session_id = created.json()["id"]
    client.post(f"/sessions/{session_id}/consent")
    client.post(f"/sessions/{session_id}/start")
    return session_id


class TestHealth:
    def test_health_reports_dependencies(self, client, monkeypatch):
        monkeypatch.setattr("proctoring.api.routes.check_minio_connection", lambda: False)
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["dependencies"]["database"] == "ok"
        assert body["dependencies"]["minio"] == "error"


class TestSessions:
    def test_create_consent_start(self, client):
        created = client.post("/sessions", json={"examId": "exam-1", "studentId": "student-1"})
        assert created.status_code == 201
        session = created.json()
        assert session["status"] == "pending"
        assert session["consent_given"] is False

        consent = client.post(f"/sessions/{session['id']}/consent", json={"deviceInfo": {"camera": "USB"}})
        assert consent.json()["consent_given"] is True
        assert consent.json()["device_info"] == {"camera": "USB"}

        started = client.post(f"/sessions/{session['id']}/start").json()
        assert started == {"sessionId": session["id"], "changed": True, "status": "active"}

    def test_unknown_session_is_404(self, client):
        assert client.get("/sessions/nope").status_code == 404
        assert client.post("/sessions/nope/start").status_code == 404
        stream = client.post("/sessions/nope/stream", json={"kind": "snapshot", "data": "aGk="})
        assert stream.status_code == 404

    def test_complete_twice(self, client, started):
        first = client.post(f"/sessions/{started}/complete").json()
        second = client.post(f"/sessions/{started}/complete").json()
        assert (first["changed"], first["status"]) == (True, "completed")
        assert (second["changed"], second["status"]) == (False, "completed")


class TestDetectionsAndAlerts:
    def test_critical_detection_flows_to_the_live_view(self, client, started):
        outcome = client.post(f"/sessions/{started}/detections", json=CRITICAL_DETECTION).json()
        assert outcome["accepted"] is True
        assert outcome["violation"]["severity"] == "critical"
        assert outcome["event"]["metadata"]["faceCount"] == 2
        alert_id = outcome["alert"]["id"]

        live = client.get("/exams/exam-1/live").json()
        assert live["counts"] == {"normal": 0, "warning": 0, "critical": 1}
        assert live["sessions"][0]["riskStatus"] == "critical"
        assert [a["id"] for a in live["pendingAlerts"]] == [alert_id]

        acked = client.post(f"/alerts/{alert_id}/acknowledge", json={"teacherId": "teacher-1"}).json()
        assert acked["status"] == "acknowledged"
        assert client.get("/exams/exam-1/alerts/pending").json() == []

        resolved = client.post(f"/alerts/{alert_id}/resolve", json={"notes": "sibling left the room"}).json()
        assert resolved["status"] == "resolved"
        assert client.get("/exams/exam-1/live").json()["counts"]["critical"] == 0

    def test_detection_is_validated(self, client, started):
        bad = dict(CRITICAL_DETECTION, confidence=1.5)
        assert client.post(f"/sessions/{started}/detections", json=bad).status_code == 422

    def test_unknown_alert_is_a_noop(self, client, started):
        client.post(f"/sessions/{started}/detections", json=CRITICAL_DETECTION)

        for action in ("acknowledge", "resolve"):
            response = client.post(f"/alerts/missing/{action}", json={"teacherId": "teacher-1"})
            assert response.status_code == 200
            assert response.json() == {"alertId": "missing", "changed": False}

        pending = client.get("/exams/exam-1/alerts/pending").json()
        assert len(pending) == 1
        assert pending[0]["status"] == "pending"

    def test_review_violation(self, client, started):
        violation = client.post(f"/sessions/{started}/detections", json=CRITICAL_DETECTION).json()["violation"]
        reviewed = client.post(f"/violations/{violation['id']}/review", json={
            "reviewerId": "teacher-1", "isFalsePositive": False, "actionTaken": "warned",
        }).json()
        assert reviewed["reviewed"] is True
        assert reviewed["action_taken"] == "warned"
        assert client.post("/violations/missing/review", json={"reviewerId": "t"}).status_code == 404


class TestInterventions:
    def test_pause_then_terminate_then_noop(self, client, started):
        paused = client.post(f"/sessions/{started}/interventions", json={
            "message": "Please stay in frame", "action": "pause", "issuedBy": "teacher-1",
        }).json()
        assert paused["applied"] is True
        assert paused["status"] == "paused"
        assert paused["intervention"]["message"] == "Please stay in frame"

        terminated = client.post(f"/sessions/{started}/interventions", json={
            "message": "Ending exam", "action": "terminate",
        }).json()
        assert terminated["status"] == "terminated"
        assert client.get(f"/sessions/{started}").json()["ended_at"] is not None

        late = client.post(f"/sessions/{started}/interventions", json={"message": "hello?"}).json()
        assert late == {"applied": False, "intervention": None, "status": "terminated"}


class TestSettings:
    def test_put_and_get(self, client):
        put = client.put("/exams/exam-9/settings", json={
            "violation_threshold": "high", "auto_terminate_on_critical": True, "snapshot_interval": 60,
        })
        assert put.status_code == 200
        got = client.get("/exams/exam-9/settings").json()
        assert got["violation_threshold"] == "high"
        assert got["auto_terminate_on_critical"] is True
        assert got["snapshot_interval"] == 60

    def test_missing_and_invalid(self, client):
        assert client.get("/exams/none/settings").status_code == 404
        bad = client.put("/exams/exam-9/settings", json={"violation_threshold": "extreme"})
        assert bad.status_code == 422

    def test_auto_terminate_applies_to_new_sessions(self, client):
        client.put("/exams/exam-5/settings", json={"auto_terminate_on_critical": True})
        session_id = client.post("/sessions", json={"examId": "exam-5", "studentId": "s"}).json()["id"]
        client.post(f"/sessions/{session_id}/start")

        outcome = client.post(f"/sessions/{session_id}/detections", json=CRITICAL_DETECTION).json()
        assert outcome["terminated"] is True
        assert client.get(f"/sessions/{session_id}").json()["status"] == "terminated"


class TestStream:
    def test_snapshot_chunk(self, client, started, uploader):
        data = base64.b64encode(b"\xff\xd8fake-jpeg").decode()
        body = client.post(f"/sessions/{started}/stream", json={
            "kind": "snapshot", "data": data, "timestamp": 1_767_600_000.5,
        }).json()
        assert body["accepted"] is True
        assert body["objectKey"] == f"{started}/chunk-1.jpg"
        assert body["eventId"] is not None
        assert uploader.calls[0]["size"] == len(b"\xff\xd8fake-jpeg")

    def test_invalid_base64(self, client, started):
        response = client.post(f"/sessions/{started}/stream", json={"kind": "video", "data": "***"})
        assert response.status_code == 400


class TestReports:
    def test_json_and_html(self, client, started):
        client.post(f"/sessions/{started}/detections", json=CRITICAL_DETECTION)
        client.post(f"/sessions/{started}/complete")

        as_json = client.post("/reports", json={"sessionId": started, "format": "json"}).json()
        assert as_json["statistics"]["totalViolations"] == 1
        assert as_json["statistics"]["violationsBySeverity"]["critical"] == 1

        as_html = client.post("/reports", json={"sessionId": started, "format": "html"})
        assert as_html.headers["content-type"].startswith("text/html")
        assert "Detailed Violations" in as_html.text
        assert "COMPLETED" in as_html.text

    def test_pdf_is_501(self, client, started):
        response = client.post("/reports", json={"sessionId": started, "format": "pdf"})
        assert response.status_code == 501
        assert response.json()["detail"] == "PDF report generation not implemented"

    def test_missing_session_is_404(self, client):
        assert client.post("/reports", json={"sessionId": "missing"}).status_code == 404
