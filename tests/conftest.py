"""
Shared fixtures: a temporary SQLite store, scripted detector / frame source
fakes and a manually advanced clock. Nothing here touches a camera, a model
file, RabbitMQ or MinIO.
"""
import asyncio

import numpy as np
import pytest


# ── Fakes ─────────────────────────────────────────────────────────────────────

class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDetector:
    """Returns whatever the test last scripted; raises for modules in ``failing``."""

    def __init__(self):
        from proctoring.detection.detector import (
            AudioAnalysis, DetectedFace, FaceDetection, GazeEstimate, ObjectDetection,
        )
        self.faces   = FaceDetection([DetectedFace(0.95)])
        self.objects = ObjectDetection()
        self.gaze    = GazeEstimate(looking_at_screen=True, confidence=0.9)
        self.audio   = AudioAnalysis()
        self.failing: set[str] = set()
        self.gate: asyncio.Event | None = None
        self.calls: dict[str, int] = {}

    async def _answer(self, module, value):
        self.calls[module] = self.calls.get(module, 0) + 1
        if self.gate is not None:
            await self.gate.wait()
        if module in self.failing:
            raise RuntimeError(f"{module} model crashed")
        return value

    async def detect_faces(self, frame):
        return await self._answer("face", self.faces)

    async def detect_objects(self, frame):
        return await self._answer("object", self.objects)

    async def track_gaze(self, frame):
        return await self._answer("gaze", self.gaze)

    async def analyze_audio(self, samples, sample_rate):
        return await self._answer("audio", self.audio)

    # scripting helpers
    def show_faces(self, *confidences: float):
        from proctoring.detection.detector import DetectedFace, FaceDetection
        self.faces = FaceDetection([DetectedFace(c, (10.0, 10.0, 50.0, 50.0)) for c in confidences])

    def show_objects(self, *labelled: tuple[str, float]):
        from proctoring.detection.detector import DetectedObject, ObjectDetection
        self.objects = ObjectDetection([DetectedObject(label, conf) for label, conf in labelled])


class FakeFrames:
    def __init__(self):
        self.frame = np.zeros((48, 64, 3), dtype=np.uint8)
        self.audio = (np.zeros(1600, dtype=np.float32), 16000)

    def latest_video_frame(self):
        return self.frame

    def latest_audio_samples(self):
        return self.audio


class FakeUploader:
    def __init__(self, fail: bool = False):
        self.fail  = fail
        self.calls = []

    def __call__(self, bucket, data, content_type="application/octet-stream", prefix="", extension="bin"):
        self.calls.append({"bucket": bucket, "size": len(data), "content_type": content_type, "prefix": prefix})
        if self.fail:
            return None
        return f"{prefix}/chunk-{len(self.calls)}.{extension}"


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def settings():
    from proctoring.config import Settings
    return Settings(
        _env_file               = None,
        messaging_enabled       = False,
        write_attempts          = 2,
        monitor_poll_interval   = 30.0,
        monitor_push_heartbeat  = 30.0,
        warning_violation_count = 3,
    )


@pytest.fixture
def session_factory(tmp_path):
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker

    from proctoring.db.database import create_schema

    # file-backed so store calls made from worker threads get their own connections
    engine = create_engine(
        f"sqlite:///{tmp_path / 'proctoring.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )
    create_schema(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def store(session_factory, settings):
    from proctoring.store.proctoring_store import ProctoringStore
    return ProctoringStore(session_factory, settings)


@pytest.fixture
def manager(store, settings):
    from proctoring.session.manager import SessionManager
    return SessionManager(store, settings)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def detector():
    return FakeDetector()


@pytest.fixture
def frames():
    return FakeFrames()


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def failing_uploader():
    return FakeUploader(fail=True)


@pytest.fixture
def make_engine(detector, frames, clock):
    from proctoring.detection.engine import DetectionEngine
    from proctoring.detection.types import DetectionConfig

    def _make(config=None):
        return DetectionEngine(detector, frames, config or DetectionConfig(), clock=clock)

    return _make


@pytest.fixture
def active_session(store):
    """Factory: a session moved to active (optionally with exam settings)."""
    from proctoring import schemas
    from proctoring.detection.types import SessionStatus

    def _make(exam_id="exam-1", student_id="student-1", **exam_settings):
        if exam_settings:
            store.upsert_settings(schemas.ProctoringSettings(exam_id=exam_id, **exam_settings))
        session = store.create_session(exam_id, student_id, {"browser": "test"})
        store.transition(session.id, SessionStatus.ACTIVE, (SessionStatus.PENDING,))
        return store.get_session(session.id)

    return _make


@pytest.fixture
def detection():
    """Factory for DetectionResults."""
    from proctoring.detection.types import DetectionResult, EventType, Severity
    from proctoring.timeline import utcnow

    def _make(event_type=EventType.MULTIPLE_FACES, severity=Severity.CRITICAL,
              confidence=0.9, description="2 faces detected in frame", at=None, requires_alert=None):
        return DetectionResult(
            timestamp      = at or utcnow(),
            event_type     = event_type,
            severity       = severity,
            confidence     = confidence,
            details        = {"description": description},
            requires_alert = severity in (Severity.HIGH, Severity.CRITICAL) if requires_alert is None else requires_alert,
        )

    return _make


@pytest.fixture
def services(store, settings, uploader):
    from proctoring.api.routes import Services
    return Services.build(settings=settings, store=store, uploader=uploader)


@pytest.fixture
def client(services):
    from fastapi.testclient import TestClient

    from proctoring.main import create_app

    with TestClient(create_app(services)) as test_client:
        yield test_client
