"""
Tests for duration escalation and the DetectionEngine ticks.
Run with: pytest tests/test_detection_engine.py -v
"""
import asyncio

import pytest


class TestDurationEscalator:
    def test_blip_shorter_than_grace_never_fires(self):
        from proctoring.detection.escalation import DurationEscalator
        esc = DurationEscalator(grace_period=10, high_severity_after=10)
        assert [esc.observe(True, t) for t in range(0, 6)] == [None] * 6
        assert esc.observe(False, 6) is None
        assert esc.active_since is None

    def test_medium_then_high_once_each(self):
        from proctoring.detection.escalation import DurationEscalator
        from proctoring.detection.types import Severity
        esc = DurationEscalator(grace_period=10, high_severity_after=10)

        emitted = [e for e in (esc.observe(True, t) for t in range(0, 40)) if e is not None]
        assert [e.severity for e in emitted] == [Severity.MEDIUM, Severity.HIGH]
        assert emitted[0].duration == 11
        assert emitted[0].requires_alert is False
        assert emitted[1].duration == 21
        assert emitted[1].requires_alert is True

    def test_recovery_starts_a_new_episode(self):
        from proctoring.detection.escalation import DurationEscalator
        from proctoring.detection.types import Severity
        esc = DurationEscalator(grace_period=5, high_severity_after=100)
        assert esc.observe(True, 0) is None
        assert esc.observe(True, 6).severity is Severity.MEDIUM
        esc.observe(False, 7)
        assert esc.observe(True, 8) is None
        assert esc.observe(True, 14).severity is Severity.MEDIUM


class TestFaceCheck:
    def _tick_every(self, engine, clock, seconds, step):
        async def run():
            results = []
            elapsed = 0
            while elapsed <= seconds:
                results.append(await engine.run_face_check())
                clock.advance(step)
                elapsed += step
            return [r for r in results if r is not None]
        return asyncio.run(run())

    def test_short_absence_emits_nothing(self, make_engine, detector, clock):
        engine = make_engine()
        received = []
        engine.on_detection(received.append)

        detector.show_faces()
        assert self._tick_every(engine, clock, seconds=5, step=1) == []
        detector.show_faces(0.95)
        assert asyncio.run(engine.run_face_check()) is None
        assert received == []

    def test_sustained_absence_emits_one_medium_event(self, make_engine, detector, clock):
        from proctoring.detection.types import EventType, Severity
        engine = make_engine()
        detector.show_faces()

        emitted = self._tick_every(engine, clock, seconds=15, step=5)
        assert len(emitted) == 1
        result = emitted[0]
        assert result.event_type is EventType.NO_FACE
        assert result.severity is Severity.MEDIUM
        assert result.requires_alert is False
        assert result.confidence == pytest.approx(0.95)
        assert result.description == "No face detected for 15.0 seconds"

    def test_low_confidence_faces_count_as_absent(self, make_engine, detector, clock):
        from proctoring.detection.types import EventType
        engine = make_engine()
        detector.show_faces(0.3)
        emitted = self._tick_every(engine, clock, seconds=15, step=5)
        assert [r.event_type for r in emitted] == [EventType.NO_FACE]

    def test_multiple_faces_is_immediately_critical(self, make_engine, detector):
        from proctoring.detection.types import EventType, Severity
        engine = make_engine()
        detector.show_faces(0.9, 0.8)

        result = asyncio.run(engine.run_face_check())
        assert result.event_type is EventType.MULTIPLE_FACES
        assert result.severity is Severity.CRITICAL
        assert result.requires_alert is True
        assert result.details["faceCount"] == 2
        assert len(result.details["faces"]) == 2

    def test_no_frame_means_no_tick(self, make_engine, frames, detector):
        frames.frame = None
        engine = make_engine()
        assert asyncio.run(engine.run_face_check()) is None
        assert detector.calls == {}


class TestOtherChecks:
    def test_blocked_object_is_high_with_alert(self, make_engine, detector):
        from proctoring.detection.types import EventType, Severity
        engine = make_engine()
        detector.show_objects(("Cell Phone", 0.88), ("laptop", 0.99), ("book", 0.4))

        result = asyncio.run(engine.run_object_check())
        assert result.event_type is EventType.OBJECT_DETECTED
        assert result.severity is Severity.HIGH
        assert result.requires_alert is True
        assert result.details["objects"] == ["Cell Phone"]
        assert len(result.details["allDetections"]) == 3
        assert result.description == "Unauthorized objects detected: Cell Phone"

    def test_allowed_objects_are_ignored(self, make_engine, detector):
        engine = make_engine()
        detector.show_objects(("laptop", 0.99), ("cup", 0.9))
        assert asyncio.run(engine.run_object_check()) is None

    def test_gaze_escalates_after_off_screen_time(self, make_engine, detector, clock):
        from proctoring.detection.detector import GazeEstimate
        from proctoring.detection.types import EventType, Severity
        engine = make_engine()
        detector.gaze = GazeEstimate(looking_at_screen=False, direction=(0.4, -0.1), confidence=0.85)

        async def run():
            out = []
            for _ in range(4):               # t = 0, 3, 6, 9
                out.append(await engine.run_gaze_check())
                clock.advance(3)
            return [r for r in out if r is not None]

        emitted = asyncio.run(run())
        assert len(emitted) == 1
        assert emitted[0].event_type is EventType.LOOKING_AWAY
        assert emitted[0].severity is Severity.MEDIUM
        assert emitted[0].details["gazeDirection"] == {"x": 0.4, "y": -0.1}

    def test_inconclusive_gaze_does_not_start_an_episode(self, make_engine, detector, clock):
        from proctoring.detection.detector import GazeEstimate
        engine = make_engine()
        detector.gaze = GazeEstimate(looking_at_screen=False, confidence=0.0)

        async def run():
            for _ in range(10):
                assert await engine.run_gaze_check() is None
                clock.advance(3)

        asyncio.run(run())
        assert engine._gaze_away.active_since is None

    def test_multiple_voices_is_high(self, make_engine, detector):
        from proctoring.detection.detector import AudioAnalysis
        from proctoring.detection.types import EventType, Severity
        engine = make_engine()
        detector.audio = AudioAnalysis(average_volume=0.2, peak_volume=0.5, is_silent=False,
                                       multiple_voices=True, confidence=0.8)
        result = asyncio.run(engine.run_audio_check())
        assert result.event_type is EventType.AUDIO_CONVERSATION
        assert result.severity is Severity.HIGH
        assert result.requires_alert is True

    def test_loud_audio_is_medium_without_alert(self, make_engine, detector):
        from proctoring.detection.detector import AudioAnalysis
        from proctoring.detection.types import EventType, Severity
        engine = make_engine()
        detector.audio = AudioAnalysis(average_volume=0.7, peak_volume=0.9, is_silent=False)
        result = asyncio.run(engine.run_audio_check())
        assert result.event_type is EventType.AUDIO_UNUSUAL
        assert result.severity is Severity.MEDIUM
        assert result.requires_alert is False
        assert result.details["averageVolume"] == 0.7

    def test_quiet_audio_emits_nothing(self, make_engine, detector):
        from proctoring.detection.detector import AudioAnalysis
        engine = make_engine()
        detector.audio = AudioAnalysis(average_volume=0.3, is_silent=False)
        assert asyncio.run(engine.run_audio_check()) is None


class TestEngineLifecycle:
    def test_failing_module_does_not_stop_the_others(self, make_engine, detector):
        from proctoring.detection.types import DetectionConfig
        detector.failing = {"face"}
        detector.show_objects(("cell phone", 0.9))
        config = DetectionConfig().merged(
            face={"check_interval": 0.01},
            object={"check_interval": 0.01},
            gaze={"enabled": False},
            audio={"enabled": False},
        )
        engine = make_engine(config)
        received = []
        engine.on_detection(received.append)

        async def run():
            engine.start()
            await asyncio.sleep(0.1)
            engine.stop()

        asyncio.run(run())
        stats = engine.get_statistics()
        assert stats["errors"]["face"] >= 2
        assert stats["emitted"]["object_detected"] >= 2
        assert len(received) == stats["total_emitted"]
        assert stats["running"] is False

    def test_stop_discards_results_still_in_flight(self, make_engine, detector):
        detector.show_faces(0.9, 0.9)
        engine = make_engine()
        received = []
        engine.on_detection(received.append)

        async def run():
            detector.gate = asyncio.Event()
            tick = asyncio.get_running_loop().create_task(engine.run_face_check())
            await asyncio.sleep(0)
            engine.stop()
            detector.gate.set()
            return await tick

        assert asyncio.run(run()) is None
        assert received == []

    def test_stop_is_idempotent(self, make_engine):
        engine = make_engine()

        async def run():
            engine.start()
            engine.stop()
            engine.stop()

        asyncio.run(run())
        assert engine.running is False

    def test_update_config_restarts_with_new_settings(self, make_engine):
        engine = make_engine()

        async def run():
            engine.start()
            config = engine.update_config(audio={"enabled": False}, face={"max_look_away_duration": 3})
            running = engine.running
            modules = sorted(engine._tasks)
            engine.stop()
            return config, running, modules

        config, running, modules = asyncio.run(run())
        assert running is True
        assert config.face.max_look_away_duration == 3
        assert "audio" not in modules
        assert engine._face_absence.grace_period == 3

    def test_failing_subscriber_does_not_block_others(self, make_engine, detector):
        detector.show_faces(0.9, 0.9)
        engine = make_engine()
        received = []

        def broken(result):
            raise ValueError("listener bug")

        engine.on_detection(broken)
        engine.on_detection(received.append)
        asyncio.run(engine.run_face_check())
        assert len(received) == 1
