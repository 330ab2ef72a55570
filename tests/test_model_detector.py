"""
Tests for ModelDetector fallbacks and the audio analysis helpers
(unit tests; no camera or model weights needed).
Run with: pytest tests/test_model_detector.py -v
"""
import asyncio
import math

import numpy as np
import pytest


def _sine(freq: float = 440.0, seconds: float = 1.0, rate: int = 16000, amplitude: float = 0.5) -> np.ndarray:
    t = np.arange(int(seconds * rate)) / rate
    return (amplitude * np.sin(2 * math.pi * freq * t)).astype(np.float32)


class TestFallbacks:
    """A backend that cannot load or run reports nothing suspicious."""

    def test_objects_empty_when_yolo_unavailable(self, settings):
        from proctoring.detection.model_detector import ModelDetector
        detector = ModelDetector(settings)
        detector._yolo_failed = True

        frame = np.zeros((480, 640, 3), dtype=np.uint8)
        result = asyncio.run(detector.detect_objects(frame))
        assert result.objects == []

    def test_face_error_assumes_one_face(self, settings, monkeypatch):
        from proctoring.detection.model_detector import ModelDetector
        detector = ModelDetector(settings)

        def broken():
            raise RuntimeError("mediapipe graph failed")

        monkeypatch.setattr(detector, "_get_face_detector", broken)
        result = asyncio.run(detector.detect_faces(np.zeros((480, 640, 3), dtype=np.uint8)))
        assert result.face_count == 1
        assert result.max_confidence == 1.0

    def test_gaze_error_is_inconclusive(self, settings, monkeypatch):
        from proctoring.detection.model_detector import ModelDetector
        detector = ModelDetector(settings)

        def broken():
            raise RuntimeError("face mesh unavailable")

        monkeypatch.setattr(detector, "_get_face_mesh", broken)
        gaze = asyncio.run(detector.track_gaze(np.zeros((480, 640, 3), dtype=np.uint8)))
        assert gaze.looking_at_screen is True
        assert gaze.confidence == 0.0

    def test_yolo_load_failure_is_remembered(self, settings, monkeypatch):
        from proctoring.detection import model_detector
        calls = []

        def failing_load(path):
            calls.append(path)
            return None

        monkeypatch.setattr(model_detector, "load_yolo", failing_load)
        detector = model_detector.ModelDetector(settings)
        frame = np.zeros((48, 64, 3), dtype=np.uint8)
        asyncio.run(detector.detect_objects(frame))
        asyncio.run(detector.detect_objects(frame))
        assert calls == [settings.yolo_model_path]


class TestAudio:
    def test_silence(self, settings):
        from proctoring.detection.model_detector import ModelDetector
        result = asyncio.run(ModelDetector(settings).analyze_audio(np.zeros(16000, dtype=np.float32), 16000))
        assert result.is_silent is True
        assert result.multiple_voices is False
        assert result.average_volume == 0.0

    def test_empty_input_is_default(self, settings):
        from proctoring.detection.detector import AudioAnalysis
        from proctoring.detection.model_detector import ModelDetector
        result = asyncio.run(ModelDetector(settings).analyze_audio(np.zeros(0, dtype=np.float32), 16000))
        assert result == AudioAnalysis()

    def test_levels_from_int16(self, settings, monkeypatch):
        from proctoring.detection import model_detector
        monkeypatch.setattr(model_detector, "speech_ratio", lambda mono, rate: 0.9)

        pcm = (_sine(amplitude=0.5) * 32767).astype(np.int16)
        result = asyncio.run(model_detector.ModelDetector(settings).analyze_audio(pcm, 16000))
        assert result.is_silent is False
        assert result.average_volume == pytest.approx(0.5 / math.sqrt(2), abs=0.01)
        assert result.peak_volume == pytest.approx(0.5, abs=0.01)
        assert result.multiple_voices is True
        assert result.confidence == 0.9

    def test_speech_ratio_on_silence(self):
        pytest.importorskip("webrtcvad")
        from proctoring.detection.model_detector import speech_ratio
        assert speech_ratio(np.zeros(16000, dtype=np.float32), 16000) < 0.2

    def test_speech_ratio_resamples_odd_rates(self):
        pytest.importorskip("webrtcvad")
        from proctoring.detection.model_detector import speech_ratio
        ratio = speech_ratio(np.zeros(44100, dtype=np.float32), 44100)
        assert 0.0 <= ratio <= 1.0


def test_status_reports_backends(settings):
    from proctoring.detection.model_detector import ModelDetector
    status = ModelDetector(settings).status()
    assert set(status) == {"mediapipe", "yolo", "webrtcvad"}
    assert status["yolo"] is False
