"""
Detector — the capability interface the DetectionEngine calls once per tick.

Implementations wrap whatever produces the raw signal (a local model, a
remote inference API, a deterministic fake in tests). They only report what
is in the frame; escalation, severity and alerting stay in the engine.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import numpy as np


BoundingBox = tuple[float, float, float, float]    # x, y, width, height


@dataclass(frozen=True)
class DetectedFace:
    confidence: float
    bbox:       BoundingBox | None = None


@dataclass(frozen=True)
class FaceDetection:
    faces: list[DetectedFace] = field(default_factory=list)

    @property
    def face_count(self) -> int:
        return len(self.faces)

    @property
    def max_confidence(self) -> float:
        return max((f.confidence for f in self.faces), default=0.0)


@dataclass(frozen=True)
class DetectedObject:
    label:      str
    confidence: float
    bbox:       BoundingBox | None = None


@dataclass(frozen=True)
class ObjectDetection:
    objects: list[DetectedObject] = field(default_factory=list)


@dataclass(frozen=True)
class GazeEstimate:
    looking_at_screen: bool
    direction:         tuple[float, float] = (0.0, 0.0)
    confidence:        float = 0.0


@dataclass(frozen=True)
class AudioAnalysis:
    average_volume:  float = 0.0     # 0.0 – 1.0
    peak_volume:     float = 0.0
    is_silent:       bool  = True
    multiple_voices: bool  = False
    confidence:      float = 0.0


@runtime_checkable
class Detector(Protocol):
    async def detect_faces(self, frame: np.ndarray) -> FaceDetection: ...

    async def detect_objects(self, frame: np.ndarray) -> ObjectDetection: ...

    async def track_gaze(self, frame: np.ndarray) -> GazeEstimate: ...

    async def analyze_audio(self, samples: np.ndarray, sample_rate: int) -> AudioAnalysis: ...


@runtime_checkable
class FrameSource(Protocol):
    """Where the engine reads the current video frame / audio window from."""

    def latest_video_frame(self) -> np.ndarray | None: ...

    def latest_audio_samples(self) -> tuple[np.ndarray, int] | None: ...


def bbox_to_dict(bbox: BoundingBox | None) -> dict[str, Any] | None:
    if bbox is None:
        return None
    x, y, w, h = bbox
    return {"x": round(x, 1), "y": round(y, 1), "width": round(w, 1), "height": round(h, 1)}
