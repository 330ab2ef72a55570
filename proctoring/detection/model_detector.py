"""
ModelDetector — the production Detector, backed by local models.

    faces   → MediaPipe BlazeFace (short range)
    gaze    → MediaPipe Face Mesh + OpenCV solvePnP head pose
    objects → YOLOv8 (COCO labels, e.g. "cell phone", "book")
    audio   → RMS levels + webrtcvad speech ratio

All model libraries are imported lazily so the engine can run against a
fake detector without them installed. Inference runs in a worker thread;
any failure returns the module's safe default (nothing detected).
"""
from __future__ import annotations

import asyncio
import logging
import math
import os
from pathlib import Path
from typing import Any

import numpy as np

from proctoring.config import Settings, get_settings
from proctoring.detection.detector import (
    AudioAnalysis,
    DetectedFace,
    DetectedObject,
    FaceDetection,
    GazeEstimate,
    ObjectDetection,
)

logger = logging.getLogger(__name__)

# 3-D face model reference points (canonical, in mm, centred on nose tip)
# Indices correspond to MediaPipe Face Mesh landmark indices
_3D_MODEL_POINTS = np.array([
    (0.0,   0.0,    0.0),    # Nose tip          (1)
    (0.0,  -63.6, -12.5),    # Chin              (152)
    (-43.3, 32.7, -26.0),    # Left eye corner   (226)
    (43.3,  32.7, -26.0),    # Right eye corner  (446)
    (-28.9,-28.9, -24.1),    # Left mouth corner (57)
    (28.9, -28.9, -24.1),    # Right mouth corner(287)
], dtype=np.float64)

_LANDMARK_IDS = [1, 152, 226, 446, 57, 287]

_MESH_CONFIDENCE = 0.85

# webrtcvad only accepts these rates and 10/20/30 ms frames
_VAD_RATES     = (8000, 16000, 32000, 48000)
_VAD_RATE      = 16000
_FRAME_MS      = 30


class ModelDetector:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._face_detector = None
        self._face_mesh     = None
        self._yolo          = None
        self._yolo_failed   = False

    # ── Detector protocol ─────────────────────────────────────────────────────

    async def detect_faces(self, frame: np.ndarray) -> FaceDetection:
        return await asyncio.to_thread(self._detect_faces, frame)

    async def detect_objects(self, frame: np.ndarray) -> ObjectDetection:
        return await asyncio.to_thread(self._detect_objects, frame)

    async def track_gaze(self, frame: np.ndarray) -> GazeEstimate:
        return await asyncio.to_thread(self._track_gaze, frame)

    async def analyze_audio(self, samples: np.ndarray, sample_rate: int) -> AudioAnalysis:
        return await asyncio.to_thread(self._analyze_audio, samples, sample_rate)

    def status(self) -> dict[str, bool]:
        """Which backends are importable / loaded (used by the health check)."""
        return {
            "mediapipe": _importable("mediapipe"),
            "yolo":      self._yolo is not None,
            "webrtcvad": _importable("webrtcvad"),
        }

    # ── Faces ─────────────────────────────────────────────────────────────────

    def _get_face_detector(self):
        if self._face_detector is None:
            import mediapipe as mp
            self._face_detector = mp.solutions.face_detection.FaceDetection(
                model_selection=0,                              # short-range (<2m)
                min_detection_confidence=0.5,                   # engine applies its own floor
            )
        return self._face_detector

    def _detect_faces(self, frame_bgr: np.ndarray) -> FaceDetection:
        try:
            detector = self._get_face_detector()
            # MediaPipe expects RGB
            results = detector.process(np.ascontiguousarray(frame_bgr[:, :, ::-1]))
        except Exception as exc:
            logger.warning("Face detection error: %s", exc)
            return _assume_one_face()

        if not results.detections:
            return FaceDetection()

        h, w = frame_bgr.shape[:2]
        faces = []
        for d in results.detections:
            score = float(d.score[0]) if d.score else 0.0
            box = d.location_data.relative_bounding_box
            faces.append(DetectedFace(
                confidence = round(score, 3),
                bbox       = (box.xmin * w, box.ymin * h, box.width * w, box.height * h),
            ))
        return FaceDetection(faces=faces)

    # ── Gaze ──────────────────────────────────────────────────────────────────

    def _get_face_mesh(self):
        if self._face_mesh is None:
            import mediapipe as mp
            self._face_mesh = mp.solutions.face_mesh.FaceMesh(
                static_image_mode=False,
                max_num_faces=1,
                refine_landmarks=True,
                min_detection_confidence=0.5,
                min_tracking_confidence=0.5,
            )
        return self._face_mesh

    def _track_gaze(self, frame_bgr: np.ndarray) -> GazeEstimate:
        try:
            import cv2

            h, w = frame_bgr.shape[:2]
            results = self._get_face_mesh().process(np.ascontiguousarray(frame_bgr[:, :, ::-1]))
            if not results.multi_face_landmarks:
                return _inconclusive_gaze()

            landmarks = results.multi_face_landmarks[0].landmark
            img_pts = np.array([
                (landmarks[i].x * w, landmarks[i].y * h)
                for i in _LANDMARK_IDS
            ], dtype=np.float64)

            camera_matrix = np.array([
                [w, 0, w / 2],
                [0, w, h / 2],
                [0, 0, 1    ],
            ], dtype=np.float64)

            success, rvec, _ = cv2.solvePnP(
                _3D_MODEL_POINTS, img_pts, camera_matrix, np.zeros((4, 1)),
                flags=cv2.SOLVEPNP_ITERATIVE,
            )
            if not success:
                return _inconclusive_gaze()

            rmat, _ = cv2.Rodrigues(rvec)
            sy = math.sqrt(rmat[0, 0] ** 2 + rmat[1, 0] ** 2)
            pitch = math.degrees(math.atan2(-rmat[2, 0], sy))
            yaw   = math.degrees(math.atan2(rmat[1, 0], rmat[0, 0]))

            off_screen = (
                abs(yaw)   > self.settings.gaze_yaw_threshold
                or abs(pitch) > self.settings.gaze_pitch_threshold
            )
            return GazeEstimate(
                looking_at_screen = not off_screen,
                direction         = (round(yaw / 90.0, 3), round(pitch / 90.0, 3)),
                confidence        = _MESH_CONFIDENCE,
            )
        except Exception as exc:
            logger.warning("Gaze tracking error: %s", exc)
            return _inconclusive_gaze()

    # ── Objects ───────────────────────────────────────────────────────────────

    def _get_yolo(self):
        if self._yolo is None and not self._yolo_failed:
            self._yolo = load_yolo(self.settings.yolo_model_path)
            self._yolo_failed = self._yolo is None
        return self._yolo

    def _detect_objects(self, frame_bgr: np.ndarray) -> ObjectDetection:
        model = self._get_yolo()
        if model is None:
            return ObjectDetection()

        try:
            results = model.predict(
                source=frame_bgr,
                conf=0.30,              # low threshold; the engine applies min_confidence
                verbose=False,
                stream=False,
            )
            if not results:
                return ObjectDetection()

            names = results[0].names
            boxes = results[0].boxes
            objects = []
            if boxes is not None and len(boxes):
                for box in boxes:
                    cls = int(box.cls[0].item())
                    x1, y1, x2, y2 = box.xyxy[0].tolist()
                    objects.append(DetectedObject(
                        label      = str(names.get(cls, cls)),
                        confidence = round(float(box.conf[0].item()), 3),
                        bbox       = (x1, y1, x2 - x1, y2 - y1),
                    ))
            return ObjectDetection(objects=objects)
        except Exception as exc:
            logger.warning("Object detection error: %s", exc)
            return ObjectDetection()

    # ── Audio ─────────────────────────────────────────────────────────────────

    def _analyze_audio(self, samples: np.ndarray, sample_rate: int) -> AudioAnalysis:
        try:
            mono = _to_float_mono(samples)
            if mono.size == 0:
                return AudioAnalysis()

            average = float(np.sqrt(np.mean(mono ** 2)))
            peak    = float(np.max(np.abs(mono)))
            silent  = average < self.settings.silence_threshold

            ratio = 0.0 if silent else speech_ratio(mono, sample_rate)
            return AudioAnalysis(
                average_volume  = round(min(average, 1.0), 3),
                peak_volume     = round(min(peak, 1.0), 3),
                is_silent       = silent,
                multiple_voices = ratio > self.settings.speech_ratio_threshold,
                confidence      = round(ratio, 3),
            )
        except Exception as exc:
            logger.warning("Audio analysis error: %s", exc)
            return AudioAnalysis()


# ── Helpers ───────────────────────────────────────────────────────────────────

def load_yolo(path: str):
    """
    Load YOLOv8 weights, downloading the nano model on first run.
    Returns None when ultralytics is unavailable (object detection disabled).
    """
    try:
        from ultralytics import YOLO
        if Path(path).exists():
            model = YOLO(path)
            logger.info("YOLOv8 model loaded from %s", path)
            return model

        logger.info("YOLOv8 weights not found at %s, downloading yolov8n", path)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        model = YOLO("yolov8n.pt")
        model.save(path)
        logger.info("YOLOv8 downloaded and cached at %s", path)
        return model
    except Exception as exc:
        logger.warning("YOLOv8 load failed (object detection disabled): %s", exc)
        return None


def speech_ratio(mono: np.ndarray, sample_rate: int) -> float:
    """Fraction of 30 ms frames webrtcvad classifies as speech."""
    import webrtcvad

    if sample_rate not in _VAD_RATES:
        mono = _resample(mono, sample_rate, _VAD_RATE)
        sample_rate = _VAD_RATE

    pcm = (np.clip(mono, -1.0, 1.0) * 32767).astype("<i2").tobytes()
    frame_bytes = int(sample_rate * _FRAME_MS / 1000) * 2    # 16-bit PCM = 2 bytes/sample

    vad = webrtcvad.Vad(3)    # most aggressive (fewer false positives)
    speech = total = 0
    for start in range(0, len(pcm) - frame_bytes + 1, frame_bytes):
        total  += 1
        speech += int(vad.is_speech(pcm[start:start + frame_bytes], sample_rate))

    return speech / total if total else 0.0


def _to_float_mono(samples: np.ndarray) -> np.ndarray:
    data = np.asarray(samples)
    if data.ndim > 1:
        data = data.mean(axis=1)
    if np.issubdtype(data.dtype, np.integer):
        return data.astype(np.float32) / 32768.0
    return data.astype(np.float32)


def _resample(mono: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    if mono.size == 0 or src_rate <= 0:
        return mono
    n = int(round(mono.size * dst_rate / src_rate))
    positions = np.linspace(0, mono.size - 1, num=n)
    return np.interp(positions, np.arange(mono.size), mono).astype(np.float32)


def _importable(module: str) -> bool:
    try:
        __import__(module)
        return True
    except ImportError:
        return False


def _assume_one_face() -> FaceDetection:
    # assume present to avoid false positives
    return FaceDetection(faces=[DetectedFace(confidence=1.0)])


def _inconclusive_gaze() -> GazeEstimate:
    return GazeEstimate(looking_at_screen=True, confidence=0.0)
