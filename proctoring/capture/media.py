"""
MediaCaptureController — acquires and releases the webcam, microphone and
screen for one proctored exam, captures evidence snapshots and records the
active streams.

Devices are opened through injectable factories:

    video_factory(VideoOptions)            → cv2.VideoCapture-like handle
    audio_factory(AudioOptions, callback)  → sounddevice.InputStream-like handle
    screen_factory(ScreenOptions)          → handle with read() / release()
    writer_factory(path, fourcc, fps, size)→ cv2.VideoWriter-like handle

Nothing here raises past the public methods: device problems come back as a
CaptureErrorReason plus a remediation message the student can act on.
"""
from __future__ import annotations

import base64
import logging
import os
import tempfile
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import numpy as np

from proctoring.errors import CaptureError

logger = logging.getLogger(__name__)


class CaptureErrorReason(str, Enum):
    DENIED            = "denied"
    NOT_FOUND         = "not_found"
    IN_USE            = "in_use"
    OVERCONSTRAINED   = "overconstrained"
    UNKNOWN           = "unknown"
    NO_ACTIVE_STREAMS = "no_active_streams"
    ALREADY_RECORDING = "already_recording"
    UNSUPPORTED_CODEC = "unsupported_codec"


_REMEDIATION = {
    CaptureErrorReason.DENIED:            "Camera/microphone access was denied. Please allow permissions and try again.",
    CaptureErrorReason.NOT_FOUND:         "No camera or microphone found. Please connect a device and try again.",
    CaptureErrorReason.IN_USE:            "Camera/microphone is already in use by another application.",
    CaptureErrorReason.OVERCONSTRAINED:   "Camera/microphone doesn't meet the required specifications.",
    CaptureErrorReason.UNKNOWN:           "Failed to access camera/microphone. Please check your device settings.",
    CaptureErrorReason.NO_ACTIVE_STREAMS: "No active streams to record.",
    CaptureErrorReason.ALREADY_RECORDING: "Recording already in progress.",
    CaptureErrorReason.UNSUPPORTED_CODEC: "No supported recording format is available.",
}

_SCREEN_REMEDIATION = {
    CaptureErrorReason.DENIED: "Screen sharing was denied.",
}

# Substrings seen in OpenCV / PortAudio / mss error text
_REASON_HINTS = (
    (CaptureErrorReason.DENIED,          ("denied", "not authorized", "permission")),
    (CaptureErrorReason.IN_USE,          ("busy", "in use", "unavailable")),
    (CaptureErrorReason.OVERCONSTRAINED, ("invalid sample rate", "invalid number of channels",
                                          "resolution", "unsupported")),
    (CaptureErrorReason.NOT_FOUND,       ("no default", "not found", "no such", "querying device",
                                          "invalid device", "could not be opened")),
)

# Recording formats in preference order: mime type → (fourcc, file suffix)
_RECORDING_FORMATS = (
    ("video/webm;codecs=vp9,opus", "VP90", ".webm"),
    ("video/webm;codecs=vp8,opus", "VP80", ".webm"),
    ("video/webm",                 "VP80", ".webm"),
    ("video/mp4",                  "mp4v", ".mp4"),
)

_SNAPSHOT_FORMATS = {
    "image/jpeg": ".jpg",
    "image/png":  ".png",
    "image/webp": ".webp",
}


def remediation_message(reason: CaptureErrorReason, screen: bool = False) -> str:
    if screen:
        return _SCREEN_REMEDIATION.get(reason, "Failed to capture screen.")
    return _REMEDIATION[reason]


def classify_error(exc: BaseException) -> CaptureErrorReason:
    if isinstance(exc, CaptureError):
        try:
            return CaptureErrorReason(exc.reason)
        except ValueError:
            return CaptureErrorReason.UNKNOWN
    if isinstance(exc, PermissionError):
        return CaptureErrorReason.DENIED
    text = str(exc).lower()
    for reason, hints in _REASON_HINTS:
        if any(h in text for h in hints):
            return reason
    return CaptureErrorReason.UNKNOWN


# ── Options & results ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class VideoOptions:
    device:     int | str = 0
    width:      int  = 640
    height:     int  = 480
    frame_rate: int  = 30
    exact:      bool = False    # fail with overconstrained instead of accepting another size


@dataclass(frozen=True)
class AudioOptions:
    device:         int | str | None = None
    sample_rate:    int   = 16000
    channels:       int   = 1
    block_size:     int   = 1600            # 100 ms at 16 kHz
    buffer_seconds: float = 10.0


@dataclass(frozen=True)
class ScreenOptions:
    monitor:       int  = 1                 # mss: 0 = all monitors, 1 = primary
    frame_rate:    int  = 5
    include_audio: bool = False


@dataclass(frozen=True)
class CaptureConfig:
    video:  VideoOptions | None  = None
    audio:  AudioOptions | None  = None
    screen: ScreenOptions | None = None


@dataclass(frozen=True)
class SnapshotOptions:
    format:  str   = "image/jpeg"
    quality: float = 0.8
    width:   int | None = None
    height:  int | None = None


@dataclass(frozen=True)
class RecordingOptions:
    mime_type:  str | None = None
    frame_rate: int = 15


@dataclass(frozen=True)
class PermissionResult:
    success: bool
    reason:  CaptureErrorReason | None = None
    message: str | None = None


@dataclass(frozen=True)
class CaptureResult:
    stream:  Any = None
    reason:  CaptureErrorReason | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.stream is not None


@dataclass(frozen=True)
class RecordingResult:
    success:   bool
    mime_type: str | None = None
    reason:    CaptureErrorReason | None = None
    message:   str | None = None


@dataclass(frozen=True)
class RecordedMedia:
    data:        bytes
    mime_type:   str
    frame_count: int
    audio:       np.ndarray | None = None
    sample_rate: int | None = None


@dataclass(frozen=True)
class CaptureState:
    video_active:  bool
    audio_active:  bool
    screen_active: bool
    recording:     bool
    video_device:  int | str | None = None
    audio_device:  int | str | None = None


# ── Stream handles ────────────────────────────────────────────────────────────

class VideoStream:
    """A camera or screen source holding the most recent frame."""

    def __init__(self, kind: str, handle: Any, options: Any, on_ended: Callable[[], None] | None = None):
        self.kind      = kind
        self.handle    = handle
        self.options   = options
        self._on_ended = on_ended
        self._lock     = threading.Lock()
        self._latest:  np.ndarray | None = None
        self._listeners: list[Callable[["VideoStream", np.ndarray], None]] = []
        self._stop     = threading.Event()
        self._thread:  threading.Thread | None = None
        self.active    = True

    @property
    def latest(self) -> np.ndarray | None:
        with self._lock:
            return self._latest

    def read(self) -> np.ndarray | None:
        if not self.active:
            return None
        try:
            ok, frame = self.handle.read()
        except Exception as exc:
            logger.warning("%s read failed: %s", self.kind, exc)
            ok, frame = False, None

        if not ok or frame is None:
            if self.kind == "screen" and self._on_ended is not None:
                # the shared surface went away (user stopped sharing)
                logger.info("Screen share ended by the user")
                self._on_ended()
            return None

        with self._lock:
            self._latest = frame
            listeners = list(self._listeners)
        for listener in listeners:
            listener(self, frame)
        return frame

    def add_listener(self, listener: Callable[["VideoStream", np.ndarray], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[["VideoStream", np.ndarray], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def start_reader(self, frame_rate: int) -> None:
        interval = 1.0 / max(frame_rate, 1)

        def _loop() -> None:
            while not self._stop.wait(interval):
                self.read()

        self._thread = threading.Thread(target=_loop, name=f"{self.kind}-reader", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if not self.active:
            return
        self.active = False
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2)
        try:
            self.handle.release()
        except Exception as exc:
            logger.warning("%s release failed: %s", self.kind, exc)


class AudioStream:
    """Microphone input buffered into a bounded ring of sample blocks."""

    def __init__(self, options: AudioOptions) -> None:
        self.options = options
        self.handle: Any = None
        self._lock   = threading.Lock()
        max_blocks   = max(1, int(options.buffer_seconds * options.sample_rate / max(options.block_size, 1)))
        self._blocks: deque[np.ndarray] = deque(maxlen=max_blocks)
        self._listeners: list[Callable[[np.ndarray], None]] = []
        self.active  = False

    # sounddevice callback signature
    def on_audio(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.debug("Audio status: %s", status)
        block = np.array(indata, dtype=np.float32, copy=True)
        if block.ndim > 1:
            block = block.mean(axis=1)
        with self._lock:
            self._blocks.append(block)
            listeners = list(self._listeners)
        for listener in listeners:
            listener(block)

    def window(self) -> np.ndarray | None:
        with self._lock:
            if not self._blocks:
                return None
            return np.concatenate(list(self._blocks))

    def level(self) -> float:
        """RMS of the most recent block, clamped to 0–1."""
        with self._lock:
            block = self._blocks[-1] if self._blocks else None
        if block is None or block.size == 0:
            return 0.0
        return float(min(1.0, np.sqrt(np.mean(np.square(block)))))

    def add_listener(self, listener: Callable[[np.ndarray], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[np.ndarray], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def stop(self) -> None:
        if not self.active:
            return
        self.active = False
        for step in ("stop", "close"):
            try:
                getattr(self.handle, step)()
            except Exception as exc:
                logger.warning("Microphone %s failed: %s", step, exc)


class _Recorder:
    """Writes composed video frames and collects audio PCM until stopped."""

    def __init__(self, writer: Any, path: str | None, mime_type: str,
                 tracks: list[VideoStream], audio: AudioStream | None, size: tuple[int, int]):
        self.writer      = writer
        self.path        = path
        self.mime_type   = mime_type
        self.tracks      = tracks
        self.audio       = audio
        self.size        = size
        self.paused      = False
        self.frame_count = 0
        self._pcm: list[np.ndarray] = []
        self._lock       = threading.Lock()

    def attach(self) -> None:
        if self.tracks:
            self.tracks[0].add_listener(self.on_frame)
        if self.audio is not None:
            self.audio.add_listener(self.on_audio)

    def detach(self) -> None:
        if self.tracks:
            self.tracks[0].remove_listener(self.on_frame)
        if self.audio is not None:
            self.audio.remove_listener(self.on_audio)

    def on_frame(self, _stream: VideoStream, frame: np.ndarray) -> None:
        if self.paused or self.writer is None:
            return
        import cv2

        width, height = self.size
        tile_w = width // len(self.tracks)
        tiles = []
        for track in self.tracks:
            source = frame if track is self.tracks[0] else track.latest
            if source is None:
                source = np.zeros((height, tile_w, 3), dtype=np.uint8)
            tiles.append(cv2.resize(source[:, :, :3], (tile_w, height)))
        with self._lock:
            self.writer.write(np.hstack(tiles))
            self.frame_count += 1

    def on_audio(self, block: np.ndarray) -> None:
        if not self.paused:
            with self._lock:
                self._pcm.append(block)

    def finish(self) -> RecordedMedia:
        self.detach()
        with self._lock:
            pcm = np.concatenate(self._pcm) if self._pcm else None
            if self.writer is not None:
                self.writer.release()
        data = b""
        if self.path is not None:
            try:
                with open(self.path, "rb") as fh:
                    data = fh.read()
            except OSError as exc:
                logger.warning("Could not read recording %s: %s", self.path, exc)
            finally:
                _remove_quietly(self.path)
        elif pcm is not None:
            data = (np.clip(pcm, -1.0, 1.0) * 32767).astype("<i2").tobytes()

        return RecordedMedia(
            data        = data,
            mime_type   = self.mime_type,
            frame_count = self.frame_count,
            audio       = pcm,
            sample_rate = self.audio.options.sample_rate if self.audio is not None else None,
        )


# ── Default device factories ──────────────────────────────────────────────────

def open_camera(options: VideoOptions) -> Any:
    import cv2

    cap = cv2.VideoCapture(options.device)
    if not cap.isOpened():
        cap.release()
        raise CaptureError(CaptureErrorReason.NOT_FOUND.value, f"camera {options.device} could not be opened")
    cap.set(cv2.CAP_PROP_FRAME_WIDTH,  options.width)
    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, options.height)
    cap.set(cv2.CAP_PROP_FPS,          options.frame_rate)
    if options.exact:
        actual = (int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)), int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)))
        if actual != (options.width, options.height):
            cap.release()
            raise CaptureError(CaptureErrorReason.OVERCONSTRAINED.value,
                               f"camera resolution {actual} does not match request")
    return cap


def open_microphone(options: AudioOptions, callback: Callable) -> Any:
    import sounddevice as sd

    return sd.InputStream(
        device     = options.device,
        samplerate = options.sample_rate,
        channels   = options.channels,
        blocksize  = options.block_size,
        dtype      = "float32",
        callback   = callback,
    )


class ScreenGrabber:
    """mss grabber exposing the read()/release() shape of a VideoCapture."""

    def __init__(self, options: ScreenOptions) -> None:
        import mss

        self._sct = mss.mss()
        try:
            self._monitor = self._sct.monitors[options.monitor]
        except IndexError:
            self._sct.close()
            raise CaptureError(CaptureErrorReason.NOT_FOUND.value, f"monitor {options.monitor} not found")

    def read(self) -> tuple[bool, np.ndarray | None]:
        shot = np.array(self._sct.grab(self._monitor))
        return True, np.ascontiguousarray(shot[:, :, :3])       # BGRA → BGR

    def release(self) -> None:
        self._sct.close()


def open_video_writer(path: str, fourcc: str, fps: int, size: tuple[int, int]) -> Any:
    import cv2

    return cv2.VideoWriter(path, cv2.VideoWriter_fourcc(*fourcc), fps, size)


# ── Controller ────────────────────────────────────────────────────────────────

class MediaCaptureController:
    def __init__(
        self,
        video_factory:  Callable[[VideoOptions], Any] = open_camera,
        audio_factory:  Callable[[AudioOptions, Callable], Any] = open_microphone,
        screen_factory: Callable[[ScreenOptions], Any] = ScreenGrabber,
        writer_factory: Callable[[str, str, int, tuple[int, int]], Any] = open_video_writer,
        background_readers: bool = True,
    ) -> None:
        self._video_factory  = video_factory
        self._audio_factory  = audio_factory
        self._screen_factory = screen_factory
        self._writer_factory = writer_factory
        self._background     = background_readers

        self.video:  VideoStream | None = None
        self.audio:  AudioStream | None = None
        self.screen: VideoStream | None = None
        self._recorder: _Recorder | None = None
        self._monitors: list[Callable[[], None]] = []

    # ── Permissions ───────────────────────────────────────────────────────────

    def request_permissions(self, config: CaptureConfig) -> PermissionResult:
        """Probe the requested devices and release them straight away."""
        try:
            if config.video is not None:
                self._probe_camera(config.video)
            if config.audio is not None:
                self._probe_microphone(config.audio)
        except Exception as exc:
            reason = classify_error(exc)
            logger.warning("Permission request failed (%s): %s", reason.value, exc)
            return PermissionResult(success=False, reason=reason, message=remediation_message(reason))
        return PermissionResult(success=True)

    def test_devices(self) -> dict[str, dict[str, Any]]:
        result: dict[str, dict[str, Any]] = {}
        for name, probe, options in (
            ("camera",     self._probe_camera,     VideoOptions()),
            ("microphone", self._probe_microphone, AudioOptions()),
        ):
            try:
                probe(options)
                result[name] = {"working": True, "error": None}
            except Exception as exc:
                result[name] = {"working": False, "error": remediation_message(classify_error(exc))}
        return result

    def _probe_camera(self, options: VideoOptions) -> None:
        handle = self._video_factory(options)
        try:
            ok, _ = handle.read()
            if not ok:
                raise CaptureError(CaptureErrorReason.IN_USE.value, "camera opened but returned no frame")
        finally:
            handle.release()

    def _probe_microphone(self, options: AudioOptions) -> None:
        handle = self._audio_factory(options, lambda *args: None)
        try:
            handle.start()
            handle.stop()
        finally:
            handle.close()

    # ── Start / stop ──────────────────────────────────────────────────────────

    def start_video_capture(self, options: VideoOptions | None = None) -> CaptureResult:
        options = options or VideoOptions()
        self.stop_video_capture()
        try:
            handle = self._video_factory(options)
        except Exception as exc:
            return self._failure("video", exc)

        self.video = VideoStream("video", handle, options)
        if self._background:
            self.video.start_reader(options.frame_rate)
        logger.info("Video capture started on device %s", options.device)
        return CaptureResult(stream=self.video)

    def start_audio_capture(self, options: AudioOptions | None = None) -> CaptureResult:
        options = options or AudioOptions()
        self.stop_audio_capture()
        stream = AudioStream(options)
        try:
            stream.handle = self._audio_factory(options, stream.on_audio)
            stream.handle.start()
        except Exception as exc:
            if stream.handle is not None:
                try:
                    stream.handle.close()
                except Exception as close_exc:
                    logger.debug("Microphone close after failed start: %s", close_exc)
            return self._failure("audio", exc)

        stream.active = True
        self.audio = stream
        logger.info("Audio capture started at %d Hz", options.sample_rate)
        return CaptureResult(stream=stream)

    def start_screen_capture(self, options: ScreenOptions | None = None) -> CaptureResult:
        options = options or ScreenOptions()
        self.stop_screen_capture()
        try:
            handle = self._screen_factory(options)
        except Exception as exc:
            return self._failure("screen", exc, screen=True)

        self.screen = VideoStream("screen", handle, options, on_ended=self.stop_screen_capture)
        if self._background:
            self.screen.start_reader(options.frame_rate)
        logger.info("Screen capture started on monitor %s", options.monitor)
        return CaptureResult(stream=self.screen)

    def stop_video_capture(self) -> None:
        if self.video is not None:
            self.video.stop()
            self.video = None

    def stop_audio_capture(self) -> None:
        if self.audio is not None:
            self.audio.stop()
            self.audio = None

    def stop_screen_capture(self) -> None:
        if self.screen is not None:
            self.screen.stop()
            self.screen = None

    def stop_all_captures(self) -> None:
        for cancel in list(self._monitors):
            cancel()
        if self._recorder is not None:
            self.stop_recording()
        self.stop_video_capture()
        self.stop_audio_capture()
        self.stop_screen_capture()

    def _failure(self, kind: str, exc: BaseException, screen: bool = False) -> CaptureResult:
        reason = classify_error(exc)
        logger.warning("Could not start %s capture (%s): %s", kind, reason.value, exc)
        return CaptureResult(reason=reason, message=remediation_message(reason, screen=screen))

    # ── FrameSource ───────────────────────────────────────────────────────────

    def latest_video_frame(self) -> np.ndarray | None:
        if self.video is None:
            return None
        if self._background:
            return self.video.latest
        return self.video.read()

    def latest_audio_samples(self) -> tuple[np.ndarray, int] | None:
        if self.audio is None:
            return None
        window = self.audio.window()
        if window is None:
            return None
        return window, self.audio.options.sample_rate

    # ── Snapshots ─────────────────────────────────────────────────────────────

    def capture_snapshot(self, frame: np.ndarray | None = None,
                         options: SnapshotOptions | None = None) -> str | None:
        """Encode a frame as a data URL; None on failure."""
        options = options or SnapshotOptions()
        blob = self.capture_snapshot_blob(frame, options)
        if blob is None:
            return None
        return f"data:{options.format};base64,{base64.b64encode(blob).decode('ascii')}"

    def capture_snapshot_blob(self, frame: np.ndarray | None = None,
                              options: SnapshotOptions | None = None) -> bytes | None:
        options = options or SnapshotOptions()
        if frame is None:
            frame = self.latest_video_frame()
        if frame is None:
            return None
        try:
            import cv2

            ext = _SNAPSHOT_FORMATS.get(options.format)
            if ext is None:
                logger.warning("Unsupported snapshot format %s", options.format)
                return None

            height, width = frame.shape[:2]
            target_w = options.width or (
                int(width * options.height / height) if options.height else width
            )
            target_h = options.height or (
                int(height * options.width / width) if options.width else height
            )
            if (target_w, target_h) != (width, height):
                frame = cv2.resize(frame, (target_w, target_h))

            quality = int(round(min(max(options.quality, 0.0), 1.0) * 100))
            params: list[int] = []
            if ext == ".jpg":
                params = [cv2.IMWRITE_JPEG_QUALITY, quality]
            elif ext == ".webp":
                params = [cv2.IMWRITE_WEBP_QUALITY, max(quality, 1)]

            ok, buf = cv2.imencode(ext, frame, params)
            if not ok:
                return None
            return buf.tobytes()
        except Exception as exc:
            logger.warning("Error capturing snapshot: %s", exc)
            return None

    # ── Recording ─────────────────────────────────────────────────────────────

    @property
    def is_recording(self) -> bool:
        return self._recorder is not None

    def start_recording(self, options: RecordingOptions | None = None) -> RecordingResult:
        options = options or RecordingOptions()
        if self._recorder is not None:
            return _recording_failure(CaptureErrorReason.ALREADY_RECORDING)

        tracks = [s for s in (self.video, self.screen) if s is not None and s.active]
        audio  = self.audio if self.audio is not None and self.audio.active else None
        if not tracks and audio is None:
            return _recording_failure(CaptureErrorReason.NO_ACTIVE_STREAMS)

        if not tracks:
            recorder = _Recorder(None, None, "audio/L16", [], audio, (0, 0))
        else:
            width, height = _track_size(tracks[0])
            size = (width * len(tracks), height)
            opened = self._open_writer(options, size)
            if opened is None:
                return _recording_failure(CaptureErrorReason.UNSUPPORTED_CODEC)
            writer, path, mime_type = opened
            recorder = _Recorder(writer, path, mime_type, tracks, audio, size)

        recorder.attach()
        self._recorder = recorder
        logger.info("Recording started (%s)", recorder.mime_type)
        return RecordingResult(success=True, mime_type=recorder.mime_type)

    def _open_writer(self, options: RecordingOptions, size: tuple[int, int]):
        formats = list(_RECORDING_FORMATS)
        if options.mime_type:
            preferred = [f for f in formats if f[0] == options.mime_type]
            formats = preferred + [f for f in formats if f[0] != options.mime_type]

        for mime_type, fourcc, suffix in formats:
            fd, path = tempfile.mkstemp(prefix="proctoring-", suffix=suffix)
            os.close(fd)
            try:
                writer = self._writer_factory(path, fourcc, options.frame_rate, size)
                if writer is not None and writer.isOpened():
                    return writer, path, mime_type
                if writer is not None:
                    writer.release()
            except Exception as exc:
                logger.debug("Recording format %s unavailable: %s", mime_type, exc)
            _remove_quietly(path)
        return None

    def stop_recording(self) -> RecordedMedia | None:
        recorder, self._recorder = self._recorder, None
        if recorder is None:
            return None
        media = recorder.finish()
        logger.info("Recording stopped: %d frames, %d bytes", media.frame_count, len(media.data))
        return media

    def pause_recording(self) -> bool:
        if self._recorder is None or self._recorder.paused:
            return False
        self._recorder.paused = True
        return True

    def resume_recording(self) -> bool:
        if self._recorder is None or not self._recorder.paused:
            return False
        self._recorder.paused = False
        return True

    # ── Audio level monitoring ────────────────────────────────────────────────

    def start_audio_level_monitoring(self, callback: Callable[[float], None],
                                     interval: float = 0.1) -> Callable[[], None]:
        """Call ``callback(level)`` every ``interval`` seconds; returns a cancel function."""
        if self.audio is None:
            logger.warning("No audio stream available for monitoring")
            return lambda: None

        stream = self.audio
        stopped = threading.Event()

        def _loop() -> None:
            while not stopped.wait(interval):
                if not stream.active:
                    break
                try:
                    callback(stream.level())
                except Exception as exc:
                    logger.warning("Audio level callback failed: %s", exc)

        thread = threading.Thread(target=_loop, name="audio-level-monitor", daemon=True)

        def cancel() -> None:
            stopped.set()
            if cancel in self._monitors:
                self._monitors.remove(cancel)
            if thread is not threading.current_thread():
                thread.join(timeout=2)

        self._monitors.append(cancel)
        thread.start()
        return cancel

    # ── State ─────────────────────────────────────────────────────────────────

    def capture_state(self) -> CaptureState:
        return CaptureState(
            video_active  = self.video is not None and self.video.active,
            audio_active  = self.audio is not None and self.audio.active,
            screen_active = self.screen is not None and self.screen.active,
            recording     = self._recorder is not None,
            video_device  = self.video.options.device if self.video is not None else None,
            audio_device  = self.audio.options.device if self.audio is not None else None,
        )

    def device_info(self) -> dict[str, Any]:
        state = self.capture_state()
        return {
            "videoActive":  state.video_active,
            "audioActive":  state.audio_active,
            "screenActive": state.screen_active,
            "recording":    state.recording,
            "videoDevice":  state.video_device,
            "audioDevice":  state.audio_device,
        }


def _track_size(track: VideoStream) -> tuple[int, int]:
    latest = track.latest
    if latest is not None:
        return latest.shape[1], latest.shape[0]
    options = track.options
    return getattr(options, "width", 1280), getattr(options, "height", 720)


def _recording_failure(reason: CaptureErrorReason) -> RecordingResult:
    return RecordingResult(success=False, reason=reason, message=remediation_message(reason))


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        pass
