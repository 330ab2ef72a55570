"""
StreamIngestor: accepts the periodic media chunks a proctored client sends.

A chunk is handed to object storage (best effort) and the session's
last_activity_at is bumped. Snapshots that were stored also become a
``snapshot_captured`` event pointing at the stored object, so reviewers can
line them up on the session timeline.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from proctoring.config import Settings, get_settings
from proctoring.detection.types import EventType, Severity
from proctoring.errors import SessionNotFoundError
from proctoring.storage import minio_client
from proctoring.store.proctoring_store import ProctoringStore
from proctoring.timeline import from_epoch, utcnow

logger = logging.getLogger(__name__)

Uploader = Callable[..., "str | None"]


class ChunkKind(str, Enum):
    SNAPSHOT = "snapshot"
    VIDEO    = "video"
    AUDIO    = "audio"


# kind → (content type, file extension)
_CONTENT = {
    ChunkKind.SNAPSHOT: ("image/jpeg", "jpg"),
    ChunkKind.VIDEO:    ("video/webm", "webm"),
    ChunkKind.AUDIO:    ("audio/webm", "webm"),
}

# base mime type (codecs parameter stripped) → file extension
_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png":  "png",
    "image/webp": "webp",
    "video/webm": "webm",
    "video/mp4":  "mp4",
    "audio/webm": "webm",
    "audio/L16":  "pcm",
}

# Media that is still worth keeping once the session has ended
_ARCHIVAL = (ChunkKind.VIDEO, ChunkKind.AUDIO)


@dataclass(frozen=True)
class StreamChunk:
    session_id:   str
    kind:         ChunkKind
    data:         bytes
    timestamp:    float | None = None    # epoch seconds, client clock
    content_type: str | None = None      # overrides the per-kind default

    def media_type(self) -> tuple[str, str]:
        """(content type, file extension) the chunk is stored under."""
        default_type, default_ext = _CONTENT[self.kind]
        if not self.content_type:
            return default_type, default_ext
        base = self.content_type.split(";", 1)[0].strip()
        return self.content_type, _EXTENSIONS.get(base, default_ext)


@dataclass(frozen=True)
class IngestResult:
    session_id: str
    kind:       ChunkKind
    accepted:   bool
    object_key: str | None = None
    event_id:   str | None = None
    reason:     str | None = None


class StreamIngestor:
    def __init__(
        self,
        store:    ProctoringStore,
        uploader: Uploader | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.store    = store
        self.uploader = uploader or minio_client.upload_bytes
        self.settings = settings or get_settings()

    def _bucket(self, kind: ChunkKind) -> str:
        return {
            ChunkKind.SNAPSHOT: self.settings.bucket_snapshots,
            ChunkKind.VIDEO:    self.settings.bucket_video,
            ChunkKind.AUDIO:    self.settings.bucket_audio,
        }[kind]

    async def process(self, chunk: StreamChunk) -> IngestResult:
        """
        Raises SessionNotFoundError for unknown sessions. Snapshots for
        finished sessions are refused with ``accepted=False``; video and audio
        for them are still stored, with no event and no activity update.
        """
        session = await asyncio.to_thread(self.store.get_session, chunk.session_id)
        if session is None:
            raise SessionNotFoundError(chunk.session_id)
        if session.status.is_terminal:
            if chunk.kind not in _ARCHIVAL:
                logger.info("Dropping %s chunk for %s session %s",
                            chunk.kind.value, session.status.value, chunk.session_id)
                return IngestResult(chunk.session_id, chunk.kind, accepted=False, reason="session_closed")
            key = await self._store_chunk(chunk)
            logger.info("Archived %s chunk for %s session %s: %s",
                        chunk.kind.value, session.status.value, chunk.session_id, key)
            return IngestResult(
                session_id = chunk.session_id,
                kind       = chunk.kind,
                accepted   = True,
                object_key = key,
                reason     = None if key is not None else "storage_unavailable",
            )

        key = await self._store_chunk(chunk)

        event_id = None
        if chunk.kind is ChunkKind.SNAPSHOT and key is not None:
            detected_at = from_epoch(chunk.timestamp) if chunk.timestamp is not None else utcnow()
            event = await asyncio.to_thread(
                self.store.record_event,
                chunk.session_id,
                EventType.SNAPSHOT_CAPTURED,
                Severity.INFO,
                "Periodic snapshot captured",
                {"timestamp": chunk.timestamp, "bucket": self._bucket(chunk.kind)},
                key,
                detected_at,
            )
            event_id = event.id if event is not None else None

        await asyncio.to_thread(self.store.touch_activity, chunk.session_id)
        return IngestResult(
            session_id = chunk.session_id,
            kind       = chunk.kind,
            accepted   = True,
            object_key = key,
            event_id   = event_id,
            reason     = None if key is not None else "storage_unavailable",
        )

    async def _store_chunk(self, chunk: StreamChunk) -> str | None:
        if not chunk.data:
            return None
        content_type, extension = chunk.media_type()
        try:
            return await asyncio.to_thread(
                self.uploader,
                self._bucket(chunk.kind),
                chunk.data,
                content_type,
                chunk.session_id,
                extension,
            )
        except Exception as exc:
            logger.warning("Upload of %s chunk for session %s failed: %s",
                           chunk.kind.value, chunk.session_id, exc)
            return None
