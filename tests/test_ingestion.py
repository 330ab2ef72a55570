"""
Tests for media chunk ingestion.
Run with: pytest tests/test_ingestion.py -v
"""
import asyncio

import pytest


@pytest.fixture
def ingestor(store, uploader, settings):
    from proctoring.ingestion.stream import StreamIngestor
    return StreamIngestor(store, uploader, settings)


class TestStreamIngestor:
    def test_snapshot_is_stored_and_logged(self, ingestor, store, uploader, settings, active_session):
        from proctoring.detection.types import EventType
        from proctoring.ingestion.stream import ChunkKind, StreamChunk
        session = active_session()

        result = asyncio.run(ingestor.process(
            StreamChunk(session.id, ChunkKind.SNAPSHOT, b"\xff\xd8jpeg", timestamp=1_767_600_000.0),
        ))
        assert result.accepted is True
        assert result.object_key == f"{session.id}/chunk-1.jpg"
        assert uploader.calls[0]["bucket"] == settings.bucket_snapshots
        assert uploader.calls[0]["content_type"] == "image/jpeg"

        events = store.list_events(session.id)
        assert [e.event_type for e in events] == [EventType.SNAPSHOT_CAPTURED]
        assert events[0].id == result.event_id
        assert events[0].snapshot_url == result.object_key
        assert events[0].flagged is False
        assert events[0].metadata["timestamp"] == 1_767_600_000.0
        assert store.get_session(session.id).last_activity_at is not None

    def test_video_chunk_makes_no_event(self, ingestor, store, uploader, settings, active_session):
        from proctoring.ingestion.stream import ChunkKind, StreamChunk
        session = active_session()
        result = asyncio.run(ingestor.process(StreamChunk(session.id, ChunkKind.VIDEO, b"webm-bytes")))
        assert result.accepted is True
        assert result.event_id is None
        assert uploader.calls[0]["bucket"] == settings.bucket_video
        assert store.list_events(session.id) == []

    def test_storage_outage_still_accepts(self, store, failing_uploader, settings, active_session):
        from proctoring.ingestion.stream import ChunkKind, StreamChunk, StreamIngestor
        session = active_session()
        ingestor = StreamIngestor(store, failing_uploader, settings)

        result = asyncio.run(ingestor.process(StreamChunk(session.id, ChunkKind.SNAPSHOT, b"jpeg")))
        assert result.accepted is True
        assert result.object_key is None
        assert result.reason == "storage_unavailable"
        assert store.list_events(session.id) == []

    def test_uploader_exception_is_contained(self, store, settings, active_session):
        from proctoring.ingestion.stream import ChunkKind, StreamChunk, StreamIngestor
        session = active_session()

        def broken(*args):
            raise ConnectionError("minio down")

        result = asyncio.run(StreamIngestor(store, broken, settings).process(
            StreamChunk(session.id, ChunkKind.AUDIO, b"pcm"),
        ))
        assert result.accepted is True
        assert result.reason == "storage_unavailable"

    def test_finished_session_refuses_chunks(self, ingestor, store, uploader, active_session):
        from proctoring.detection.types import SessionStatus
        from proctoring.ingestion.stream import ChunkKind, StreamChunk
        session = active_session()
        store.transition(session.id, SessionStatus.TERMINATED, (SessionStatus.ACTIVE,))

        result = asyncio.run(ingestor.process(StreamChunk(session.id, ChunkKind.SNAPSHOT, b"jpeg")))
        assert result.accepted is False
        assert result.reason == "session_closed"
        assert uploader.calls == []

    def test_recording_of_finished_session_is_archived(self, ingestor, store, uploader, settings, active_session):
        from proctoring.detection.types import SessionStatus
        from proctoring.ingestion.stream import ChunkKind, StreamChunk
        session = active_session()
        store.transition(session.id, SessionStatus.TERMINATED, (SessionStatus.ACTIVE,))
        ended = store.get_session(session.id)

        result = asyncio.run(ingestor.process(StreamChunk(session.id, ChunkKind.VIDEO, b"webm-bytes")))
        assert result.accepted is True
        assert result.object_key is not None
        assert uploader.calls[0]["bucket"] == settings.bucket_video
        assert store.list_events(session.id) == []
        assert store.get_session(session.id).last_activity_at == ended.last_activity_at

    @pytest.mark.parametrize("content_type, extension", [
        ("video/mp4", "mp4"),
        ("video/webm;codecs=vp8,opus", "webm"),
        ("audio/L16", "pcm"),
    ])
    def test_content_type_follows_the_recording(self, ingestor, uploader, active_session,
                                                content_type, extension):
        from proctoring.ingestion.stream import ChunkKind, StreamChunk
        session = active_session()
        result = asyncio.run(ingestor.process(
            StreamChunk(session.id, ChunkKind.VIDEO, b"media", content_type=content_type),
        ))
        assert uploader.calls[0]["content_type"] == content_type
        assert result.object_key.endswith(f".{extension}")

    def test_unknown_session_raises(self, ingestor):
        from proctoring.errors import SessionNotFoundError
        from proctoring.ingestion.stream import ChunkKind, StreamChunk
        with pytest.raises(SessionNotFoundError):
            asyncio.run(ingestor.process(StreamChunk("missing", ChunkKind.SNAPSHOT, b"jpeg")))
