"""
Tests for the MinIO wrapper with a fake client.
Run with: pytest tests/test_storage.py -v
"""
import pytest


class FakeMinio:
    def __init__(self, buckets=(), fail=None):
        self.buckets = set(buckets)
        self.fail    = fail
        self.objects = {}

    def bucket_exists(self, bucket):
        return bucket in self.buckets

    def make_bucket(self, bucket):
        self.buckets.add(bucket)

    def put_object(self, bucket_name, object_name, data, length, content_type):
        if self.fail is not None:
            raise self.fail
        self.objects[(bucket_name, object_name)] = (data.read(), content_type)

    def list_buckets(self):
        if self.fail is not None:
            raise self.fail
        return [type("Bucket", (), {"name": b}) for b in self.buckets]


@pytest.fixture
def fake_minio(monkeypatch):
    from proctoring.storage import minio_client

    def install(client):
        monkeypatch.setattr(minio_client, "_client", client)
        monkeypatch.setattr(minio_client, "_known_buckets", set())
        return client

    return install


class TestUpload:
    def test_upload_creates_bucket_and_returns_key(self, fake_minio):
        from proctoring.storage.minio_client import upload_bytes
        client = fake_minio(FakeMinio())

        key = upload_bytes("proctoring-snapshots", b"jpeg", "image/jpeg", "session-1", "jpg")
        assert key.startswith("session-1/")
        assert key.endswith(".jpg")
        assert "proctoring-snapshots" in client.buckets
        assert client.objects[("proctoring-snapshots", key)] == (b"jpeg", "image/jpeg")

    def test_keys_are_unique(self, fake_minio):
        from proctoring.storage.minio_client import upload_bytes
        fake_minio(FakeMinio())
        keys = {upload_bytes("b", b"x", prefix="s", extension="webm") for _ in range(5)}
        assert len(keys) == 5

    def test_unreachable_minio_returns_none(self, fake_minio):
        from proctoring.storage.minio_client import check_minio_connection, upload_bytes
        fake_minio(FakeMinio(buckets={"b"}, fail=ConnectionError("connection refused")))
        assert upload_bytes("b", b"x") is None
        assert check_minio_connection() is False

    def test_bucket_check_is_cached(self, fake_minio):
        from proctoring.storage import minio_client
        client = fake_minio(FakeMinio())
        checks = []
        original = client.bucket_exists

        def counting(bucket):
            checks.append(bucket)
            return original(bucket)

        client.bucket_exists = counting
        minio_client.upload_bytes("b", b"1")
        minio_client.upload_bytes("b", b"2")
        assert checks == ["b"]


def test_object_key_without_prefix():
    from proctoring.storage.minio_client import object_key
    assert not object_key("", "bin").startswith("/")
