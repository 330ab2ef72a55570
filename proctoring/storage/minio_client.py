"""
MinIO client wrapper.

Provides:
  - upload_bytes()           — store a snapshot / video / audio chunk, return the object key
  - ensure_bucket_exists()
  - check_minio_connection() — used by /health
"""
from __future__ import annotations

import io
import logging
import uuid
from urllib.parse import urlparse

from minio import Minio
from minio.error import S3Error

from proctoring.config import get_settings
from proctoring.timeline import utcnow

logger = logging.getLogger(__name__)


def _build_client() -> Minio:
    settings = get_settings()
    endpoint = settings.minio_endpoint
    # Accept both "minio:9000" and "http://minio:9000"
    if "://" in endpoint:
        parsed = urlparse(endpoint)
        host   = parsed.netloc
        secure = parsed.scheme == "https"
    else:
        host   = endpoint
        secure = settings.minio_secure
    return Minio(
        host,
        access_key = settings.minio_access_key,
        secret_key = settings.minio_secret_key,
        secure     = secure,
    )


# Minio clients are thread-safe; one per process
_client: Minio | None = None
_known_buckets: set[str] = set()


def get_client() -> Minio:
    global _client
    if _client is None:
        _client = _build_client()
    return _client


def ensure_bucket_exists(bucket: str) -> None:
    """Create the bucket if it doesn't exist yet."""
    if bucket in _known_buckets:
        return
    client = get_client()
    try:
        if not client.bucket_exists(bucket):
            client.make_bucket(bucket)
            logger.info("Created MinIO bucket: %s", bucket)
        _known_buckets.add(bucket)
    except S3Error as exc:
        logger.warning("Could not ensure bucket '%s': %s", bucket, exc)


def object_key(prefix: str, extension: str) -> str:
    timestamp = utcnow().strftime("%Y%m%d_%H%M%S")
    return f"{prefix}/{timestamp}_{uuid.uuid4().hex[:8]}.{extension}".lstrip("/")


def upload_bytes(
    bucket:       str,
    data:         bytes,
    content_type: str = "application/octet-stream",
    prefix:       str = "",
    extension:    str = "bin",
) -> str | None:
    """
    Upload raw bytes to MinIO.

    Returns the object key (path inside the bucket), which is what events
    store as their snapshot_url. Returns None on failure; callers carry on
    without the artefact.
    """
    key = object_key(prefix, extension)
    try:
        ensure_bucket_exists(bucket)
        get_client().put_object(
            bucket_name  = bucket,
            object_name  = key,
            data         = io.BytesIO(data),
            length       = len(data),
            content_type = content_type,
        )
        logger.debug("Uploaded %d bytes → %s/%s", len(data), bucket, key)
        return key
    except S3Error as exc:
        logger.error("MinIO upload failed for bucket '%s': %s", bucket, exc)
        return None
    except Exception as exc:
        logger.error("MinIO unreachable while uploading to '%s': %s", bucket, exc)
        return None


def check_minio_connection() -> bool:
    """Returns True if MinIO is reachable."""
    try:
        get_client().list_buckets()
        return True
    except Exception as exc:
        logger.warning("MinIO connectivity check failed: %s", exc)
        return False
