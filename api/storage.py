"""
Video storage on Google Cloud Storage with a local-disk fallback.

When the bucket cannot be reached at startup (no credentials, no network, or
VOTELY_GCS_BUCKET_NAME set to "") every video is kept under UPLOADS_DIR and
served from /uploads. A cloud upload that fails mid-request also lands on local
disk instead of failing the request.

All google-cloud-storage calls block, so they are run with asyncio.to_thread.
"""

import asyncio
import logging
import os
import random
import shutil
import string
import time
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Optional

from google.cloud import storage as gcs

from api.enums import StorageMode
from api.metrics import STORAGE_FALLBACK_TOTAL
from config import (
    GCS_BUCKET_NAME,
    GCS_CORS_MAX_AGE_SECONDS,
    GCS_CORS_METHODS,
    GCS_LOCATION,
    GCS_OBJECT_PREFIX,
    GCS_PUBLIC_BASE_URL,
    GCS_STORAGE_CLASS,
    SIGNED_URL_EXPIRY_MINUTES,
    UPLOADS_DIR,
)

logger = logging.getLogger(__name__)

LOCAL_URL_PREFIX = "/uploads/"
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


class StorageUnavailableError(Exception):
    """Raised when an operation needs the cloud bucket but only local storage is available."""

    def __init__(self, message: str = "Cloud storage is not available"):
        self.message = message
        super().__init__(self.message)


def make_unique_filename(original_name: str) -> str:
    """
    Build a collision-resistant object name that keeps the original extension.

    Format: <epoch milliseconds>-<9 random [a-z0-9]><ext>, e.g. "1718000000000-k3j9x0abc.mp4".
    """
    ext = os.path.splitext(os.path.basename(original_name or ""))[1]
    suffix = "".join(random.choices(_SUFFIX_ALPHABET, k=9))
    return f"{int(time.time() * 1000)}-{suffix}{ext}"


def _safe_filename(filename: str) -> str:
    """Strip any directory part so object names can't escape their prefix."""
    name = os.path.basename(filename.replace("\\", "/"))
    if not name or name in (".", ".."):
        raise ValueError(f"Invalid filename: {filename!r}")
    return name


class VideoStorage:
    """
    Object-store adapter for contest videos.

    bucket is None in local mode. init_bucket() decides the mode once at startup.
    """

    def __init__(
        self,
        bucket_name: str = GCS_BUCKET_NAME,
        uploads_dir: Path = UPLOADS_DIR,
        client: Optional[gcs.Client] = None,
    ):
        self.bucket_name = bucket_name
        self.uploads_dir = Path(uploads_dir)
        self.client = client
        self.bucket = None

    @property
    def mode(self) -> StorageMode:
        return StorageMode.CLOUD if self.bucket is not None else StorageMode.LOCAL

    # -------------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------------

    def _init_bucket_sync(self):
        if self.client is None:
            self.client = gcs.Client()

        bucket = self.client.bucket(self.bucket_name)
        if not bucket.exists():
            logger.info(f"Bucket {self.bucket_name} does not exist, creating it in {GCS_LOCATION}")
            bucket.storage_class = GCS_STORAGE_CLASS
            bucket = self.client.create_bucket(bucket, location=GCS_LOCATION)
            logger.info(f"Bucket {self.bucket_name} created")

        # Browsers PUT straight to signed URLs, so the bucket must accept cross-origin requests
        bucket.cors = [
            {
                "origin": ["*"],
                "method": list(GCS_CORS_METHODS),
                "responseHeader": ["*"],
                "maxAgeSeconds": GCS_CORS_MAX_AGE_SECONDS,
            }
        ]
        bucket.patch()
        return bucket

    async def init_bucket(self) -> StorageMode:
        """
        Resolve (or create) the bucket and apply its CORS policy.

        Never raises: any failure leaves the adapter in local mode.
        """
        if not self.bucket_name:
            logger.info("No GCS bucket configured, storing videos locally")
            self.bucket = None
            return self.mode

        try:
            self.bucket = await asyncio.to_thread(self._init_bucket_sync)
            logger.info(f"Using GCS bucket {self.bucket_name} for video storage")
        except Exception as e:
            logger.error(f"Error initializing Cloud Storage, using local filesystem: {e}")
            self.bucket = None
        return self.mode

    # -------------------------------------------------------------------------
    # URLs
    # -------------------------------------------------------------------------

    def object_name(self, filename: str) -> str:
        return f"{GCS_OBJECT_PREFIX}{_safe_filename(filename)}"

    def get_public_url(self, filename: str) -> str:
        """Public URL a stored video is served from."""
        if self.bucket is None:
            return f"{LOCAL_URL_PREFIX}{_safe_filename(filename)}"
        return f"{GCS_PUBLIC_BASE_URL}/{self.bucket_name}/{self.object_name(filename)}"

    async def generate_signed_url(self, filename: str, content_type: str) -> str:
        """
        Create a V4 signed URL that lets a browser PUT one video into the bucket.

        The URL only accepts requests whose Content-Type matches content_type.

        Raises:
            StorageUnavailableError: in local mode
        """
        if self.bucket is None:
            raise StorageUnavailableError("GCS bucket not initialized")

        blob = self.bucket.blob(self.object_name(filename))
        return await asyncio.to_thread(
            blob.generate_signed_url,
            version="v4",
            method="PUT",
            expiration=timedelta(minutes=SIGNED_URL_EXPIRY_MINUTES),
            content_type=content_type,
        )

    # -------------------------------------------------------------------------
    # Upload / delete
    # -------------------------------------------------------------------------

    def _move_to_local(self, temp_path: Path, filename: str) -> str:
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        local_path = self.uploads_dir / _safe_filename(filename)
        if temp_path.exists():
            shutil.move(str(temp_path), str(local_path))
        return f"{LOCAL_URL_PREFIX}{local_path.name}"

    def _upload_sync(self, temp_path: Path, filename: str, content_type: str) -> str:
        blob = self.bucket.blob(self.object_name(filename))
        blob.upload_from_filename(str(temp_path), content_type=content_type)
        temp_path.unlink(missing_ok=True)
        return self.get_public_url(filename)

    async def upload_video(self, temp_path: Path, filename: str, content_type: str) -> str:
        """
        Store a spooled upload and return the URL it will be served from.

        Cloud mode uploads to videos/<filename>; if that raises, the file is
        moved to UPLOADS_DIR instead. Either way temp_path is consumed.
        """
        temp_path = Path(temp_path)

        if self.bucket is None:
            video_path = await asyncio.to_thread(self._move_to_local, temp_path, filename)
            logger.info(f"Video saved locally: {video_path}")
            return video_path

        try:
            video_path = await asyncio.to_thread(self._upload_sync, temp_path, filename, content_type)
            logger.info(f"Video uploaded to GCS: {self.object_name(filename)}")
            return video_path
        except Exception as e:
            STORAGE_FALLBACK_TOTAL.inc()
            logger.error(f"GCS upload failed, falling back to local storage: {e}")
            video_path = await asyncio.to_thread(self._move_to_local, temp_path, filename)
            logger.info(f"Video saved locally (fallback): {video_path}")
            return video_path

    def _delete_local_sync(self, video_path: str) -> bool:
        name = video_path[len(LOCAL_URL_PREFIX):]
        uploads_root = self.uploads_dir.resolve()
        local_path = (self.uploads_dir / name).resolve()
        if not local_path.is_relative_to(uploads_root) or local_path == uploads_root:
            logger.warning(f"Refusing to delete path outside uploads directory: {video_path}")
            return False
        if local_path.is_file():
            local_path.unlink()
            return True
        return False

    async def delete_video(self, video_path: str) -> bool:
        """
        Delete the media behind a stored video path.

        Returns True when something was deleted. Cloud failures are logged and
        reported as False, never raised.
        """
        if not video_path:
            return False

        if video_path.startswith(LOCAL_URL_PREFIX):
            return await asyncio.to_thread(self._delete_local_sync, video_path)

        if self.bucket is None:
            # Cloud object left over from an earlier deployment; nothing we can reach
            logger.info(f"Skipping delete of cloud object in local mode: {video_path}")
            return False

        filename = video_path.rstrip("/").split("/")[-1]
        try:
            blob = self.bucket.blob(self.object_name(filename))
            await asyncio.to_thread(blob.delete)
            return True
        except Exception as e:
            logger.error(f"Error deleting video from GCS ({filename}): {e}")
            return False

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    def _check_local_sync(self) -> bool:
        try:
            self.uploads_dir.mkdir(parents=True, exist_ok=True)
            test_file = self.uploads_dir / f".health_check_{uuid.uuid4().hex}"
            test_file.write_text("health check")
            test_file.unlink()
            return True
        except OSError:
            return False

    async def check_storage_available(self) -> bool:
        """Cloud mode: the bucket still exists. Local mode: UPLOADS_DIR is writable."""
        if self.bucket is None:
            return await asyncio.to_thread(self._check_local_sync)
        return await asyncio.to_thread(self.bucket.exists)


video_storage = VideoStorage()
