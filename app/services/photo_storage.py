"""
Photo storage for job photos and payment receipts.

Uploads go straight from the browser to S3 with presigned PUT URLs; the
API only ever hands out URLs and later records (commits) the keys.

Key layout:
    jobs/{job_id}/photos/{timestamp}-{safe_filename}
    jobs/{job_id}/receipts/{photo_id}-{safe_filename}
"""

import logging
import re
import time
import uuid
from functools import lru_cache
from typing import List, Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import settings
from ..schemas.job import PhotoFile, PresignedUpload
from .errors import PreconditionFailed, UpstreamError

logger = logging.getLogger(__name__)

PHOTOS_FOLDER = "photos"
RECEIPTS_FOLDER = "receipts"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9.\-]")


def sanitize_filename(filename: str) -> str:
    """Replace anything outside [A-Za-z0-9.-] with '_'"""
    return _UNSAFE_CHARS.sub("_", filename)[:100]


def get_s3_client(region: str):
    """Get configured boto3 client for S3"""
    return boto3.client(
        "s3",
        region_name=region,
        config=Config(signature_version="s3v4"),
    )


class PhotoStorage:
    def __init__(
        self,
        bucket: Optional[str],
        region: str,
        s3_client=None,
        upload_expiry_seconds: int = 300,
        download_expiry_seconds: int = 3600,
        clock=time.time
    ):
        self.bucket = bucket
        self.region = region
        self._client = s3_client
        self.upload_expiry_seconds = upload_expiry_seconds
        self.download_expiry_seconds = download_expiry_seconds
        self.clock = clock

    @property
    def client(self):
        if self._client is None:
            self._client = get_s3_client(self.region)
        return self._client

    def _require_bucket(self) -> str:
        if not self.bucket:
            raise PreconditionFailed("Photo storage is not configured (S3_PHOTOS_BUCKET)")
        return self.bucket

    def public_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def build_key(self, job_id: str, folder: str, photo_id: str, filename: str) -> str:
        safe = sanitize_filename(filename)
        if folder == RECEIPTS_FOLDER:
            return f"jobs/{job_id}/{RECEIPTS_FOLDER}/{photo_id}-{safe}"
        timestamp = int(self.clock() * 1000)
        return f"jobs/{job_id}/{PHOTOS_FOLDER}/{timestamp}-{safe}"

    def presign_uploads(self, job_id: str, files: List[PhotoFile], folder: str = PHOTOS_FOLDER) -> List[PresignedUpload]:
        bucket = self._require_bucket()
        uploads = []

        for file in files:
            photo_id = str(uuid.uuid4())
            key = self.build_key(job_id, folder, photo_id, file.filename)
            try:
                put_url = self.client.generate_presigned_url(
                    "put_object",
                    Params={"Bucket": bucket, "Key": key, "ContentType": file.content_type},
                    ExpiresIn=self.upload_expiry_seconds,
                )
            except (BotoCoreError, ClientError) as e:
                logger.error(f"Failed to presign upload for job {job_id}: {e}")
                raise UpstreamError("Could not generate upload URL", details={"s3_key": key})

            uploads.append(PresignedUpload(
                photo_id=photo_id,
                s3_key=key,
                put_url=put_url,
                public_url=self.public_url(key),
                content_type=file.content_type,
                category=file.category if folder == PHOTOS_FOLDER else None,
            ))

        logger.info(f"Presigned {len(uploads)} {folder} upload(s) for job {job_id}")
        return uploads

    def presign_download(self, key: str, expires_in: Optional[int] = None) -> Optional[str]:
        """Time-limited GET URL, None when storage is unavailable"""
        if not self.bucket:
            return None
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in or self.download_expiry_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Failed to presign download for {key}: {e}")
            return None


@lru_cache()
def get_photo_storage() -> PhotoStorage:
    return PhotoStorage(
        bucket=settings.s3_photos_bucket,
        region=settings.aws_region,
        upload_expiry_seconds=settings.photo_upload_expiry_seconds,
        download_expiry_seconds=settings.photo_download_expiry_seconds,
    )
