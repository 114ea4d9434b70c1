"""
Alibaba Cloud OSS (Object Storage Service) integration for message media.

Uploads happen before a message is stored; a failed upload aborts the send.
"""
import io
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import oss2
from fastapi.concurrency import run_in_threadpool
from PIL import Image, UnidentifiedImageError

from pairchat.config import settings
from pairchat.core.exceptions import UploadFailed

logger = logging.getLogger(__name__)

# Pillow format name -> MIME type for the image kinds we accept
_IMAGE_FORMATS = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
}


@dataclass(frozen=True)
class MediaUpload:
    """Raw media attached to an outgoing message."""

    data: bytes
    mime_type: str
    filename: Optional[str] = None

    @property
    def kind(self) -> str:
        return "video" if self.mime_type.startswith("video/") else "image"


class StorageService:
    """Service for storing message media in OSS."""

    def __init__(self, bucket: Optional[oss2.Bucket] = None):
        self._bucket = bucket

    @property
    def bucket(self) -> oss2.Bucket:
        if self._bucket is None:
            if not settings.oss_access_key_id or not settings.oss_access_key_secret:
                raise UploadFailed("Media storage is not configured")
            auth = oss2.Auth(settings.oss_access_key_id, settings.oss_access_key_secret)
            self._bucket = oss2.Bucket(auth, settings.oss_endpoint, settings.oss_bucket_name)
        return self._bucket

    def _object_key(self, media: MediaUpload, folder: str) -> str:
        suffix = Path(media.filename or "").suffix.lower()
        if not suffix:
            suffix = "." + media.mime_type.split("/")[-1]
        return f"{folder}/{uuid.uuid4().hex}{suffix}"

    def public_url(self, key: str) -> str:
        return f"https://{settings.oss_bucket_name}.{settings.oss_endpoint}/{key}"

    def validate(self, media: MediaUpload) -> str:
        """
        Validate size and type of an upload.

        Images are decoded with Pillow so the stored type is the real one,
        not whatever the client claimed.

        Args:
            media: Upload to check

        Returns:
            The verified MIME type

        Raises:
            UploadFailed: Empty, too large, undecodable or disallowed media
        """
        size = len(media.data)
        if size == 0:
            raise UploadFailed("File is empty", status_code=400)
        if size > settings.max_upload_size:
            raise UploadFailed(
                f"File too large ({size} bytes). Maximum: {settings.max_upload_size} bytes",
                status_code=413,
            )

        mime_type = media.mime_type
        if media.kind == "image":
            try:
                with Image.open(io.BytesIO(media.data)) as image:
                    image.verify()
                    mime_type = _IMAGE_FORMATS.get(image.format or "", f"image/{(image.format or '').lower()}")
            except (UnidentifiedImageError, OSError, SyntaxError) as e:
                raise UploadFailed(f"Not a valid image: {e}", status_code=415)

        if mime_type not in settings.allowed_file_types:
            raise UploadFailed(
                f"File type not supported: {mime_type}. Allowed types: {', '.join(settings.allowed_file_types)}",
                status_code=415,
            )
        return mime_type

    async def upload(self, media: MediaUpload, folder: str = "messages") -> str:
        """
        Upload media and return its public URL.

        Raises:
            UploadFailed: Validation failed or OSS rejected the object
        """
        mime_type = self.validate(media)
        key = self._object_key(media, folder)
        try:
            result = await run_in_threadpool(
                self.bucket.put_object,
                key,
                media.data,
                headers={
                    "Content-Type": mime_type,
                    "Cache-Control": "public, max-age=31536000",
                },
            )
        except oss2.exceptions.OssError as e:
            logger.error(f"OSS upload failed for {key}: {e}")
            raise UploadFailed("Media upload failed")

        if result.status != 200:
            logger.error(f"OSS upload returned status {result.status} for {key}")
            raise UploadFailed("Media upload failed")

        logger.info(f"Uploaded {key} ({mime_type}, {len(media.data)} bytes)")
        return self.public_url(key)


storage_service = StorageService()
