from __future__ import annotations
import time
from typing import Optional

import httpx
import structlog

from .errors import NotConfigured, UpstreamFailure, ValidationFailed
from .helpers import random_suffix

log = structlog.get_logger().bind(component="storage")

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp")
ALLOWED_AUDIO_TYPES = ("audio/mpeg", "audio/aiff", "audio/wav", "audio/x-aiff")
MAX_IMAGE_SIZE = 5 * 1024 * 1024  # 5MB

# Vercel Blob REST API version spoken by @vercel/blob
BLOB_API_VERSION = "7"

CONTENT_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "mp3": "audio/mpeg",
    "aiff": "audio/aiff",
    "wav": "audio/wav",
}


def content_type_for(filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return CONTENT_TYPES.get(ext, "application/octet-stream")


def validate_upload(kind: str, content_type: Optional[str],
                    size: int) -> None:
    if kind == "image":
        if content_type not in ALLOWED_IMAGE_TYPES:
            raise ValidationFailed(
                "Invalid image type. Allowed: jpg, png, webp"
            )
        if size > MAX_IMAGE_SIZE:
            raise ValidationFailed("Image too large. Max size: 5MB")
    elif kind == "audio":
        # no size cap for audio, the blob store's plan limit applies
        if content_type not in ALLOWED_AUDIO_TYPES:
            raise ValidationFailed(
                "Invalid audio type. Allowed: mp3, aiff, wav"
            )
    else:
        raise ValidationFailed("Invalid upload type")


def blob_pathname(kind: str, filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1] if "." in filename else "bin"
    return f"{kind}s/{int(time.time() * 1000)}-{random_suffix()}.{ext}"


class BlobStore:
    def __init__(self, http: httpx.AsyncClient, token: Optional[str],
                 api_url: str) -> None:
        self.http = http
        self.token = token
        self.api_url = api_url.rstrip("/")

    async def put(self, pathname: str, data: bytes,
                  content_type: str) -> str:
        """Public upload; returns the blob URL."""
        if not self.token:
            raise NotConfigured("Blob storage not configured")
        r = await self.http.put(
            f"{self.api_url}/{pathname}",
            content=data,
            headers={
                "authorization": f"Bearer {self.token}",
                "x-api-version": BLOB_API_VERSION,
                "x-content-type": content_type,
                "access": "public",
            },
        )
        if r.status_code >= 400:
            log.error("blob.put_failed", pathname=pathname,
                      status=r.status_code, body=r.text[:500])
            raise UpstreamFailure("Upload failed")
        return r.json()["url"]
