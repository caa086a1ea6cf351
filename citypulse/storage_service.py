import hashlib
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

UPLOAD_TIMEOUT_SECONDS = float(os.getenv("UPLOAD_TIMEOUT_SECONDS", "30"))
ALLOWED_MIME_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}


@dataclass
class StoredObject:
    url: str
    public_id: Optional[str]


class StorageService:
    """Cloudinary uploader. ``upload`` returns None instead of raising."""

    def __init__(self, cloud_name: str, api_key: str, api_secret: str, timeout: float = UPLOAD_TIMEOUT_SECONDS):
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout = timeout

    def _signature(self, params: dict) -> str:
        to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params))
        return hashlib.sha1(f"{to_sign}{self.api_secret}".encode()).hexdigest()

    async def upload(self, content: bytes, mime_type: str, folder: str = "citypulse/issues") -> Optional[StoredObject]:
        if mime_type not in ALLOWED_MIME_TYPES:
            logger.warning(f"Rejected upload with mime type {mime_type}")
            return None

        params = {"folder": folder, "timestamp": int(time.time())}
        data = {**params, "api_key": self.api_key, "signature": self._signature(params)}
        url = f"https://api.cloudinary.com/v1_1/{self.cloud_name}/image/upload"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, data=data, files={"file": ("upload", content, mime_type)})
                response.raise_for_status()
                result = response.json()
            logger.info("Image uploaded", extra={"public_id": result.get("public_id")})
            return StoredObject(url=result["secure_url"], public_id=result.get("public_id"))
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error(f"Image upload failed: {str(e)}")
            return None


def get_storage_service() -> Optional[StorageService]:
    """Returns None when CLOUDINARY_* credentials are not configured."""
    cloud_name = os.getenv("CLOUDINARY_CLOUD_NAME")
    api_key = os.getenv("CLOUDINARY_API_KEY")
    api_secret = os.getenv("CLOUDINARY_API_SECRET")
    if not (cloud_name and api_key and api_secret):
        logger.warning("Cloudinary credentials not set, uploads disabled")
        return None
    return StorageService(cloud_name, api_key, api_secret)
