"""
Object storage for uploaded videos and thumbnails.

The admin API only needs one capability from storage: put some bytes under a
key and get back a URL that browsers can fetch. Two backends provide it:

- LocalObjectStore writes below SHOWCASE_STORAGE_PATH; the public API serves
  those files from SHOWCASE_MEDIA_URL_PREFIX.
- ProxyObjectStore forwards the bytes to an external storage service.
"""

import base64
import binascii
import logging
import re
from pathlib import Path, PurePosixPath
from typing import Optional

import aiofiles
import httpx
from fastapi import HTTPException

from config import (
    MEDIA_URL_PREFIX,
    STORAGE_BACKEND,
    STORAGE_PATH,
    STORAGE_PROXY_KEY,
    STORAGE_PROXY_TIMEOUT,
    STORAGE_PROXY_URL,
)

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class StorageUnavailableError(Exception):
    """Raised when storage operations fail due to unavailable storage."""

    def __init__(self, message: str = "Storage temporarily unavailable"):
        self.message = message
        super().__init__(self.message)


class UploadTooLargeError(Exception):
    """Raised when a decoded upload exceeds its size limit."""

    def __init__(self, size: int, max_size: int):
        self.size = size
        self.max_size = max_size
        super().__init__(f"File too large. Maximum size is {max_size // (1024 * 1024)} MB")


def safe_file_name(file_name: str) -> str:
    """Reduce a client supplied file name to a safe basename."""
    name = PurePosixPath(file_name.replace("\\", "/")).name
    name = _UNSAFE_NAME_CHARS.sub("_", name).strip("._")
    return name[:128] or "file"


def build_object_key(prefix: str, user_id: int, file_name: str, now_ms: int) -> str:
    """Key layout: <prefix>/<user id>/<unix ms>-<safe name>."""
    return f"{prefix}/{user_id}/{now_ms}-{safe_file_name(file_name)}"


def decode_upload(file_data: str, max_size: int) -> bytes:
    """
    Decode a base64 upload body.

    Raises HTTPException(400) on malformed base64 and UploadTooLargeError when
    the decoded payload is larger than max_size.
    """
    # Browsers often send a data URL; strip its header
    if file_data.startswith("data:") and "," in file_data:
        file_data = file_data.split(",", 1)[1]

    # Cheap upper bound before allocating the decoded buffer
    if len(file_data) * 3 // 4 > max_size + 3:
        raise UploadTooLargeError(len(file_data) * 3 // 4, max_size)

    try:
        data = base64.b64decode(file_data, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Invalid base64 file data")

    if len(data) > max_size:
        raise UploadTooLargeError(len(data), max_size)
    return data


class ObjectStore:
    """Put bytes under a key and return the public URL."""

    async def put(self, key: str, data: bytes, mime_type: str) -> str:
        raise NotImplementedError


class LocalObjectStore(ObjectStore):
    def __init__(self, root: Path, url_prefix: str = MEDIA_URL_PREFIX):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")

    def _resolve(self, key: str) -> Path:
        root = self.root.resolve()
        target = (root / key).resolve()
        # Keys must stay inside root
        if target == root or root not in target.parents:
            raise ValueError(f"Invalid object key: {key}")
        return target

    async def put(self, key: str, data: bytes, mime_type: str) -> str:
        target = self._resolve(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(target, "wb") as f:
                await f.write(data)
        except OSError as e:
            logger.error(f"Failed to write object {key}: {e}")
            raise StorageUnavailableError(f"Storage write failed: {e}")
        logger.info(f"Stored {len(data)} bytes at {key} ({mime_type})")
        return f"{self.url_prefix}/{key}"


class ProxyObjectStore(ObjectStore):
    """Upload through an HTTP storage service that returns the object's URL."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = STORAGE_PROXY_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def put(self, key: str, data: bytes, mime_type: str) -> str:
        if not self.base_url or not self.api_key:
            raise StorageUnavailableError("Storage proxy is not configured")

        url = f"{self.base_url}/v1/storage/upload"
        files = {"file": (PurePosixPath(key).name, data, mime_type)}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    params={"path": key},
                    files=files,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.RequestError as e:
            logger.error(f"Storage proxy unreachable: {e}")
            raise StorageUnavailableError(f"Storage upload failed: {e}")

        if response.status_code >= 500:
            logger.error(f"Storage proxy returned {response.status_code} for {key}")
            raise StorageUnavailableError(f"Storage upload failed with status {response.status_code}")
        if response.status_code >= 400:
            logger.error(f"Storage proxy rejected {key}: {response.status_code} {response.text[:200]}")
            raise StorageUnavailableError(f"Storage upload rejected with status {response.status_code}")

        try:
            return response.json()["url"]
        except (ValueError, KeyError) as e:
            raise StorageUnavailableError(f"Storage upload failed: malformed response ({e})")


def get_object_store() -> ObjectStore:
    """Build the configured object store."""
    if STORAGE_BACKEND == "proxy":
        return ProxyObjectStore(STORAGE_PROXY_URL, STORAGE_PROXY_KEY)
    if STORAGE_BACKEND != "local":
        logger.warning(f"Unknown SHOWCASE_STORAGE_BACKEND={STORAGE_BACKEND!r}, using local storage")
    return LocalObjectStore(STORAGE_PATH, MEDIA_URL_PREFIX)
