"""Durable object storage for generated assets (Cloudflare R2).

R2 speaks the S3 API, so uploads go through a boto3 client with the R2
endpoint. boto3 is blocking; calls run in a thread pool. Source files are
fetched from provider URLs with httpx.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import posixpath
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import urlparse

import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

if TYPE_CHECKING:
    from pipeforge.config import StorageConfig

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=4)

RETRYABLE_S3_CODES = frozenset(
    {
        "RequestTimeout",
        "InternalError",
        "SlowDown",
        "ServiceUnavailable",
        "RequestTimeTooSkewed",
    }
)


# ── Errors ───────────────────────────────────────────────────────────────────


class StorageErrorCode(enum.IntEnum):
    UPLOAD_FAILED = 1001
    DOWNLOAD_FAILED = 1002
    FILE_TOO_LARGE = 1003
    INVALID_CONTENT = 1004
    CONNECTION_FAILED = 1005
    TIMEOUT = 1006


class StorageError(Exception):
    def __init__(
        self,
        message: str,
        code: StorageErrorCode,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.context = context or {}

    @property
    def retryable(self) -> bool:
        """Only connectivity problems are worth another attempt."""
        return self.code in (StorageErrorCode.CONNECTION_FAILED, StorageErrorCode.TIMEOUT)

    @classmethod
    def upload_failed(cls, path: str, exc: BaseException) -> StorageError:
        return cls(
            f"Failed to upload file to R2: {path}",
            StorageErrorCode.UPLOAD_FAILED,
            {"path": path, "error": str(exc)},
        )

    @classmethod
    def download_failed(cls, url: str, status_code: int) -> StorageError:
        return cls(
            f"Failed to download file from URL (HTTP {status_code})",
            StorageErrorCode.DOWNLOAD_FAILED,
            {"url": url, "status_code": status_code},
        )

    @classmethod
    def file_too_large(cls, size: int, max_size: int) -> StorageError:
        size_mb = round(size / 1024 / 1024, 2)
        max_mb = round(max_size / 1024 / 1024, 2)
        return cls(
            f"File size ({size_mb}MB) exceeds maximum allowed ({max_mb}MB)",
            StorageErrorCode.FILE_TOO_LARGE,
            {"size": size, "max_size": max_size},
        )

    @classmethod
    def connection_failed(cls, message: str) -> StorageError:
        return cls(
            f"R2 connection failed: {message}",
            StorageErrorCode.CONNECTION_FAILED,
            {"error": message},
        )

    @classmethod
    def timeout(cls, operation: str, seconds: float) -> StorageError:
        return cls(
            f"R2 operation timed out: {operation} (timeout: {int(seconds)}s)",
            StorageErrorCode.TIMEOUT,
            {"operation": operation, "timeout": seconds},
        )


# ── Interface ────────────────────────────────────────────────────────────────


class Storage(Protocol):
    async def upload(self, data: bytes, path: str, content_type: str | None = None) -> str:
        """Store ``data`` at ``path`` and return its permanent public URL."""
        ...

    async def download_from(self, url: str) -> tuple[bytes, str | None]:
        ...

    async def upload_from_url(self, url: str, path: str) -> str:
        ...


# ── R2 ───────────────────────────────────────────────────────────────────────


class R2Storage:
    """Cloudflare R2 storage for generated assets."""

    def __init__(
        self,
        *,
        account_id: str | None,
        access_key_id: str | None,
        secret_access_key: str | None,
        bucket: str,
        public_url: str,
        max_file_size: int = 100 * 1024 * 1024,
        download_timeout: float = 180.0,
        s3_client: Any = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")
        self.max_file_size = max_file_size
        self.download_timeout = download_timeout
        self._http_transport = http_transport

        if s3_client is None:
            s3_client = boto3.client(
                "s3",
                endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                region_name="auto",
                config=BotoConfig(signature_version="s3v4", retries={"max_attempts": 3}),
            )
        self.client = s3_client
        logger.info("R2 storage initialized (bucket: %s)", bucket)

    @classmethod
    def from_config(cls, config: StorageConfig) -> R2Storage:
        return cls(
            account_id=os.environ.get(config.account_id_env),
            access_key_id=os.environ.get(config.access_key_env),
            secret_access_key=os.environ.get(config.secret_key_env),
            bucket=config.bucket,
            public_url=config.public_url,
            max_file_size=config.max_file_size,
            download_timeout=config.download_timeout,
        )

    def public_url_for(self, key: str) -> str:
        return f"{self.public_url}/{key}"

    async def upload(self, data: bytes, path: str, content_type: str | None = None) -> str:
        key = path.lstrip("/")
        self._validate_size(len(data))

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(_executor, self._sync_put, key, data, content_type)

        logger.info("R2 upload completed: %s (%d bytes)", key, len(data))
        return self.public_url_for(key)

    def _sync_put(self, key: str, data: bytes, content_type: str | None) -> None:
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            params["ContentType"] = content_type
        try:
            self.client.put_object(**params)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in RETRYABLE_S3_CODES:
                logger.warning("R2 upload of %s failed with %s", key, code)
                raise StorageError.connection_failed(f"{code} while uploading {key}") from exc
            logger.error("R2 upload of %s failed: %s", key, exc)
            raise StorageError.upload_failed(key, exc) from exc
        except BotoCoreError as exc:
            raise StorageError.connection_failed(str(exc)) from exc

    async def download_from(self, url: str) -> tuple[bytes, str | None]:
        """Fetch a provider file. Returns the body and its content type."""
        logger.info("Downloading %s", url)
        try:
            async with httpx.AsyncClient(
                timeout=self.download_timeout,
                follow_redirects=True,
                transport=self._http_transport,
            ) as client:
                resp = await client.get(url)
        except httpx.TimeoutException as exc:
            raise StorageError.timeout("download", self.download_timeout) from exc
        except httpx.TransportError as exc:
            raise StorageError.connection_failed(f"Download failed: {exc}") from exc

        if not resp.is_success:
            logger.error("Download of %s failed with HTTP %d", url, resp.status_code)
            raise StorageError.download_failed(url, resp.status_code)

        content_length = int(resp.headers.get("Content-Length") or 0)
        if content_length > 0:
            self._validate_size(content_length)

        content = resp.content
        if not content:
            raise StorageError(
                "Downloaded file is empty", StorageErrorCode.INVALID_CONTENT, {"url": url}
            )
        return content, resp.headers.get("Content-Type")

    async def upload_from_url(self, url: str, path: str) -> str:
        data, content_type = await self.download_from(url)
        return await self.upload(data, path, content_type)

    def _validate_size(self, size: int) -> None:
        if size > self.max_file_size:
            raise StorageError.file_too_large(size, self.max_file_size)


# ── Paths ────────────────────────────────────────────────────────────────────

_EXTENSIONS = {
    "music": "mp3",
    "image": "png",
    "video_clip": "mp4",
    "final_video": "mp4",
}


def generate_asset_path(
    project_id: str, asset_type: str, extension: str, *, now: datetime | None = None
) -> str:
    """``projects/<id>/<YYYY/MM/DD>/<type>/<uuid>.<ext>``."""
    now = now or datetime.now(timezone.utc)
    return (
        f"projects/{project_id}/{now:%Y/%m/%d}/{asset_type}/"
        f"{uuid.uuid4()}.{extension.lstrip('.')}"
    )


def guess_extension(asset_type: str) -> str:
    return _EXTENSIONS.get(asset_type, "bin")


def extension_from_url(url: str) -> str | None:
    """File extension of the URL path, lower-cased, or None."""
    _, ext = posixpath.splitext(urlparse(url).path)
    ext = ext.lstrip(".").lower()
    return ext or None
