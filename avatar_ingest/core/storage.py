from __future__ import annotations

import asyncio
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from botocore.exceptions import ConnectionError as BotoConnectionError
from botocore.exceptions import HTTPClientError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from avatar_ingest.ingest.errors import StorageError, TransientStorageError

from .config import Settings
from .logging import get_logger

logger = get_logger(component="object_store")

_TRANSIENT_S3_CODES = frozenset(
    {"SlowDown", "RequestTimeout", "RequestTimeTooSkewed", "Throttling", "InternalError", "ServiceUnavailable"}
)
TEMP_PREFIX = ".upload-"


class Storage(ABC):
    @abstractmethod
    def put_bytes(self, key: str, payload: bytes, *, content_type: str) -> str: ...


class LocalStorage(Storage):
    """Filesystem-backed object store suitable for development."""

    def __init__(self, base_path: Path):
        self.base_path = base_path.resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if path != self.base_path and self.base_path not in path.parents:
            raise ValueError(f"Key escapes the storage root: {key}")
        return path

    def put_bytes(self, key: str, payload: bytes, *, content_type: str) -> str:
        path = self.path_for(key)
        tmp_name: str | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # write-then-rename so readers never see a partial object
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=TEMP_PREFIX)
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except OSError as exc:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise StorageError(f"local object write failed for {key}: {exc}") from exc
        return key


class S3Storage(Storage):
    """S3-compatible object store (AWS, Backblaze B2, MinIO, ...)."""

    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: str | None = None,
        region: str = "us-east-1",
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    @staticmethod
    def _classify(exc: Exception, key: str) -> Exception:
        if isinstance(exc, ClientError):
            error = exc.response.get("Error", {})
            code = str(error.get("Code", ""))
            status = int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)
            message = f"object store responded {status} {code} for {key}"
            if status >= 500 or status == 429 or code in _TRANSIENT_S3_CODES:
                return TransientStorageError(message)
            return StorageError(message)
        if isinstance(exc, (BotoConnectionError, HTTPClientError)):
            return TransientStorageError(f"object store unreachable for {key}: {exc}")
        return StorageError(f"object store error for {key}: {exc}")

    def put_bytes(self, key: str, payload: bytes, *, content_type: str) -> str:
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=payload, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            raise self._classify(exc, key) from exc
        logger.debug("object_uploaded", key=key, bytes=len(payload))
        return key


class ObjectStoreWriter:
    """Durable, idempotent writes under content-derived keys with bounded retries."""

    def __init__(
        self,
        storage: Storage,
        *,
        max_attempts: int = 4,
        initial_delay_s: float = 0.5,
        backoff_base: float = 2.0,
        max_delay_s: float = 10.0,
    ) -> None:
        self.storage = storage
        self.max_attempts = max_attempts
        self.initial_delay_s = initial_delay_s
        self.backoff_base = backoff_base
        self.max_delay_s = max_delay_s

    @classmethod
    def from_settings(cls, storage: Storage, settings: Settings) -> "ObjectStoreWriter":
        return cls(
            storage,
            max_attempts=settings.storage_max_attempts,
            initial_delay_s=settings.storage_retry_initial_delay_s,
            backoff_base=settings.storage_retry_backoff_base,
            max_delay_s=settings.storage_retry_max_delay_s,
        )

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "object_write_retry",
            attempt=retry_state.attempt_number,
            error=str(exc),
            sleep_s=retry_state.next_action.sleep if retry_state.next_action else None,
        )

    async def write(self, key: str, payload: bytes, *, content_type: str) -> str:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.initial_delay_s, exp_base=self.backoff_base, max=self.max_delay_s),
            retry=retry_if_exception_type(TransientStorageError),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await asyncio.to_thread(self.storage.put_bytes, key, payload, content_type=content_type)
        except TransientStorageError as exc:
            raise StorageError(
                f"object store write failed after {self.max_attempts} attempts: {exc.message}",
                stage="uploading",
            ) from exc
        except StorageError as exc:
            raise exc.at("uploading")
        raise AssertionError("unreachable")  # pragma: no cover


def get_storage(settings: Settings) -> Storage:
    if settings.storage_backend == "local":
        return LocalStorage(base_path=Path(settings.local_storage_base_path))
    if settings.storage_backend == "s3":
        return S3Storage(
            settings.s3_bucket or "",
            endpoint_url=settings.s3_endpoint,
            region=settings.s3_region,
            access_key_id=settings.secrets.s3_access_key_id,
            secret_access_key=settings.secrets.s3_secret_access_key,
        )
    raise ValueError(f"Unsupported storage backend: {settings.storage_backend}")


__all__ = [
    "Storage",
    "LocalStorage",
    "S3Storage",
    "ObjectStoreWriter",
    "get_storage",
]
