from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
import re
from typing import Any, Callable, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from storagegate.core.errors import StorageBackendError
from storagegate.domain.models import StorageConfig
from storagegate.services.resilience import bounded_call


logger = logging.getLogger(__name__)

_MULTI_SLASH = re.compile(r"/{2,}")


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size_bytes: int
    last_modified: datetime | None


class ObjectStorage(Protocol):
    async def put_url(
        self, config: StorageConfig, key: str, *, content_type: str | None, size_bytes: int, ttl_s: int
    ) -> str:
        ...

    async def get_url(
        self, config: StorageConfig, key: str, *, ttl_s: int, file_name: str | None = None
    ) -> str:
        ...

    async def delete(self, config: StorageConfig, key: str) -> None:
        ...

    async def list(self, config: StorageConfig, prefix: str) -> list[ObjectInfo]:
        ...

    async def verify(self, config: StorageConfig) -> bool:
        ...


def normalize_prefix(prefix: str | None) -> str:
    # Collapse duplicate slashes and trim both ends; an empty prefix stays empty.
    if not prefix:
        return ""
    return _MULTI_SLASH.sub("/", prefix.strip()).strip("/")


def build_storage_key(prefix: str | None, logical_path: str) -> str:
    path = _MULTI_SLASH.sub("/", logical_path).strip("/")
    clean_prefix = normalize_prefix(prefix)
    if not clean_prefix:
        return path
    return f"{clean_prefix}/{path}"


class S3ObjectStorage:
    """S3-compatible storage reached with per-tenant credentials.

    Path-style addressing keeps custom endpoints (Wasabi, MinIO, Ceph)
    working without wildcard DNS. Every call runs in a worker thread and is
    bounded by the configured timeout; failures surface as
    ``StorageBackendError`` and are never retried here.
    """

    def __init__(self, *, client_factory: Callable[[StorageConfig], Any] | None = None) -> None:
        self._client_factory = client_factory or _default_client
        self._clients: dict[tuple[str, ...], Any] = {}

    def _get_client(self, config: StorageConfig) -> Any:
        cache_key = (
            config.endpoint,
            config.region,
            config.access_key_id,
            config.secret_access_key,
        )
        client = self._clients.get(cache_key)
        if client is None:
            client = self._client_factory(config)
            self._clients[cache_key] = client
        return client

    async def _call(self, operation: str, config: StorageConfig, fn: Callable[[Any], Any]) -> Any:
        client = self._get_client(config)

        async def _run() -> Any:
            return await asyncio.to_thread(fn, client)

        try:
            return await bounded_call(_run, operation=operation)
        except (BotoCoreError, ClientError) as exc:
            logger.warning(
                "object_storage_call_failed operation=%s bucket=%s",
                operation,
                config.bucket_name,
                exc_info=exc,
            )
            raise StorageBackendError(
                f"Object storage {operation} failed",
                details={"operation": operation},
            ) from exc

    async def put_url(
        self, config: StorageConfig, key: str, *, content_type: str | None, size_bytes: int, ttl_s: int
    ) -> str:
        params: dict[str, Any] = {"Bucket": config.bucket_name, "Key": key}
        if content_type:
            params["ContentType"] = content_type
        return await self._call(
            "presign_put",
            config,
            lambda client: client.generate_presigned_url("put_object", Params=params, ExpiresIn=ttl_s),
        )

    async def get_url(
        self, config: StorageConfig, key: str, *, ttl_s: int, file_name: str | None = None
    ) -> str:
        params: dict[str, Any] = {"Bucket": config.bucket_name, "Key": key}
        if file_name:
            params["ResponseContentDisposition"] = f'attachment; filename="{file_name}"'
        return await self._call(
            "presign_get",
            config,
            lambda client: client.generate_presigned_url("get_object", Params=params, ExpiresIn=ttl_s),
        )

    async def delete(self, config: StorageConfig, key: str) -> None:
        await self._call(
            "delete_object",
            config,
            lambda client: client.delete_object(Bucket=config.bucket_name, Key=key),
        )

    async def list(self, config: StorageConfig, prefix: str) -> list[ObjectInfo]:
        def _list(client: Any) -> list[ObjectInfo]:
            paginator = client.get_paginator("list_objects_v2")
            objects: list[ObjectInfo] = []
            for page in paginator.paginate(Bucket=config.bucket_name, Prefix=prefix):
                for item in page.get("Contents", []):
                    objects.append(
                        ObjectInfo(
                            key=item["Key"],
                            size_bytes=int(item.get("Size", 0)),
                            last_modified=item.get("LastModified"),
                        )
                    )
            return objects

        return await self._call("list_objects", config, _list)

    async def verify(self, config: StorageConfig) -> bool:
        # Missing or forbidden buckets are a verification failure, not a backend outage.
        try:
            await self._call(
                "head_bucket",
                config,
                lambda client: client.head_bucket(Bucket=config.bucket_name),
            )
        except StorageBackendError as exc:
            cause = exc.__cause__
            if isinstance(cause, ClientError):
                status = cause.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
                if isinstance(status, int) and 400 <= status < 500:
                    return False
            raise
        return True


def _default_client(config: StorageConfig) -> Any:
    return boto3.client(
        "s3",
        endpoint_url=config.endpoint,
        region_name=config.region,
        aws_access_key_id=config.access_key_id,
        aws_secret_access_key=config.secret_access_key,
        config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
    )


_object_storage: ObjectStorage | None = None


def get_object_storage() -> ObjectStorage:
    global _object_storage
    if _object_storage is None:
        _object_storage = S3ObjectStorage()
    return _object_storage


def set_object_storage(storage: ObjectStorage | None) -> None:
    # Swap the process-wide backend; tests install an in-memory fake.
    global _object_storage
    _object_storage = storage
