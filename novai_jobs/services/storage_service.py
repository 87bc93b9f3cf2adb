from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Protocol

import httpx
from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import (
    BlobSasPermissions,
    BlobServiceClient,
    ContentSettings,
    generate_blob_sas,
)

from novai_jobs.config import settings
from novai_jobs.domain.errors import InfrastructureError

logger = logging.getLogger("storage")


class StorageService(Protocol):
    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        ...

    async def delete(self, bucket: str, path: str) -> None:
        ...


def content_type_for(path: str) -> str:
    ext = Path(path).suffix.lower()
    return {
        ".png": "image/png",
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".webp": "image/webp",
        ".mp4": "video/mp4",
        ".mov": "video/quicktime",
        ".mp3": "audio/mpeg",
        ".wav": "audio/wav",
        ".aac": "audio/aac",
        ".zip": "application/zip",
        ".safetensors": "application/octet-stream",
    }.get(ext, "application/octet-stream")


async def download_bytes(url: str, timeout: Optional[float] = None) -> bytes:
    async with httpx.AsyncClient(follow_redirects=True, timeout=timeout or settings.DOWNLOAD_TIMEOUT_SECONDS) as client:
        r = await client.get(url)
        r.raise_for_status()
        return r.content


async def download_to_file(url: str, dest: str, timeout: Optional[float] = None) -> str:
    Path(dest).parent.mkdir(parents=True, exist_ok=True)
    async with httpx.AsyncClient(follow_redirects=True, timeout=timeout or settings.DOWNLOAD_TIMEOUT_SECONDS) as client:
        async with client.stream("GET", url) as r:
            r.raise_for_status()
            with open(dest, "wb") as f:
                async for chunk in r.aiter_bytes(chunk_size=1024 * 1024):
                    f.write(chunk)
    return dest


class AzureBlobStorage:
    """Azure Blob Storage; buckets map to containers. Returns read-only SAS URLs."""

    def __init__(self, connection_string: Optional[str] = None, sas_hours: Optional[int] = None):
        self.connection_string = connection_string or settings.AZURE_STORAGE_CONNECTION_STRING
        if not self.connection_string:
            raise InfrastructureError("AZURE_STORAGE_CONNECTION_STRING is not set")
        self.sas_hours = sas_hours or settings.STORAGE_SAS_EXPIRY_HOURS
        self.blob_service = BlobServiceClient.from_connection_string(self.connection_string)

    def _generate_sas_url(self, container: str, blob_name: str) -> str:
        conn_parts = dict(
            item.split("=", 1) for item in self.connection_string.split(";") if "=" in item
        )
        account_name = conn_parts.get("AccountName")
        account_key = conn_parts.get("AccountKey")
        if not account_name or not account_key:
            raise InfrastructureError("Could not parse storage account credentials")

        sas_token = generate_blob_sas(
            account_name=account_name,
            container_name=container,
            blob_name=blob_name,
            account_key=account_key,
            permission=BlobSasPermissions(read=True),
            expiry=datetime.now(timezone.utc) + timedelta(hours=self.sas_hours),
        )
        return f"{self.blob_service.url.rstrip('/')}/{container}/{blob_name}?{sas_token}"

    def _upload_sync(self, container: str, blob_name: str, data: bytes, content_type: str) -> None:
        bc = self.blob_service.get_blob_client(container=container, blob=blob_name)
        bc.upload_blob(data, overwrite=True, content_settings=ContentSettings(content_type=content_type))

    def _delete_sync(self, container: str, blob_name: str) -> None:
        bc = self.blob_service.get_blob_client(container=container, blob=blob_name)
        try:
            bc.delete_blob(delete_snapshots="include")
        except ResourceNotFoundError:
            logger.info("blob_already_deleted", extra={"container": container, "blob": blob_name})

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        blob_name = path.lstrip("/")
        try:
            await asyncio.to_thread(self._upload_sync, bucket, blob_name, data, content_type)
        except AzureError as e:
            raise InfrastructureError(f"upload failed for {bucket}/{blob_name}: {e}") from e
        return self._generate_sas_url(bucket, blob_name)

    async def delete(self, bucket: str, path: str) -> None:
        blob_name = path.lstrip("/")
        try:
            await asyncio.to_thread(self._delete_sync, bucket, blob_name)
        except AzureError as e:
            raise InfrastructureError(f"delete failed for {bucket}/{blob_name}: {e}") from e
