"""Azure Blob uploads for finished recordings."""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional, Protocol

from azure.core.exceptions import ResourceExistsError
from azure.storage.blob import ContentSettings
from azure.storage.blob.aio import BlobServiceClient, ContainerClient

from livecast.core.config import configs
from livecast.media.probe import extract_thumbnail, probe_duration

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    url: str
    thumbnail_url: Optional[str] = None
    duration_seconds: Optional[float] = None


class MediaStorage(Protocol):
    async def upload(self, data: bytes, blob_name: str, content_type: str) -> UploadResult:
        ...


def thumbnail_blob_name(blob_name: str) -> str:
    """recordings/x.webm -> recordings/thumbnails/x.jpg"""
    directory, filename = os.path.split(blob_name)
    stem = filename.rsplit(".", 1)[0]
    return os.path.join(directory, "thumbnails", f"{stem}.jpg")


class AzureMediaStorage:

    def __init__(self, connection_string: Optional[str] = None, container: Optional[str] = None):
        self.connection_string = connection_string or configs.AZURE_STORAGE_CONNECTION_STRING
        self.container = container or configs.AZURE_BLOB_CONTAINER

    async def _ensure_container(self, container_client: ContainerClient) -> None:
        try:
            await container_client.create_container()
        except ResourceExistsError:
            pass

    async def upload(self, data: bytes, blob_name: str, content_type: str) -> UploadResult:
        if not self.connection_string:
            raise RuntimeError("AZURE_STORAGE_CONNECTION_STRING is required to upload recordings")

        duration = await asyncio.to_thread(probe_duration, data)
        thumbnail = await asyncio.to_thread(extract_thumbnail, data)

        async with BlobServiceClient.from_connection_string(self.connection_string) as service:
            container_client = service.get_container_client(self.container)
            await self._ensure_container(container_client)

            blob_client = container_client.get_blob_client(blob_name)
            await blob_client.upload_blob(
                data,
                overwrite=True,
                content_settings=ContentSettings(content_type=content_type),
            )
            logger.info(f"[storage] uploaded {blob_name} ({len(data)} bytes)")

            thumbnail_url = None
            if thumbnail:
                thumb_client = container_client.get_blob_client(thumbnail_blob_name(blob_name))
                try:
                    await thumb_client.upload_blob(
                        thumbnail,
                        overwrite=True,
                        content_settings=ContentSettings(content_type="image/jpeg"),
                    )
                    thumbnail_url = thumb_client.url
                except Exception as e:
                    logger.warning(f"[storage] thumbnail upload failed for {blob_name}: {e}")

            return UploadResult(
                url=blob_client.url,
                thumbnail_url=thumbnail_url,
                duration_seconds=duration,
            )
