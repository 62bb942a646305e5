from __future__ import annotations

import threading
from typing import Dict, Optional, Protocol, Tuple

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings

from aiva.config import Settings
from aiva.logging import get_logger
from aiva.service.errors import NotFoundError

logger = get_logger(__name__)


class BlobStorage(Protocol):
    container_name: str
    is_mock: bool

    def upload(self, blob_name: str, data: bytes, content_type: Optional[str] = None) -> str: ...

    def download(self, blob_name: str) -> bytes: ...

    def delete(self, blob_name: str) -> bool: ...

    def exists(self, blob_name: str) -> bool: ...


class AzureBlobStorage:
    """Uploaded chat attachments stored in one Azure Blob container."""

    is_mock = False

    def __init__(self, service_client: BlobServiceClient, container_name: str) -> None:
        self.service_client = service_client
        self.container_name = container_name
        self.container = service_client.get_container_client(container_name)
        try:
            self.container.create_container()
            logger.info("blob_container_created", container=container_name)
        except ResourceExistsError:
            pass

    def upload(self, blob_name: str, data: bytes, content_type: Optional[str] = None) -> str:
        blob = self.container.get_blob_client(blob_name)
        settings = ContentSettings(content_type=content_type) if content_type else None
        blob.upload_blob(data, overwrite=True, content_settings=settings)
        return blob.url

    def download(self, blob_name: str) -> bytes:
        try:
            return self.container.get_blob_client(blob_name).download_blob().readall()
        except ResourceNotFoundError as exc:
            raise NotFoundError("File not found in storage", detail={"blob": blob_name}) from exc

    def delete(self, blob_name: str) -> bool:
        try:
            self.container.get_blob_client(blob_name).delete_blob()
        except ResourceNotFoundError:
            return False
        return True

    def exists(self, blob_name: str) -> bool:
        return self.container.get_blob_client(blob_name).exists()


class MemoryBlobStorage:
    """Process-local blob store used when no storage account is configured."""

    is_mock = True

    def __init__(self, container_name: str = "aiva-files") -> None:
        self.container_name = container_name
        self._blobs: Dict[str, Tuple[bytes, Optional[str]]] = {}
        self._lock = threading.Lock()

    def upload(self, blob_name: str, data: bytes, content_type: Optional[str] = None) -> str:
        with self._lock:
            self._blobs[blob_name] = (bytes(data), content_type)
        return f"memory://{self.container_name}/{blob_name}"

    def download(self, blob_name: str) -> bytes:
        with self._lock:
            entry = self._blobs.get(blob_name)
        if entry is None:
            raise NotFoundError("File not found in storage", detail={"blob": blob_name})
        return entry[0]

    def delete(self, blob_name: str) -> bool:
        with self._lock:
            return self._blobs.pop(blob_name, None) is not None

    def exists(self, blob_name: str) -> bool:
        with self._lock:
            return blob_name in self._blobs


def build_blob_storage(settings: Settings) -> BlobStorage:
    """Connect to Azure Blob Storage, falling back to the in-memory mock.

    A connection string wins over account name + key. Missing configuration
    or any failure while connecting yields ``MemoryBlobStorage``.
    """

    container = settings.azure_storage_container_name
    if not settings.azure_storage_connection_string and not settings.azure_storage_account_name:
        logger.warning("blob_storage_mock_enabled", reason="no_storage_account_configured")
        return MemoryBlobStorage(container)
    try:
        if settings.azure_storage_connection_string:
            client = BlobServiceClient.from_connection_string(
                settings.azure_storage_connection_string
            )
        else:
            if not settings.azure_storage_account_key:
                raise ValueError("AZURE_STORAGE_ACCOUNT_KEY is required with AZURE_STORAGE_ACCOUNT_NAME")
            client = BlobServiceClient(
                account_url=f"https://{settings.azure_storage_account_name}.blob.core.windows.net",
                credential={
                    "account_name": settings.azure_storage_account_name,
                    "account_key": settings.azure_storage_account_key,
                },
            )
        storage = AzureBlobStorage(client, container)
        logger.info("blob_storage_initialized", container=container)
        return storage
    except Exception as exc:
        logger.warning(
            "blob_storage_mock_enabled",
            reason="init_failed",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return MemoryBlobStorage(container)
