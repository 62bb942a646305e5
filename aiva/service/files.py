from __future__ import annotations

import asyncio
import mimetypes
import uuid
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional, Sequence, Tuple

from aiva.logging import get_logger
from aiva.service.blob import BlobStorage
from aiva.service.chat import is_uuid
from aiva.service.errors import BadRequestError, NotFoundError, PayloadTooLargeError
from aiva.service.file_analysis import FileAnalysisService
from aiva.storage.memory import MemoryStore
from aiva.storage.models import StoredFile
from aiva.storage.postgres import PostgresStore

logger = get_logger(__name__)

MAX_COMPARE_FILES = 5


def blob_name_for_upload(original_name: str) -> str:
    """Random flat blob key that keeps the original extension."""
    suffix = PurePosixPath(original_name or "").suffix.lower()
    return f"{uuid.uuid4()}{suffix}"


class FileService:
    """Uploaded attachments: blob bytes plus a metadata row per file."""

    def __init__(
        self,
        store: PostgresStore | MemoryStore,
        blob: BlobStorage,
        analysis: FileAnalysisService,
        *,
        max_upload_bytes: int,
    ) -> None:
        self.store = store
        self.blob = blob
        self.analysis = analysis
        self.max_upload_bytes = max_upload_bytes

    async def upload(
        self,
        user_id: str,
        original_name: str,
        data: bytes,
        *,
        content_type: Optional[str] = None,
        chat_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> StoredFile:
        if not original_name:
            raise BadRequestError("No file uploaded")
        if len(data) > self.max_upload_bytes:
            raise PayloadTooLargeError(
                "File too large",
                detail={"maxBytes": self.max_upload_bytes, "size": len(data)},
            )
        if chat_id and (not is_uuid(chat_id) or not self.store.get_chat(chat_id, user_id=user_id)):
            raise NotFoundError("Chat not found or access denied", detail={"chatId": chat_id})
        mime_type = (
            content_type
            or mimetypes.guess_type(original_name)[0]
            or "application/octet-stream"
        )
        blob_name = blob_name_for_upload(original_name)
        url = await asyncio.to_thread(self.blob.upload, blob_name, data, mime_type)
        stored = self.store.create_file(
            user_id,
            original_name,
            blob_name,
            mime_type=mime_type,
            size=len(data),
            url=url,
            chat_id=chat_id,
            message_id=message_id,
        )
        logger.info(
            "file_uploaded",
            file_id=stored.id,
            user_id=user_id,
            size=stored.size,
            mock_storage=self.blob.is_mock,
        )
        return stored

    def list_files(self, user_id: str, *, chat_id: Optional[str] = None) -> List[StoredFile]:
        return self.store.list_files(user_id, chat_id=chat_id)

    def get_file(self, file_id: str, user_id: str) -> StoredFile:
        stored = self.store.get_file(file_id, user_id=user_id) if is_uuid(file_id) else None
        if not stored:
            raise NotFoundError("File not found", detail={"fileId": file_id})
        return stored

    async def download(self, file_id: str, user_id: str) -> Tuple[StoredFile, bytes]:
        stored = self.get_file(file_id, user_id)
        return stored, await asyncio.to_thread(self.blob.download, stored.file_name)

    async def delete(self, file_id: str, user_id: str) -> None:
        stored = self.get_file(file_id, user_id)
        if not await asyncio.to_thread(self.blob.delete, stored.file_name):
            logger.warning("file_blob_missing_on_delete", file_id=file_id, blob=stored.file_name)
        self.store.delete_file(file_id, user_id)
        logger.info("file_deleted", file_id=file_id, user_id=user_id)

    async def analyze(self, file_id: str, user_id: str) -> Dict[str, Any]:
        stored = self.get_file(file_id, user_id)
        content = await self.analysis.read_text(stored.file_name)
        return await self.analysis.analyze_file(
            content,
            stored.original_name,
            file_size=len(content),
            file_type=stored.mime_type,
        )

    async def compare(self, file_ids: Sequence[str], user_id: str) -> Dict[str, Any]:
        if len(file_ids) < 2:
            raise BadRequestError("At least two files are required for comparison")
        if len(file_ids) > MAX_COMPARE_FILES:
            raise BadRequestError(
                f"At most {MAX_COMPARE_FILES} files can be compared at once",
                detail={"count": len(file_ids)},
            )
        analyses = [await self.analyze(file_id, user_id) for file_id in file_ids]
        return await self.analysis.compare_files(analyses)

    async def extract(self, file_id: str, user_id: str, prompt: str) -> str:
        if not prompt or not prompt.strip():
            raise BadRequestError("Extraction prompt is required")
        stored = self.get_file(file_id, user_id)
        content = await self.analysis.read_text(stored.file_name)
        return await self.analysis.extract_information(content, prompt.strip())
