import base64
import binascii
import os
import secrets
import time
from typing import Iterable, List, Optional

import aiofiles
import aiofiles.os
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud, models, schemas
from .errors import BadRequest, NotFound, PayloadTooLarge
from .logging_config import get_logger
from .settings import settings

logger = get_logger(__name__)


def media_type_for(content_type: str) -> str:
    for prefix in ("image", "video", "audio"):
        if content_type.startswith(prefix + "/"):
            return prefix
    return "document"


def file_type_for(content_type: str) -> str:
    _, _, subtype = content_type.partition("/")
    return subtype or "unknown"


def _mib(size: int) -> str:
    return f"{size / (1024 * 1024):.1f}MB"


class FileStorage:
    """Keeps uploaded files as a database blob or, past a size threshold, on disk."""

    def __init__(self, upload_dir: Optional[str] = None, blob_limit: Optional[int] = None):
        self.upload_dir = upload_dir or settings.UPLOAD_DIR
        self.blob_limit = settings.DB_BLOB_LIMIT if blob_limit is None else blob_limit

    def _unique_filename(self, original_filename: str) -> str:
        _, extension = os.path.splitext(original_filename)
        return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}{extension}"

    async def save(
        self,
        db: AsyncSession,
        data: bytes,
        original_filename: str,
        content_type: str,
        declared_size: Optional[int] = None,
        uploader_id: Optional[int] = None,
    ) -> models.StoredFile:
        if declared_size is not None and declared_size != len(data):
            logger.warning(
                f"Declared size {declared_size} of {original_filename} does not match actual size {len(data)}"
            )

        filename = self._unique_filename(original_filename)
        db_file = models.StoredFile(
            filename=filename,
            original_filename=original_filename,
            content_type=content_type,
            size=len(data),
            media_type=media_type_for(content_type),
            file_type=file_type_for(content_type),
            uploader_id=uploader_id,
        )

        if len(data) > self.blob_limit:
            os.makedirs(self.upload_dir, exist_ok=True)
            file_path = os.path.join(self.upload_dir, filename)
            async with aiofiles.open(file_path, "wb") as buffer:
                await buffer.write(data)
            db_file.stored_in_filesystem = True
            db_file.file_path = file_path
            logger.info(f"Stored {original_filename} ({_mib(len(data))}) on disk at {file_path}")
        else:
            db_file.data = data
            logger.info(f"Stored {original_filename} ({_mib(len(data))}) in the database")

        db.add(db_file)
        await db.commit()
        await db.refresh(db_file)
        return db_file

    async def read(self, db_file: models.StoredFile) -> bytes:
        if not db_file.stored_in_filesystem:
            return db_file.data or b""
        try:
            async with aiofiles.open(db_file.file_path, "rb") as buffer:
                return await buffer.read()
        except FileNotFoundError:
            logger.error(f"File {db_file.id} is missing from disk at {db_file.file_path}")
            raise NotFound("File not found")

    async def delete(self, db: AsyncSession, db_file: models.StoredFile) -> None:
        if db_file.stored_in_filesystem and db_file.file_path:
            try:
                await aiofiles.os.remove(db_file.file_path)
            except FileNotFoundError:
                logger.warning(f"File {db_file.id} was already gone from {db_file.file_path}")
        await db.delete(db_file)
        await db.commit()
        logger.info(f"Deleted stored file {db_file.id} ({db_file.original_filename})")

    async def release(self, db: AsyncSession, file_ids: Iterable[int]) -> int:
        """Delete stored files no attachment refers to any more."""
        released = 0
        for file_id in set(file_ids):
            if await crud.is_file_referenced(db, file_id):
                continue
            db_file = await crud.get_stored_file(db, file_id)
            if db_file:
                await self.delete(db, db_file)
                released += 1
        return released


def decode_attachment(attachment: schemas.AttachmentIn) -> bytes:
    try:
        return base64.b64decode(attachment.data or "", validate=True)
    except (binascii.Error, ValueError):
        raise BadRequest(f"Attachment {attachment.filename} is not valid base64")


async def prepare_attachments(
    db: AsyncSession,
    attachments: List[schemas.AttachmentIn],
    uploader_id: int,
    storage: FileStorage,
) -> List[dict]:
    """Turn incoming attachments into Attachment column values.

    Small files stay inline on the message; anything above the inline limit
    is moved to file storage and kept as a reference.
    """
    prepared = []
    for attachment in attachments:
        if attachment.is_large_file and attachment.file_id is not None:
            db_file = await crud.get_stored_file(db, attachment.file_id)
            if not db_file:
                raise NotFound(f"File {attachment.file_id} not found")
            prepared.append({
                "filename": attachment.filename,
                "content_type": attachment.content_type,
                "file_type": attachment.file_type or db_file.file_type,
                "size": db_file.size,
                "file_id": db_file.id,
                "is_large_file": True,
            })
            continue

        data = decode_attachment(attachment)
        size = attachment.size or len(data)
        if size > settings.MAX_ATTACHMENT_SIZE:
            raise PayloadTooLarge(
                f"File {attachment.filename} exceeds the {settings.MAX_ATTACHMENT_SIZE // (1024 * 1024)}MB size limit"
            )
        if not data:
            raise BadRequest(f"Missing file data for {attachment.filename}")

        if size <= settings.INLINE_ATTACHMENT_LIMIT:
            prepared.append({
                "filename": attachment.filename,
                "content_type": attachment.content_type,
                "file_type": attachment.file_type or file_type_for(attachment.content_type),
                "size": size,
                "data": attachment.data,
                "is_large_file": False,
            })
            continue

        db_file = await storage.save(
            db, data, attachment.filename, attachment.content_type,
            declared_size=attachment.size, uploader_id=uploader_id,
        )
        prepared.append({
            "filename": attachment.filename,
            "content_type": attachment.content_type,
            "file_type": attachment.file_type or db_file.file_type,
            "size": db_file.size,
            "file_id": db_file.id,
            "is_large_file": True,
        })
    return prepared


file_storage = FileStorage()
