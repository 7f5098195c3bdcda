"""
Attachment storage

Local filesystem blob store for chat attachments. Files are written under
a storage-internal unique name; the user-supplied name is kept only as metadata.
"""

import logging
import os
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Optional, Union

from starlette.concurrency import run_in_threadpool

from app.core.config import settings
from app.core.errors import NotFoundError, StorageFailure, ValidationError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class AttachmentTooLarge(ValidationError):
    code = "attachment_too_large"


@dataclass(frozen=True)
class StoredBlob:
    file_name: str
    file_size: int


class LocalAttachmentStore:
    """Stores attachment byte streams on local disk"""

    def __init__(self, root: Union[str, Path], max_bytes: Optional[int] = None):
        self.root = Path(root)
        self.max_bytes = max_bytes if max_bytes is not None else settings.chat_max_attachment_bytes

    def _new_name(self, original_name: str) -> str:
        ext = os.path.splitext(original_name)[1].lower()
        return f"chat_{int(time.time() * 1000)}_{uuid.uuid4().hex}{ext}"

    def path_for(self, file_name: str) -> Path:
        # Stored names never contain separators; anything else is not ours
        if not file_name or file_name != os.path.basename(file_name) or file_name.startswith("."):
            raise NotFoundError("Attachment not found", {"file_name": file_name})
        return self.root / file_name

    async def put(self, stream: AsyncIterator[bytes], mime_type: str, original_name: str = "") -> StoredBlob:
        """
        Write a byte stream to the store.

        The size cap is enforced on the bytes actually written, not the
        declared size. A partially written file is removed on any failure.
        """
        file_name = self._new_name(original_name)
        path = self.root / file_name
        size = 0

        try:
            await run_in_threadpool(self.root.mkdir, parents=True, exist_ok=True)
            fh: BinaryIO = await run_in_threadpool(open, path, "wb")
        except OSError as e:
            logger.exception(f"Cannot open attachment file {path}")
            raise StorageFailure(details={"file": original_name}) from e

        try:
            async for chunk in stream:
                size += len(chunk)
                if size > self.max_bytes:
                    raise AttachmentTooLarge(
                        f"File '{original_name}' exceeds the {self.max_bytes} byte limit",
                        {"file": original_name, "max_bytes": self.max_bytes},
                    )
                await run_in_threadpool(fh.write, chunk)
        except OSError as e:
            await self._discard(fh, path)
            logger.exception(f"Failed writing attachment {file_name} ({mime_type})")
            raise StorageFailure(details={"file": original_name}) from e
        except BaseException:
            await self._discard(fh, path)
            raise

        await run_in_threadpool(fh.close)
        logger.debug(f"Stored attachment {file_name} ({size} bytes, {mime_type})")
        return StoredBlob(file_name=file_name, file_size=size)

    async def get(self, file_name: str) -> AsyncIterator[bytes]:
        """Return a byte stream for a stored file"""
        path = self.path_for(file_name)
        if not await run_in_threadpool(path.is_file):
            raise NotFoundError("File not found on server", {"file_name": file_name})
        return self._iter_file(path)

    async def read_bytes(self, file_name: str) -> bytes:
        chunks = [chunk async for chunk in await self.get(file_name)]
        return b"".join(chunks)

    async def delete(self, file_name: str) -> bool:
        path = self.path_for(file_name)
        try:
            await run_in_threadpool(path.unlink)
            return True
        except FileNotFoundError:
            return False
        except OSError:
            logger.warning(f"Could not delete attachment {file_name}", exc_info=True)
            return False

    async def _iter_file(self, path: Path) -> AsyncIterator[bytes]:
        fh = await run_in_threadpool(open, path, "rb")
        try:
            while True:
                chunk = await run_in_threadpool(fh.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            await run_in_threadpool(fh.close)

    async def _discard(self, fh: BinaryIO, path: Path) -> None:
        await run_in_threadpool(fh.close)
        try:
            await run_in_threadpool(path.unlink)
        except OSError:
            logger.warning(f"Could not remove partial attachment {path}")
