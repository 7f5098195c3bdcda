"""
Incoming attachment files and upload rules
"""

import os
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, List, Optional, Sequence

from fastapi import UploadFile

from app.core.config import settings
from app.core.errors import ValidationError

CHUNK_SIZE = 64 * 1024


@dataclass
class IncomingFile:
    """
    A file part of a send request.

    declared_size comes from the client and is only used for early rejection;
    the attachment store enforces the cap on the bytes it actually writes.
    """

    original_name: str
    mime_type: str
    declared_size: Optional[int]
    open_stream: Callable[[], AsyncIterator[bytes]] = field(repr=False)

    @classmethod
    def from_upload(cls, upload: UploadFile) -> "IncomingFile":
        async def stream() -> AsyncIterator[bytes]:
            await upload.seek(0)
            while True:
                chunk = await upload.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

        return cls(
            original_name=upload.filename or "file",
            mime_type=upload.content_type or "application/octet-stream",
            declared_size=upload.size,
            open_stream=stream,
        )

    @classmethod
    def from_bytes(cls, original_name: str, mime_type: str, data: bytes) -> "IncomingFile":
        async def stream() -> AsyncIterator[bytes]:
            for start in range(0, len(data), CHUNK_SIZE):
                yield data[start:start + CHUNK_SIZE]

        return cls(
            original_name=original_name,
            mime_type=mime_type,
            declared_size=len(data),
            open_stream=stream,
        )

    @property
    def extension(self) -> str:
        return os.path.splitext(self.original_name)[1].lower()

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


def validate_files(files: Sequence[IncomingFile]) -> None:
    """Reject the whole request if any file breaks the upload rules"""
    if len(files) > settings.chat_max_attachments:
        raise ValidationError(
            f"Too many files. Maximum {settings.chat_max_attachments} files allowed.",
            {"max_files": settings.chat_max_attachments, "received": len(files)},
        )

    for incoming in files:
        if incoming.declared_size is not None and incoming.declared_size > settings.chat_max_attachment_bytes:
            raise ValidationError(
                f"File '{incoming.original_name}' is too large. "
                f"Maximum size allowed is {settings.chat_max_attachment_bytes // (1024 * 1024)}MB.",
                {"file": incoming.original_name, "max_bytes": settings.chat_max_attachment_bytes},
            )
        if (
            incoming.mime_type not in settings.chat_allowed_mime_types
            or incoming.extension not in settings.chat_allowed_extensions
        ):
            raise ValidationError(
                "Invalid file type. Only images, documents, archives (ZIP, RAR, 7Z), "
                "and common file types are allowed.",
                {"file": incoming.original_name, "mime_type": incoming.mime_type},
            )


def message_type_for(files: List[IncomingFile]) -> str:
    if not files:
        return "text"
    return "image" if any(f.is_image for f in files) else "file"
