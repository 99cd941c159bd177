"""Image source adapter.

File-picker uploads (multipart ``UploadFile``) and drag-and-drop submissions
(raw request body) both end up here, so type filtering and byte reading
happen in exactly one place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from labelscope.errors import ReadError, UnsupportedTypeError

if TYPE_CHECKING:
    from fastapi import Request

logger = logging.getLogger(__name__)

IMAGE_TYPE_PREFIX = "image/"


class ImageSource(Protocol):
    """Anything that carries a declared MIME type and can be read to bytes."""

    @property
    def filename(self) -> str | None: ...

    @property
    def content_type(self) -> str | None: ...

    async def read(self) -> bytes: ...


@dataclass(frozen=True)
class RawImage:
    """Bytes of an accepted submission and the MIME type the client declared."""

    raw_bytes: bytes
    declared_type: str
    filename: str | None = None

    @property
    def size(self) -> int:
        return len(self.raw_bytes)


class RequestBodySource:
    """Expose a raw request body (drag-and-drop upload) as an ``ImageSource``."""

    def __init__(self, request: Request, filename: str | None = None) -> None:
        self._request = request
        self._filename = filename

    @property
    def filename(self) -> str | None:
        return self._filename

    @property
    def content_type(self) -> str | None:
        return self._request.headers.get("content-type")

    async def read(self) -> bytes:
        return await self._request.body()


def normalize_type(content_type: str | None) -> str:
    """Lower-case a MIME type and strip parameters such as ``; charset=``."""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def is_image_type(content_type: str | None) -> bool:
    return normalize_type(content_type).startswith(IMAGE_TYPE_PREFIX)


async def ingest(source: ImageSource, *, max_bytes: int) -> RawImage:
    """Validate the declared type of ``source`` and read its full content.

    Raises:
        UnsupportedTypeError: The declared type is not ``image/*``. Nothing is read.
        ReadError: Reading failed, the body was empty, or it exceeded ``max_bytes``.
    """
    declared_type = normalize_type(source.content_type)
    if not declared_type.startswith(IMAGE_TYPE_PREFIX):
        raise UnsupportedTypeError(f"declared type {source.content_type!r} is not an image")

    try:
        data = await source.read()
    except Exception as exc:
        logger.warning("Reading %s failed: %s: %s", source.filename or "<body>", type(exc).__name__, exc)
        raise ReadError(str(exc)) from exc

    if not data:
        raise ReadError("submitted file is empty")
    if len(data) > max_bytes:
        raise ReadError(f"submitted file is {len(data)} bytes, limit is {max_bytes}")

    return RawImage(raw_bytes=data, declared_type=declared_type, filename=source.filename)
