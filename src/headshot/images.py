"""Image handles: immutable references to encoded image bytes.

A handle points at a local file, a remote URL, or an in-memory buffer.
Handles are never mutated; cropping produces a new in-memory handle.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import mimetypes
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlparse

import httpx

from headshot.errors import ImageLoadError

if TYPE_CHECKING:
    import os

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/jpeg"
REMOTE_FETCH_TIMEOUT_SECONDS: float = 30.0


class HandleKind(StrEnum):
    FILE = "file"
    REMOTE = "remote"
    MEMORY = "memory"


@dataclass(frozen=True)
class UploadPayload:
    """Image content shaped for the remote image-storage endpoint."""

    file_name: str
    file_type: str
    file_content: str

    def as_json(self) -> dict[str, str]:
        return {
            "fileName": self.file_name,
            "fileType": self.file_type,
            "fileContent": self.file_content,
        }


@dataclass(frozen=True)
class ImageHandle:
    """Opaque reference to encoded image bytes."""

    uri: str
    data: bytes | None = field(default=None, repr=False, compare=False)
    mime_type: str = DEFAULT_MIME_TYPE

    # -- Constructors -------------------------------------------------------

    @classmethod
    def from_path(cls, path: str | os.PathLike[str]) -> ImageHandle:
        resolved = Path(path)
        guessed, _ = mimetypes.guess_type(resolved.name)
        uri = resolved.as_uri() if resolved.is_absolute() else str(resolved)
        return cls(uri=uri, mime_type=guessed or DEFAULT_MIME_TYPE)

    @classmethod
    def from_url(cls, url: str) -> ImageHandle:
        guessed, _ = mimetypes.guess_type(urlparse(url).path)
        return cls(uri=url, mime_type=guessed or DEFAULT_MIME_TYPE)

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str = DEFAULT_MIME_TYPE) -> ImageHandle:
        encoded = base64.b64encode(data).decode("ascii")
        return cls(uri=f"data:{mime_type};base64,{encoded}", data=data, mime_type=mime_type)

    @classmethod
    def from_data_uri(cls, uri: str) -> ImageHandle:
        """Parse a base64 ``data:`` URI (as produced by canvas/cropper exports)."""
        header, sep, payload = uri.partition(",")
        if not sep or not header.startswith("data:") or not header.endswith(";base64"):
            raise ImageLoadError("Not a base64 data URI")
        mime_type = header[len("data:") : -len(";base64")] or DEFAULT_MIME_TYPE
        try:
            data = base64.b64decode(payload, validate=True)
        except binascii.Error as exc:
            raise ImageLoadError("Malformed base64 image data") from exc
        return cls(uri=uri, data=data, mime_type=mime_type)

    # -- Inspection ---------------------------------------------------------

    @property
    def kind(self) -> HandleKind:
        if self.data is not None or self.uri.startswith("data:"):
            return HandleKind.MEMORY
        if self.uri.startswith(("http://", "https://")):
            return HandleKind.REMOTE
        return HandleKind.FILE

    @property
    def path(self) -> Path:
        if self.uri.startswith("file://"):
            return Path(unquote(urlparse(self.uri).path))
        return Path(self.uri)

    @property
    def extension(self) -> str:
        return self.mime_type.split("/")[-1].replace("jpeg", "jpg") or "jpg"

    # -- I/O ----------------------------------------------------------------

    async def read(self, client: httpx.AsyncClient | None = None) -> bytes:
        """Return the encoded image bytes.

        Raises:
            ImageLoadError: If the file or URL cannot be read.
        """
        kind = self.kind
        if kind is HandleKind.MEMORY:
            if self.data is not None:
                return self.data
            return ImageHandle.from_data_uri(self.uri).data or b""

        if kind is HandleKind.FILE:
            try:
                return await asyncio.to_thread(self.path.read_bytes)
            except OSError as exc:
                raise ImageLoadError(f"Cannot read image file {self.path}: {exc}") from exc

        try:
            if client is not None:
                response = await client.get(self.uri)
            else:
                async with httpx.AsyncClient(timeout=REMOTE_FETCH_TIMEOUT_SECONDS) as ac:
                    response = await ac.get(self.uri)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ImageLoadError(f"Cannot fetch image {self.uri}: {exc}") from exc
        return response.content

    async def to_upload_payload(self, client: httpx.AsyncClient | None = None) -> UploadPayload:
        """Encode the image as base64 with its MIME type and a filename."""
        if self.kind is HandleKind.MEMORY:
            handle = self if self.data is not None else ImageHandle.from_data_uri(self.uri)
            content = base64.b64encode(handle.data or b"").decode("ascii")
            return UploadPayload(f"upload.{handle.extension}", handle.mime_type, content)

        data = await self.read(client)
        logger.debug("Encoding %d bytes from %s for upload", len(data), self.kind)
        return UploadPayload(
            f"upload.{self.extension}",
            self.mime_type,
            base64.b64encode(data).decode("ascii"),
        )
