"""Request guards: API key authentication and upload size limits."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, UploadFile, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from headshot.config import Settings

_bearer_scheme = HTTPBearer(auto_error=False)

# Starlette renamed the 413 and 422 constants; the numbers are stable.
HTTP_413_TOO_LARGE = 413
HTTP_422_UNPROCESSABLE = 422


def get_settings_from_request(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Require 'Authorization: Bearer <key>' when HEADSHOT_API_KEY is set."""
    expected = get_settings_from_request(request).api_key
    if expected is None:
        return

    supplied = credentials.credentials if credentials is not None else ""
    if not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def read_limited_upload(request: Request, file: UploadFile) -> bytes:
    """Read an uploaded image, refusing anything over HEADSHOT_MAX_FILE_SIZE.

    Raises:
        HTTPException: 413 when the upload is too large, 422 when it is empty.
    """
    limit = get_settings_from_request(request).max_file_size
    if file.size is not None and file.size > limit:
        raise HTTPException(
            status_code=HTTP_413_TOO_LARGE,
            detail=f"Image exceeds {limit} bytes",
        )

    data = await file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(
            status_code=HTTP_413_TOO_LARGE,
            detail=f"Image exceeds {limit} bytes",
        )
    if not data:
        raise HTTPException(status_code=HTTP_422_UNPROCESSABLE, detail="Empty image upload")
    return data
