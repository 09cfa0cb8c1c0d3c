"""Client for the remote contacts API: image storage and contact creation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from headshot.categories import DEFAULT_CATEGORY, map_category_from_api, map_category_to_api
from headshot.errors import ContactCreationError, ContactsApiError, UploadError

if TYPE_CHECKING:
    from headshot.config import Settings
    from headshot.images import ImageHandle

logger = logging.getLogger(__name__)


@dataclass
class ContactDraft:
    """Form state for one contact, owned by the active workflow."""

    name: str = ""
    hint: str | None = None
    summary: str | None = None
    category: str = DEFAULT_CATEGORY
    tags: list[str] = field(default_factory=list)
    photo: ImageHandle | None = None


@dataclass(frozen=True)
class CreatedContact:
    """Acknowledgment returned by the contact-creation endpoint."""

    id: str | None
    name: str
    category: str
    photo: str | None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


class ContactsClient:
    """Async client for the ``/upload`` and ``/contacts`` endpoints."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        upload_timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._upload_timeout = upload_timeout
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> ContactsClient:
        return cls(
            settings.contacts_api_url,
            token=settings.contacts_api_token,
            timeout=settings.request_timeout,
            upload_timeout=settings.upload_timeout,
        )

    async def upload_image(self, image: ImageHandle) -> str:
        """Store an image remotely and return its durable URL.

        Raises:
            UploadError: If the request fails or no URL comes back.
        """
        payload = await image.to_upload_payload()
        data = await self._post("/upload", payload.as_json(), UploadError, timeout=self._upload_timeout)
        url = data.get("url") if isinstance(data, dict) else None
        if not url:
            raise UploadError("No URL returned from server")
        logger.info("Uploaded %s (%s)", payload.file_name, payload.file_type)
        return str(url)

    async def create_contact(self, draft: ContactDraft, photo_url: str | None = None) -> CreatedContact:
        """Create a contact from a draft.

        ``photo_url`` overrides the draft's photo; otherwise a remote photo
        handle is sent as-is and any other photo is omitted.

        Raises:
            ContactCreationError: If the server rejects the contact.
        """
        name = draft.name.strip()
        if not name:
            raise ContactCreationError("Contact name is required", status=None)

        photo = photo_url
        if photo is None and draft.photo is not None and draft.photo.uri.startswith(("http://", "https://")):
            photo = draft.photo.uri

        body: dict[str, Any] = {
            "name": name,
            "category": map_category_to_api(draft.category),
            "groups": list(draft.tags),
        }
        if draft.hint:
            body["hint"] = draft.hint
        if draft.summary:
            body["summary"] = draft.summary
        if photo:
            body["photo"] = photo

        data = await self._post("/contacts", body, ContactCreationError)
        if not isinstance(data, dict):
            data = {}
        logger.info("Created contact %r", name)
        return CreatedContact(
            id=data.get("_id") or data.get("id"),
            name=data.get("name", name),
            category=map_category_from_api(data.get("category", body["category"])),
            photo=data.get("photo", photo),
            raw=data,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> ContactsClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _post(
        self,
        path: str,
        body: dict[str, Any],
        error_cls: type[ContactsApiError],
        timeout: float | None = None,
    ) -> Any:
        try:
            if timeout is None:
                response = await self._client.post(path, json=body)
            else:
                response = await self._client.post(path, json=body, timeout=timeout)
        except httpx.HTTPError as exc:
            logger.warning("POST %s failed: %s", path, exc)
            raise error_cls("Network error. Please check your connection and try again.") from exc

        if response.is_error:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            error = ContactsApiError.from_response(response.status_code, payload)
            logger.warning("POST %s returned %s: %s", path, response.status_code, error.message)
            raise error_cls(error.message, status=response.status_code)

        try:
            return response.json()
        except ValueError:
            return None
