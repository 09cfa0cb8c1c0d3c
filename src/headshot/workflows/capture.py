"""Single-contact capture: upload -> detect -> select or crop -> attach to draft.

Steps::

    details -> detecting -> face_selection -> details
                        `-> crop -----------> details
    face_selection -> crop

``details`` is where the user starts and where every branch ends, whether it
completed, was cancelled, or failed. Nothing touches the draft until a face
is chosen or a manual crop confirmed.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import TYPE_CHECKING

from headshot.contacts import ContactDraft
from headshot.errors import HeadshotError, InvalidImageError, WorkflowStateError
from headshot.images import HandleKind
from headshot.workflows.faces import detect_candidates
from headshot.workflows.lifecycle import WorkflowLifecycle

if TYPE_CHECKING:
    from headshot.contacts import ContactsClient, CreatedContact
    from headshot.images import ImageHandle
    from headshot.regions import Bounds
    from headshot.workflows.faces import Cropper, FaceCandidate, FaceLocator

logger = logging.getLogger(__name__)

DETECTION_FAILED_MESSAGE = "Failed to detect faces. Please try again."
INVALID_IMAGE_MESSAGE = "This image could not be cropped. Please choose another photo."
CROP_FAILED_MESSAGE = "Cropping failed. Please try again."
NAME_REQUIRED_MESSAGE = "Please enter a name."


class CaptureStep(StrEnum):
    DETAILS = "details"
    DETECTING = "detecting"
    FACE_SELECTION = "face_selection"
    CROP = "crop"


class CaptureWorkflow:
    """State machine behind the add/edit contact photo flow."""

    def __init__(self, locator: FaceLocator, cropper: Cropper, draft: ContactDraft | None = None) -> None:
        self._locator = locator
        self._cropper = cropper
        self._lifecycle = WorkflowLifecycle()

        self.step = CaptureStep.DETAILS
        self.draft = draft if draft is not None else ContactDraft()
        self.source: ImageHandle | None = None
        self.candidates: list[FaceCandidate] = []
        self.error: str | None = None
        self.is_saving = False

    @property
    def alive(self) -> bool:
        return self._lifecycle.alive

    # -- Transitions --------------------------------------------------------

    async def select_image(self, image: ImageHandle) -> CaptureStep:
        """Start detection on a newly picked image."""
        self._require(CaptureStep.DETAILS)
        ticket = self._lifecycle.begin()
        self.source = image
        self.candidates = []
        self.error = None
        self.step = CaptureStep.DETECTING

        try:
            candidates = await detect_candidates(self._locator, self._cropper, image)
        except (HeadshotError, TimeoutError) as exc:
            if self._lifecycle.accept(ticket, "detection"):
                logger.warning("Face detection failed: %s", exc)
                self._return_to_details(DETECTION_FAILED_MESSAGE)
            return self.step

        if not self._lifecycle.accept(ticket, "detection"):
            return self.step

        if candidates:
            self.candidates = candidates
            self.step = CaptureStep.FACE_SELECTION
        else:
            self.step = CaptureStep.CROP
        return self.step

    def cancel_detection(self) -> None:
        """Abandon an in-flight detection; its result will be ignored."""
        self._require(CaptureStep.DETECTING)
        self._lifecycle.begin()
        self._return_to_details()

    def choose_face(self, face_id: str) -> ImageHandle:
        """Use one of the suggested headshots as the contact photo."""
        self._require(CaptureStep.FACE_SELECTION)
        for candidate in self.candidates:
            if candidate.id == face_id:
                self.draft.photo = candidate.headshot
                self._return_to_details()
                return candidate.headshot
        raise WorkflowStateError(f"No suggested face with id {face_id!r}")

    def crop_manually(self) -> None:
        """Skip the suggestions and draw the region by hand."""
        self._require(CaptureStep.FACE_SELECTION)
        self.candidates = []
        self.step = CaptureStep.CROP

    async def confirm_crop(self, bounds: Bounds) -> ImageHandle | None:
        """Crop the user-drawn region and attach it to the draft."""
        self._require(CaptureStep.CROP)
        source = self.source
        if source is None:
            raise WorkflowStateError("No image to crop")
        ticket = self._lifecycle.begin()

        try:
            headshot = await self._cropper.crop_manual(source, bounds)
        except InvalidImageError as exc:
            if self._lifecycle.accept(ticket, "crop"):
                logger.warning("Rejected manual crop %s: %s", bounds, exc)
                self._return_to_details(INVALID_IMAGE_MESSAGE)
            return None
        except (HeadshotError, TimeoutError) as exc:
            if self._lifecycle.accept(ticket, "crop"):
                logger.warning("Manual crop failed: %s", exc)
                self._return_to_details(CROP_FAILED_MESSAGE)
            return None

        if not self._lifecycle.accept(ticket, "crop"):
            return None
        self.draft.photo = headshot
        self._return_to_details()
        return headshot

    def cancel_crop(self) -> None:
        """Leave manual cropping; the uploaded image is discarded."""
        self._require(CaptureStep.CROP)
        self._lifecycle.begin()
        self.draft.photo = None
        self._return_to_details()

    def clear_photo(self) -> None:
        self._require(CaptureStep.DETAILS)
        self.draft.photo = None

    async def save(self, client: ContactsClient) -> CreatedContact | None:
        """Upload the photo (if any) and create the contact.

        On success the draft is discarded and a fresh one takes its place.
        On failure the draft is kept and ``error`` explains what went wrong.
        """
        self._require(CaptureStep.DETAILS)
        if not self.draft.name.strip():
            self.error = NAME_REQUIRED_MESSAGE
            return None

        draft = self.draft
        self.error = None
        self.is_saving = True
        try:
            photo_url = None
            if draft.photo is not None and draft.photo.kind is not HandleKind.REMOTE:
                photo_url = await client.upload_image(draft.photo)
            created = await client.create_contact(draft, photo_url)
        except HeadshotError as exc:
            logger.warning("Saving contact %r failed: %s", draft.name, exc)
            if self._lifecycle.alive:
                self.error = str(exc)
            return None
        finally:
            self.is_saving = False

        if self._lifecycle.alive:
            self.draft = ContactDraft()
        return created

    def close(self) -> None:
        """The driving view went away; late results will be dropped."""
        self._lifecycle.close()

    # -- Internal -----------------------------------------------------------

    def _require(self, *steps: CaptureStep) -> None:
        if not self._lifecycle.alive:
            raise WorkflowStateError("Workflow is closed")
        if self.is_saving:
            raise WorkflowStateError("A save is already in progress")
        if self.step not in steps:
            raise WorkflowStateError(f"Action not available in step {self.step}")

    def _return_to_details(self, error: str | None = None) -> None:
        self.source = None
        self.candidates = []
        self.error = error
        self.step = CaptureStep.DETAILS
