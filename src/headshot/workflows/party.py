"""Party mode: name many faces from one photo and save them as separate contacts.

Steps::

    upload -> detecting -> naming -> category -> (commit)
    upload -> detecting -> crop -> naming        (no faces found)

The commit writes one contact per named face, strictly one after another.
Earlier successes are never rolled back when a later item fails. A face
that was saved once is remembered and skipped when the user retries, so a
retry after a partial failure cannot create duplicates.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from headshot.categories import DEFAULT_CATEGORY, is_known_category
from headshot.contacts import ContactDraft
from headshot.errors import HeadshotError, InvalidImageError, WorkflowStateError
from headshot.workflows.faces import FaceCandidate, detect_candidates
from headshot.workflows.lifecycle import WorkflowLifecycle

if TYPE_CHECKING:
    from headshot.contacts import ContactsClient
    from headshot.images import ImageHandle
    from headshot.regions import Bounds
    from headshot.workflows.faces import Cropper, FaceLocator

logger = logging.getLogger(__name__)

LISTING_SCREEN = "Listing"
DETECTION_FAILED_MESSAGE = "Failed to detect faces. Please try again."
INVALID_IMAGE_MESSAGE = "This image could not be cropped. Please choose another photo."
CROP_FAILED_MESSAGE = "Cropping failed. Please try again."
NO_NAMES_MESSAGE = "Please add at least one name before saving."
TOTAL_FAILURE_MESSAGE = "Failed to save contacts. Please check your connection and try again."


class PartyStep(StrEnum):
    UPLOAD = "upload"
    DETECTING = "detecting"
    CROP = "crop"
    NAMING = "naming"
    CATEGORY = "category"


@dataclass(frozen=True)
class NamedFace:
    id: str
    name: str
    face_uri: ImageHandle


@dataclass(frozen=True)
class BatchOutcome:
    name: str
    succeeded: bool
    face_id: str = ""


@dataclass(frozen=True)
class NavigationTarget:
    screen: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CommitReport:
    """What one press of "save" achieved."""

    outcomes: list[BatchOutcome]
    error: str | None = None
    navigation: NavigationTarget | None = None

    @property
    def saved_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)

    @property
    def failed_names(self) -> list[str]:
        return [outcome.name for outcome in self.outcomes if not outcome.succeeded]

    @property
    def all_succeeded(self) -> bool:
        return bool(self.outcomes) and not self.failed_names


Navigator = Callable[[NavigationTarget], object]


class PartyWorkflow:
    """State machine behind party mode."""

    def __init__(
        self,
        locator: FaceLocator,
        cropper: Cropper,
        client: ContactsClient,
        navigator: Navigator | None = None,
    ) -> None:
        self._locator = locator
        self._cropper = cropper
        self._client = client
        self._navigator = navigator
        self._lifecycle = WorkflowLifecycle()
        self._names: dict[str, str] = {}
        self._committed: set[str] = set()

        self.step = PartyStep.UPLOAD
        self.source: ImageHandle | None = None
        self.faces: list[FaceCandidate] = []
        self.category = DEFAULT_CATEGORY
        self.tags: list[str] = []
        self.error: str | None = None
        self.is_saving = False

    @property
    def alive(self) -> bool:
        return self._lifecycle.alive

    # -- Upload & detection -------------------------------------------------

    async def select_image(self, image: ImageHandle) -> PartyStep:
        self._require(PartyStep.UPLOAD)
        ticket = self._lifecycle.begin()
        self._reset_batch()
        self.source = image
        self.step = PartyStep.DETECTING

        try:
            faces = await detect_candidates(self._locator, self._cropper, image)
        except (HeadshotError, TimeoutError) as exc:
            if self._lifecycle.accept(ticket, "detection"):
                logger.error("Error during face detection: %s", exc)
                self._return_to_upload(DETECTION_FAILED_MESSAGE)
            return self.step

        if not self._lifecycle.accept(ticket, "detection"):
            return self.step

        if faces:
            self.faces = faces
            self.step = PartyStep.NAMING
        else:
            self.step = PartyStep.CROP
        return self.step

    async def confirm_crop(self, bounds: Bounds) -> PartyStep:
        """Turn the hand-drawn region into the single face to name."""
        self._require(PartyStep.CROP)
        source = self.source
        if source is None:
            raise WorkflowStateError("No image to crop")
        ticket = self._lifecycle.begin()

        try:
            headshot = await self._cropper.crop_manual(source, bounds)
        except InvalidImageError as exc:
            if self._lifecycle.accept(ticket, "crop"):
                logger.warning("Rejected manual crop %s: %s", bounds, exc)
                self._return_to_upload(INVALID_IMAGE_MESSAGE)
            return self.step
        except (HeadshotError, TimeoutError) as exc:
            if self._lifecycle.accept(ticket, "crop"):
                logger.warning("Manual crop failed: %s", exc)
                self._return_to_upload(CROP_FAILED_MESSAGE)
            return self.step

        if self._lifecycle.accept(ticket, "crop"):
            self.faces = [FaceCandidate(id="face-0", headshot=headshot)]
            self.step = PartyStep.NAMING
        return self.step

    def cancel_crop(self) -> None:
        self._require(PartyStep.CROP)
        self._lifecycle.begin()
        self._return_to_upload()

    # -- Naming -------------------------------------------------------------

    def set_name(self, face_id: str, name: str) -> list[NamedFace]:
        """Record the name typed for a face; returns the faces named so far."""
        self._require(PartyStep.NAMING)
        if not any(face.id == face_id for face in self.faces):
            raise WorkflowStateError(f"No face with id {face_id!r}")
        self._names[face_id] = name
        return self.named_faces

    @property
    def named_faces(self) -> list[NamedFace]:
        """Faces with a non-blank name, in display order."""
        return [
            NamedFace(id=face.id, name=self._names[face.id], face_uri=face.headshot)
            for face in self.faces
            if self._names.get(face.id, "").strip()
        ]

    @property
    def can_continue(self) -> bool:
        return bool(self.named_faces)

    def continue_to_category(self) -> None:
        self._require(PartyStep.NAMING)
        if not self.can_continue:
            raise WorkflowStateError("Name at least one face first")
        self.step = PartyStep.CATEGORY

    def back_to_naming(self) -> None:
        self._require(PartyStep.CATEGORY)
        self.step = PartyStep.NAMING

    def back_to_upload(self) -> None:
        """Throw away the photo, its faces, and all names."""
        self._require(PartyStep.NAMING)
        self._lifecycle.begin()
        self._return_to_upload()

    # -- Category & commit --------------------------------------------------

    def set_category(self, category: str) -> None:
        self._require(PartyStep.CATEGORY)
        if not is_known_category(category):
            raise ValueError(f"Unknown category: {category}")
        self.category = category

    def set_tags(self, tags: list[str]) -> None:
        self._require(PartyStep.CATEGORY)
        self.tags = list(tags)

    async def save(self) -> CommitReport:
        """Create one contact per named face, sequentially.

        Navigation happens only when every named face is saved. Otherwise the
        user stays here with an error naming the failures and can retry;
        faces saved by an earlier attempt are not sent again.
        """
        self._require(PartyStep.CATEGORY)
        named = self.named_faces
        if not named:
            self.error = NO_NAMES_MESSAGE
            return CommitReport(outcomes=[], error=NO_NAMES_MESSAGE)

        self.is_saving = True
        self.error = None
        category, tags = self.category, list(self.tags)

        outcomes: list[BatchOutcome] = []
        try:
            for face in named:
                if face.id in self._committed:
                    logger.info("Skipping %r; saved by an earlier attempt", face.name)
                    outcomes.append(BatchOutcome(name=face.name, succeeded=True, face_id=face.id))
                    continue
                try:
                    photo_url = await self._client.upload_image(face.face_uri)
                    draft = ContactDraft(name=face.name.strip(), category=category, tags=list(tags))
                    await self._client.create_contact(draft, photo_url)
                except HeadshotError as exc:
                    logger.error("Failed to save contact %r: %s", face.name, exc)
                    outcomes.append(BatchOutcome(name=face.name, succeeded=False, face_id=face.id))
                    continue
                self._committed.add(face.id)
                outcomes.append(BatchOutcome(name=face.name, succeeded=True, face_id=face.id))
        finally:
            self.is_saving = False

        report = self._summarize(outcomes, category, tags)
        if not self._lifecycle.alive:
            logger.info("Party mode closed during save; %d of %d saved", report.saved_count, len(outcomes))
            return report

        self.error = report.error
        if report.navigation is not None:
            logger.info("Saved %d contacts", report.saved_count)
            if self._navigator is not None:
                self._navigator(report.navigation)
        return report

    def dismiss_error(self) -> None:
        self.error = None

    def close(self) -> None:
        self._lifecycle.close()

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _summarize(outcomes: list[BatchOutcome], category: str, tags: list[str]) -> CommitReport:
        failed = [outcome.name for outcome in outcomes if not outcome.succeeded]
        saved = len(outcomes) - len(failed)
        if not failed:
            target = NavigationTarget(screen=LISTING_SCREEN, params={"category": category, "tags": tags})
            return CommitReport(outcomes=outcomes, navigation=target)
        if saved > 0:
            message = f"{saved} contacts saved. Failed: {', '.join(failed)}. Tap Save to retry."
            return CommitReport(outcomes=outcomes, error=message)
        return CommitReport(outcomes=outcomes, error=TOTAL_FAILURE_MESSAGE)

    def _require(self, *steps: PartyStep) -> None:
        if not self._lifecycle.alive:
            raise WorkflowStateError("Workflow is closed")
        if self.is_saving:
            raise WorkflowStateError("A save is already in progress")
        if self.step not in steps:
            raise WorkflowStateError(f"Action not available in step {self.step}")

    def _reset_batch(self) -> None:
        self.faces = []
        self._names = {}
        self._committed = set()
        self.error = None

    def _return_to_upload(self, error: str | None = None) -> None:
        self._reset_batch()
        self.source = None
        self.error = error
        self.step = PartyStep.UPLOAD
