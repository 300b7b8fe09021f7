"""
Duplicate-face guard and enrollment of new people or extra face samples.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Collection, Optional

from sqlalchemy.exc import SQLAlchemyError

from database import DuplicateKeyError
from descriptor_store import DescriptorStore, Identity, SourceUnavailable
from matcher import Matcher, MatchResult

logger = logging.getLogger(__name__)


class EnrollmentGuard:
    """Rejects a face that already matches an enrolled person."""

    def __init__(self, matcher: Matcher):
        self.matcher = matcher

    def find_duplicate(self, candidate, threshold: float, allow: Collection[int] = ()) -> MatchResult:
        """
        Closest enrolled person within threshold of the candidate, or UNKNOWN.

        Args:
            candidate: Descriptor about to be enrolled
            threshold: Duplicate threshold (exclusive)
            allow: Identity ids the candidate may match, e.g. the person
                receiving an extra face sample
        """
        result = self.matcher.match(candidate, threshold, exclude=allow)
        if result.is_match:
            logger.info(
                "Duplicate face: matches %s at distance %.3f", result.identity.student_id, result.distance
            )
        return result

    def check_duplicate(self, candidate, threshold: float, allow: Collection[int] = ()) -> bool:
        """True iff the candidate is within threshold of an enrolled person outside `allow`."""
        return self.find_duplicate(candidate, threshold, allow).is_match


class EnrollmentStatus(str, enum.Enum):
    ENROLLED = "enrolled"
    NO_FACE_DETECTED = "no_face_detected"
    DUPLICATE_FACE = "duplicate_face"
    DUPLICATE_STUDENT_ID = "duplicate_student_id"
    UNKNOWN_IDENTITY = "unknown_identity"
    STORE_FAILURE = "store_failure"


@dataclass(frozen=True)
class EnrollmentOutcome:
    status: EnrollmentStatus
    identity: Optional[Identity] = None
    matched: Optional[Identity] = None


class Enrollment:
    """Writes new identities and face samples after the duplicate check passes."""

    def __init__(self, store, descriptors: DescriptorStore, guard: EnrollmentGuard):
        self.store = store
        self.descriptors = descriptors
        self.guard = guard

    def _duplicate_of(self, candidate, threshold: float, allow: Collection[int] = ()) -> Optional[Identity]:
        return self.guard.find_duplicate(candidate, threshold, allow).identity

    def _refresh(self):
        try:
            self.descriptors.refresh()
        except SourceUnavailable:
            # The write succeeded; the next refresh will pick it up.
            logger.warning("Descriptor cache is stale after enrollment")

    def register(self, student_id: str, name: str, major: Optional[str], descriptor,
                 threshold: float, image: Optional[bytes] = None) -> EnrollmentOutcome:
        """Enroll a new person with their first face sample."""
        matched = self._duplicate_of(descriptor, threshold)
        if matched is not None:
            return EnrollmentOutcome(EnrollmentStatus.DUPLICATE_FACE, matched=matched)

        try:
            identity = self.store.insert_identity_with_descriptor(student_id, name, major, descriptor, image)
        except DuplicateKeyError:
            logger.info("Student id %s already enrolled", student_id)
            return EnrollmentOutcome(EnrollmentStatus.DUPLICATE_STUDENT_ID)
        except SQLAlchemyError:
            logger.exception("Failed to enroll %s", student_id)
            return EnrollmentOutcome(EnrollmentStatus.STORE_FAILURE)

        self._refresh()
        logger.info("Enrolled %s (%s)", identity.name, identity.student_id)
        return EnrollmentOutcome(EnrollmentStatus.ENROLLED, identity=identity)

    def add_face(self, person_id: int, descriptor, threshold: float,
                 image: Optional[bytes] = None) -> EnrollmentOutcome:
        """Attach another face sample to an existing person."""
        try:
            identity = self.store.get_identity(person_id)
        except SQLAlchemyError:
            logger.exception("Failed to load person %s", person_id)
            return EnrollmentOutcome(EnrollmentStatus.STORE_FAILURE)
        if identity is None:
            return EnrollmentOutcome(EnrollmentStatus.UNKNOWN_IDENTITY)

        matched = self._duplicate_of(descriptor, threshold, allow=(identity.id,))
        if matched is not None:
            return EnrollmentOutcome(EnrollmentStatus.DUPLICATE_FACE, identity=identity, matched=matched)

        try:
            self.store.insert_descriptor(identity, descriptor, image)
        except SQLAlchemyError:
            logger.exception("Failed to store face sample for %s", identity.student_id)
            return EnrollmentOutcome(EnrollmentStatus.STORE_FAILURE, identity=identity)

        self._refresh()
        logger.info("Added face sample for %s", identity.student_id)
        return EnrollmentOutcome(EnrollmentStatus.ENROLLED, identity=identity)
