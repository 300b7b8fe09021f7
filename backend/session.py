"""
Attendance session: the single context object passed to every capture action.

Owns the descriptor cache, the matching components, the configured thresholds
and the current registration mode.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Optional

import config
from attendance import (
    AttendanceAuthorizer,
    AttendanceLedger,
    AttendanceStatus,
    Authorization,
    AuthorizationOutcome,
    RecordOutcome,
    StatusClassifier,
)
from descriptor_store import DescriptorStore
from enrollment import Enrollment, EnrollmentGuard, EnrollmentOutcome, EnrollmentStatus
from matcher import Matcher, validate_descriptor
from recognition import encode_jpeg

logger = logging.getLogger(__name__)


class RegistrationMode(str, enum.Enum):
    REGISTER = "register"
    ADD_FACE = "add_face"


@dataclass(frozen=True)
class AttendanceResult:
    authorization: AuthorizationOutcome
    timestamp: Optional[datetime] = None
    status: Optional[AttendanceStatus] = None
    outcome: Optional[RecordOutcome] = None


class AttendanceSession:
    def __init__(
        self,
        store,
        detector=None,
        recognition_threshold: float = config.RECOGNITION_THRESHOLD,
        duplicate_threshold: float = config.DUPLICATE_THRESHOLD,
        cutoff: time = config.ATTENDANCE_CUTOFF,
        tz: str = config.DISPLAY_TIMEZONE,
        dimension: Optional[int] = None,
    ):
        """
        Args:
            store: Record store (see database.RecordStore)
            detector: Object with detect(image) -> descriptor | None
            dimension: Expected descriptor length; defaults to the cached descriptors' length
        """
        self.store = store
        self.detector = detector
        self.recognition_threshold = recognition_threshold
        self.duplicate_threshold = duplicate_threshold
        self.dimension = dimension
        self.mode = RegistrationMode.REGISTER

        self.descriptors = DescriptorStore(store)
        self.matcher = Matcher(self.descriptors)
        self.guard = EnrollmentGuard(self.matcher)
        self.enrollment = Enrollment(store, self.descriptors, self.guard)
        self.authorizer = AttendanceAuthorizer(self.matcher)
        self.classifier = StatusClassifier(cutoff, tz)
        self.ledger = AttendanceLedger(store, self.classifier)

    def refresh(self) -> int:
        return self.descriptors.refresh()

    def set_mode(self, mode: RegistrationMode):
        self.mode = RegistrationMode(mode)

    def _validate(self, descriptor):
        dimension = self.dimension if self.dimension is not None else self.descriptors.dimension
        return validate_descriptor(descriptor, dimension)

    def detect(self, image):
        """Run the detection capability. Returns a validated descriptor or None."""
        if self.detector is None:
            raise RuntimeError("No detector configured")
        descriptor = self.detector.detect(image)
        if descriptor is None:
            return None
        return self._validate(descriptor)

    # Enrollment

    def register_descriptor(self, descriptor, student_id: str, name: str, major: Optional[str] = None,
                            image: Optional[bytes] = None) -> EnrollmentOutcome:
        return self.enrollment.register(
            student_id, name, major, self._validate(descriptor), self.duplicate_threshold, image
        )

    def add_face_descriptor(self, descriptor, person_id: int, image: Optional[bytes] = None) -> EnrollmentOutcome:
        return self.enrollment.add_face(person_id, self._validate(descriptor), self.duplicate_threshold, image)

    def register_face(self, image, student_id: str, name: str, major: Optional[str] = None) -> EnrollmentOutcome:
        descriptor = self.detect(image)
        if descriptor is None:
            return EnrollmentOutcome(EnrollmentStatus.NO_FACE_DETECTED)
        return self.register_descriptor(descriptor, student_id, name, major, encode_jpeg(image))

    def add_face(self, image, person_id: int) -> EnrollmentOutcome:
        descriptor = self.detect(image)
        if descriptor is None:
            return EnrollmentOutcome(EnrollmentStatus.NO_FACE_DETECTED)
        return self.add_face_descriptor(descriptor, person_id, encode_jpeg(image))

    def enroll(self, image, student_id: Optional[str] = None, name: Optional[str] = None,
               major: Optional[str] = None, person_id: Optional[int] = None) -> EnrollmentOutcome:
        """Register or add a face depending on the current mode."""
        if self.mode == RegistrationMode.ADD_FACE:
            if person_id is None:
                raise ValueError("person_id is required in add-face mode")
            return self.add_face(image, person_id)
        if not student_id or not name:
            raise ValueError("student_id and name are required to register")
        return self.register_face(image, student_id, name, major)

    # Attendance

    def mark_attendance_descriptor(self, descriptor, now: Optional[datetime] = None) -> AttendanceResult:
        if descriptor is not None:
            descriptor = self._validate(descriptor)
        decision = self.authorizer.authorize(descriptor, self.recognition_threshold)
        if decision.kind != Authorization.RECOGNIZED:
            return AttendanceResult(decision)

        now = now or datetime.now(timezone.utc)
        status, outcome = self.ledger.mark(decision.identity, now)
        return AttendanceResult(decision, now, status, outcome)

    def mark_attendance(self, image, now: Optional[datetime] = None) -> AttendanceResult:
        return self.mark_attendance_descriptor(self.detect(image), now)

    def mark_verified_attendance(self, person_id: int, now: Optional[datetime] = None) -> Optional[AttendanceResult]:
        """
        Record attendance for a person whose identity was verified outside face
        recognition, e.g. by a fingerprint reader. Same once-per-day rule.

        Returns:
            None when no such person is enrolled
        """
        identity = self.store.get_identity(person_id)
        if identity is None:
            return None

        now = now or datetime.now(timezone.utc)
        status, outcome = self.ledger.mark(identity, now, auto=False)
        return AttendanceResult(AuthorizationOutcome(Authorization.EXTERNALLY_VERIFIED, identity), now, status, outcome)
