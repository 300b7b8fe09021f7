"""
Attendance authorization, on-time/late classification and the attendance ledger.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, date, time, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

from config import ATTENDANCE_CUTOFF, DISPLAY_TIMEZONE
from database import InsertResult
from descriptor_store import Identity
from matcher import Matcher

logger = logging.getLogger(__name__)


class AttendanceStatus(str, enum.Enum):
    ON_TIME = "ON_TIME"
    LATE = "LATE"


class Authorization(str, enum.Enum):
    RECOGNIZED = "recognized"
    NOT_RECOGNIZED = "not_recognized"
    NO_FACE_DETECTED = "no_face_detected"
    EXTERNALLY_VERIFIED = "externally_verified"


@dataclass(frozen=True)
class AuthorizationOutcome:
    kind: Authorization
    identity: Optional[Identity] = None
    distance: Optional[float] = None


class AttendanceAuthorizer:
    """Resolves a live descriptor to an identity. No side effects."""

    def __init__(self, matcher: Matcher):
        self.matcher = matcher

    def authorize(self, query, recognition_threshold: float) -> AuthorizationOutcome:
        """
        Args:
            query: Live descriptor, or None when the detector found no face
            recognition_threshold: Maximum accepted distance (exclusive)
        """
        if query is None:
            return AuthorizationOutcome(Authorization.NO_FACE_DETECTED)

        result = self.matcher.match(query, recognition_threshold)
        if not result.is_match:
            return AuthorizationOutcome(Authorization.NOT_RECOGNIZED)
        return AuthorizationOutcome(Authorization.RECOGNIZED, result.identity, result.distance)


class StatusClassifier:
    """
    Derives ON_TIME / LATE from the local wall clock.

    The cutoff itself counts as on time. Naive timestamps are taken as UTC.
    """

    def __init__(self, cutoff: time = ATTENDANCE_CUTOFF, tz: str = DISPLAY_TIMEZONE):
        self.cutoff = cutoff
        self.tz = tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz)

    def to_local(self, timestamp: datetime) -> datetime:
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return timestamp.astimezone(self.tz)

    def local_date(self, timestamp: datetime) -> date:
        return self.to_local(timestamp).date()

    def classify(self, timestamp: datetime) -> AttendanceStatus:
        local_clock = self.to_local(timestamp).time()
        if local_clock <= self.cutoff:
            return AttendanceStatus.ON_TIME
        return AttendanceStatus.LATE


class RecordOutcome(str, enum.Enum):
    RECORDED = "recorded"
    ALREADY_RECORDED_TODAY = "already_recorded_today"
    STORE_FAILURE = "store_failure"


@dataclass(frozen=True)
class AttendanceEntry:
    """One row of the attendance history, with the stored instant rendered locally."""
    id: int
    person_id: int
    student_id: str
    name: str
    timestamp: datetime
    local_time: datetime
    status: AttendanceStatus
    auto: bool = True


class AttendanceLedger:
    """
    Writes attendance events through the record store.

    The once-per-day rule belongs to the store's unique constraint; the ledger
    always attempts the insert and interprets the result.
    """

    def __init__(self, store, classifier: StatusClassifier):
        self.store = store
        self.classifier = classifier

    def record(self, identity: Identity, timestamp: datetime, status: AttendanceStatus,
               auto: bool = True) -> RecordOutcome:
        """
        Args:
            auto: False when the identity was verified outside face recognition
        """
        try:
            result = self.store.insert_attendance(
                identity, timestamp, self.classifier.local_date(timestamp), status, auto=auto
            )
        except Exception:
            logger.exception("Attendance write failed for %s", identity.student_id)
            return RecordOutcome.STORE_FAILURE

        if result == InsertResult.OK:
            logger.info("Attendance recorded for %s (%s)", identity.student_id, status.value)
            return RecordOutcome.RECORDED
        if result == InsertResult.UNIQUE_CONSTRAINT_VIOLATION:
            logger.info("Attendance already recorded today for %s", identity.student_id)
            return RecordOutcome.ALREADY_RECORDED_TODAY

        logger.error("Attendance write failed for %s", identity.student_id)
        return RecordOutcome.STORE_FAILURE

    def mark(self, identity: Identity, now: Optional[datetime] = None, auto: bool = True):
        """Classify and record in one step. Returns (status, outcome)."""
        now = now or datetime.now(timezone.utc)
        status = self.classifier.classify(now)
        return status, self.record(identity, now, status, auto)

    def history(self, limit: int = 50) -> List[AttendanceEntry]:
        return [
            AttendanceEntry(
                id=row["id"],
                person_id=row["person_id"],
                student_id=row["student_id"],
                name=row["name"],
                timestamp=row["timestamp"],
                local_time=self.classifier.to_local(row["timestamp"]),
                status=AttendanceStatus(row["status"]),
                auto=bool(row.get("auto", True)),
            )
            for row in self.store.list_attendance(limit)
        ]
