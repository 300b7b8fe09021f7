"""End-to-end flows through the attendance session."""

from datetime import datetime, time
from zoneinfo import ZoneInfo

import numpy as np
import pytest

from attendance import AttendanceStatus, Authorization, RecordOutcome
from conftest import FakeDetector, vec
from enrollment import EnrollmentStatus
from matcher import DimensionMismatch, euclidean_distance
from session import AttendanceSession, RegistrationMode

TZ = ZoneInfo("Asia/Jakarta")


def image(value):
    return np.full((16, 16, 3), value, dtype=np.uint8)


@pytest.fixture
def detector():
    return FakeDetector()


@pytest.fixture
def session(record_store, detector):
    s = AttendanceSession(
        record_store,
        detector,
        recognition_threshold=0.6,
        duplicate_threshold=0.35,
        cutoff=time(8, 0),
        tz="Asia/Jakarta",
        dimension=4,
    )
    s.refresh()
    return s


def test_enroll_then_reject_near_duplicate(session):
    d1 = vec(1, 0, 0, 0)
    d1_prime = vec(1, 0.1, 0, 0)

    assert session.guard.check_duplicate(d1, session.duplicate_threshold) is False
    outcome = session.register_descriptor(d1, "S001", "Alice", "Physics")
    assert outcome.status == EnrollmentStatus.ENROLLED

    assert session.guard.check_duplicate(d1_prime, session.duplicate_threshold) is True
    rejected = session.register_descriptor(d1_prime, "S002", "Mallory")
    assert rejected.status == EnrollmentStatus.DUPLICATE_FACE
    assert len(session.descriptors) == 1


def test_recognize_and_record_once_per_day(session):
    alice = session.register_descriptor(vec(1, 0, 0, 0), "S001", "Alice").identity
    q = vec(1, 0.4, 0, 0)
    assert euclidean_distance(q, vec(1, 0, 0, 0)) == pytest.approx(0.4)

    first = session.mark_attendance_descriptor(q, now=datetime(2025, 3, 3, 8, 10, tzinfo=TZ))
    assert first.authorization.kind == Authorization.RECOGNIZED
    assert first.authorization.identity == alice
    assert first.status == AttendanceStatus.LATE
    assert first.outcome == RecordOutcome.RECORDED

    second = session.mark_attendance_descriptor(q, now=datetime(2025, 3, 3, 17, 0, tzinfo=TZ))
    assert second.outcome == RecordOutcome.ALREADY_RECORDED_TODAY

    history = session.ledger.history()
    assert len(history) == 1
    assert history[0].status == AttendanceStatus.LATE


def test_unknown_face_is_not_recorded(session):
    session.register_descriptor(vec(1, 0, 0, 0), "S001", "Alice")

    result = session.mark_attendance_descriptor(vec(0, 0, 1, 0))

    assert result.authorization.kind == Authorization.NOT_RECOGNIZED
    assert result.outcome is None
    assert session.ledger.history() == []


def test_no_face_detected(session):
    result = session.mark_attendance(image(10))
    assert result.authorization.kind == Authorization.NO_FACE_DETECTED

    outcome = session.register_face(image(10), "S001", "Alice")
    assert outcome.status == EnrollmentStatus.NO_FACE_DETECTED


def test_wrong_dimension_rejected_at_boundary(session):
    with pytest.raises(DimensionMismatch):
        session.register_descriptor(vec(1, 0, 0), "S001", "Alice")
    with pytest.raises(DimensionMismatch):
        session.mark_attendance_descriptor(vec(1, 0))


def test_image_flow_uses_detector(session, detector):
    detector.faces[50] = vec(1, 0, 0, 0)
    detector.faces[60] = vec(1, 0.2, 0, 0)

    enrolled = session.register_face(image(50), "S001", "Alice")
    assert enrolled.status == EnrollmentStatus.ENROLLED

    result = session.mark_attendance(image(60), now=datetime(2025, 3, 3, 7, 45, tzinfo=TZ))
    assert result.authorization.identity == enrolled.identity
    assert result.status == AttendanceStatus.ON_TIME
    assert result.outcome == RecordOutcome.RECORDED


def test_mode_dispatch(session, detector):
    detector.faces[50] = vec(1, 0, 0, 0)
    detector.faces[55] = vec(1, 0.1, 0, 0)

    alice = session.enroll(image(50), student_id="S001", name="Alice").identity

    session.set_mode(RegistrationMode.ADD_FACE)
    outcome = session.enroll(image(55), person_id=alice.id)
    assert outcome.status == EnrollmentStatus.ENROLLED
    assert len(session.descriptors.all()[0][1]) == 2

    with pytest.raises(ValueError):
        session.enroll(image(55))

    session.set_mode("register")
    assert session.mode == RegistrationMode.REGISTER
    with pytest.raises(ValueError):
        session.enroll(image(55), student_id="S009")


def test_dimension_falls_back_to_cache(record_store):
    s = AttendanceSession(record_store, recognition_threshold=0.6, duplicate_threshold=0.35)
    s.refresh()
    s.register_descriptor(vec(1, 0), "S001", "Alice")

    with pytest.raises(DimensionMismatch):
        s.mark_attendance_descriptor(vec(1, 0, 0))
    with pytest.raises(RuntimeError):
        s.detect(image(1))


def test_externally_verified_attendance(session):
    alice = session.register_descriptor(vec(1, 0, 0, 0), "S001", "Alice").identity

    first = session.mark_verified_attendance(alice.id, now=datetime(2025, 3, 3, 7, 45, tzinfo=TZ))
    assert first.authorization.kind == Authorization.EXTERNALLY_VERIFIED
    assert first.authorization.identity == alice
    assert (first.status, first.outcome) == (AttendanceStatus.ON_TIME, RecordOutcome.RECORDED)

    face = session.mark_attendance_descriptor(vec(1, 0, 0, 0), now=datetime(2025, 3, 3, 9, 0, tzinfo=TZ))
    assert face.outcome == RecordOutcome.ALREADY_RECORDED_TODAY
    assert session.ledger.history()[0].auto is False


def test_externally_verified_unknown_person(session):
    assert session.mark_verified_attendance(999) is None
    assert session.ledger.history() == []
