"""
Database configuration, session management and the record store used by the core.
"""
import enum
import logging
from datetime import datetime, date, timezone
from typing import List, Optional, Tuple

import numpy as np
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, selectinload
from sqlalchemy.pool import StaticPool

from config import DATABASE_URL
from descriptor_store import Identity, SourceUnavailable
from models import Base, Person, FaceSample, Attendance

logger = logging.getLogger(__name__)


def make_engine(url: str = DATABASE_URL):
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}  # Needed for SQLite
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool  # One shared in-memory database
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def init_db(engine):
    """Initialize database tables."""
    Base.metadata.create_all(bind=engine)


class DuplicateKeyError(Exception):
    """An identity with the same student id already exists."""


class InsertResult(str, enum.Enum):
    OK = "ok"
    UNIQUE_CONSTRAINT_VIOLATION = "unique_constraint_violation"
    OTHER = "other"


def is_unique_violation(exc: IntegrityError) -> bool:
    """Map driver-specific error vocabulary to a single unique-violation check."""
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == "23505" or getattr(orig, "sqlstate", None) == "23505":
        return True
    message = str(orig if orig is not None else exc).lower()
    return "unique constraint" in message or "duplicate key" in message or "duplicate entry" in message


def _to_identity(person: Person) -> Identity:
    return Identity(id=person.id, student_id=person.student_id, name=person.name, major=person.major)


def _to_utc_naive(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)
    return timestamp


def utcnow() -> datetime:
    """Current UTC time, naive, as stored in DateTime columns."""
    return _to_utc_naive(datetime.now(timezone.utc))


def _face_sample(person_id: int, vector, image: Optional[bytes] = None) -> FaceSample:
    arr = np.asarray(vector, dtype=np.float32).ravel()
    return FaceSample(
        person_id=person_id,
        descriptor=arr.tobytes(),
        dimension=int(arr.shape[0]),
        image_data=image,
        created_at=utcnow(),
    )


class RecordStore:
    """
    SQLAlchemy-backed record store.

    Uniqueness of student ids and of (person, day) attendance is enforced by the
    database; this class only translates driver errors into typed results.
    """

    def __init__(self, url: str = DATABASE_URL, engine=None):
        self.engine = engine if engine is not None else make_engine(url)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self):
        init_db(self.engine)

    def select_identities(self) -> List[Tuple[Identity, List[np.ndarray]]]:
        """All identities with their descriptors, in enrollment order."""
        db = self.SessionLocal()
        try:
            people = (
                db.query(Person)
                .options(selectinload(Person.faces))
                .order_by(Person.id)
                .all()
            )
            return [
                (_to_identity(p), [np.frombuffer(f.descriptor, dtype=np.float32) for f in p.faces])
                for p in people
            ]
        except SQLAlchemyError as e:
            raise SourceUnavailable(f"Failed to load identities: {e}") from e
        finally:
            db.close()

    def get_identity(self, person_id: int) -> Optional[Identity]:
        db = self.SessionLocal()
        try:
            person = db.query(Person).filter(Person.id == person_id).first()
            return _to_identity(person) if person else None
        finally:
            db.close()

    def insert_identity(self, student_id: str, name: str, major: Optional[str] = None) -> Identity:
        """
        Insert a new person without face samples.

        Raises:
            DuplicateKeyError: student id already enrolled
        """
        return self.insert_identity_with_descriptor(student_id, name, major, None)

    def insert_identity_with_descriptor(self, student_id: str, name: str, major: Optional[str],
                                        vector, image: Optional[bytes] = None) -> Identity:
        """
        Insert a person and their first face sample in one transaction.
        Either both rows are written or neither is.

        Raises:
            DuplicateKeyError: student id already enrolled
        """
        db = self.SessionLocal()
        try:
            person = Person(student_id=student_id, name=name, major=major, created_at=utcnow())
            db.add(person)
            db.flush()
            if vector is not None:
                db.add(_face_sample(person.id, vector, image))
            db.commit()
            db.refresh(person)
            return _to_identity(person)
        except IntegrityError as e:
            db.rollback()
            if is_unique_violation(e):
                raise DuplicateKeyError(f"Student id {student_id} already exists") from e
            raise
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def insert_descriptor(self, identity: Identity, vector, image: Optional[bytes] = None) -> int:
        db = self.SessionLocal()
        try:
            face = _face_sample(identity.id, vector, image)
            db.add(face)
            db.commit()
            db.refresh(face)
            return face.id
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def insert_attendance(self, identity: Identity, timestamp: datetime, local_date: date, status,
                          auto: bool = True) -> InsertResult:
        """
        Single insert attempt. Never checks for an existing row first.

        Args:
            auto: True for face recognition, False for an externally verified mark
        """
        db = self.SessionLocal()
        try:
            db.add(Attendance(
                person_id=identity.id,
                timestamp=_to_utc_naive(timestamp),
                local_date=local_date,
                status=getattr(status, "value", status),
                auto=auto,
            ))
            db.commit()
            return InsertResult.OK
        except IntegrityError as e:
            db.rollback()
            if is_unique_violation(e):
                return InsertResult.UNIQUE_CONSTRAINT_VIOLATION
            logger.exception("Attendance insert rejected for person %s", identity.id)
            return InsertResult.OTHER
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Attendance insert failed for person %s", identity.id)
            return InsertResult.OTHER
        finally:
            db.close()

    def list_attendance(self, limit: int = 50) -> List[dict]:
        db = self.SessionLocal()
        try:
            rows = (
                db.query(Attendance, Person)
                .join(Person, Attendance.person_id == Person.id)
                .order_by(Attendance.timestamp.desc())
                .limit(limit)
                .all()
            )
            return [
                {
                    "id": record.id,
                    "person_id": person.id,
                    "student_id": person.student_id,
                    "name": person.name,
                    "timestamp": record.timestamp.replace(tzinfo=timezone.utc),
                    "local_date": record.local_date,
                    "status": record.status,
                    "auto": record.auto,
                }
                for record, person in rows
            ]
        finally:
            db.close()
