"""
SQLAlchemy models for the attendance system.
"""
from sqlalchemy import Column, Integer, String, DateTime, Date, Boolean, LargeBinary, ForeignKey, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Person(Base):
    """Enrolled person."""
    __tablename__ = "persons"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False, index=True)
    major = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False)

    faces = relationship("FaceSample", back_populates="person", order_by="FaceSample.id")


class FaceSample(Base):
    """One face descriptor of a person. A person may have several."""
    __tablename__ = "face_samples"

    id = Column(Integer, primary_key=True, index=True)
    person_id = Column(Integer, ForeignKey("persons.id"), nullable=False, index=True)
    descriptor = Column(LargeBinary, nullable=False)  # float32 array as bytes
    dimension = Column(Integer, nullable=False)
    image_data = Column(LargeBinary, nullable=True)  # Captured JPEG, optional
    created_at = Column(DateTime, nullable=False)

    person = relationship("Person", back_populates="faces")


class Attendance(Base):
    """One attendance event per person per local day."""
    __tablename__ = "attendance"
    __table_args__ = (
        UniqueConstraint("person_id", "local_date", name="uq_attendance_person_day"),
    )

    id = Column(Integer, primary_key=True, index=True)
    person_id = Column(Integer, ForeignKey("persons.id"), nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False, index=True)  # UTC, naive
    local_date = Column(Date, nullable=False)  # Calendar day in the display timezone
    status = Column(String, nullable=False)
    auto = Column(Boolean, default=True, nullable=False)  # Face recognition vs externally verified

    person = relationship("Person")
