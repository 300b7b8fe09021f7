import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, File, UploadFile, HTTPException, Form, Request
from fastapi.middleware.cors import CORSMiddleware

import config
from attendance import Authorization, RecordOutcome
from database import RecordStore
from descriptor_store import SourceUnavailable
from enrollment import EnrollmentOutcome, EnrollmentStatus
from logger_helper import setup_logger, create_logging_middleware
from matcher import DimensionMismatch
from recognition import FaceRecognizer, decode_image
from session import AttendanceResult, AttendanceSession

logger = logging.getLogger(__name__)


def build_session() -> AttendanceSession:
    """Record store, detector and session from configuration."""
    store = RecordStore(config.DATABASE_URL)
    store.init_db()
    logger.info("Database initialized")

    try:
        recognizer = FaceRecognizer(use_gpu=config.USE_GPU)
    except Exception as e:
        logger.warning("GPU initialization failed: %s. Falling back to CPU...", e)
        recognizer = FaceRecognizer(use_gpu=False)

    return AttendanceSession(store, recognizer, dimension=config.DESCRIPTOR_DIMENSION)


def get_session(request: Request) -> AttendanceSession:
    session = getattr(request.app.state, "session", None)
    if session is None:
        raise HTTPException(status_code=503, detail="Session not initialized")
    return session


async def read_image(file: UploadFile):
    contents = await file.read()
    img = decode_image(contents)
    if img is None:
        raise HTTPException(status_code=400, detail="Invalid image format")
    return img


def identity_json(identity):
    return {
        "person_id": identity.id,
        "student_id": identity.student_id,
        "name": identity.name,
        "major": identity.major,
    }


def enrollment_response(outcome: EnrollmentOutcome, message: str):
    """Map an enrollment outcome to a response or an HTTP error."""
    if outcome.status == EnrollmentStatus.ENROLLED:
        return {"message": message, **identity_json(outcome.identity)}
    if outcome.status == EnrollmentStatus.NO_FACE_DETECTED:
        raise HTTPException(status_code=400, detail="No face detected")
    if outcome.status == EnrollmentStatus.DUPLICATE_FACE:
        raise HTTPException(status_code=409, detail="This face is already registered")
    if outcome.status == EnrollmentStatus.DUPLICATE_STUDENT_ID:
        raise HTTPException(status_code=409, detail="Student id already registered")
    if outcome.status == EnrollmentStatus.UNKNOWN_IDENTITY:
        raise HTTPException(status_code=404, detail="Person not found")
    raise HTTPException(status_code=500, detail="Failed to save registration")


def attendance_response(session: AttendanceSession, result: AttendanceResult):
    """Map a recorded or rejected attendance write to a response or an HTTP error."""
    decision = result.authorization
    body = {
        "result": result.outcome.value,
        "distance": decision.distance,
        "status": result.status.value,
        "auto": decision.kind != Authorization.EXTERNALLY_VERIFIED,
        "timestamp": result.timestamp.isoformat(),
        "local_time": session.classifier.to_local(result.timestamp).isoformat(),
        **identity_json(decision.identity),
    }
    if result.outcome == RecordOutcome.RECORDED:
        body["message"] = f"Attendance marked for {decision.identity.name}"
        return body
    if result.outcome == RecordOutcome.ALREADY_RECORDED_TODAY:
        body["message"] = "Attendance already marked today"
        return body
    raise HTTPException(status_code=500, detail="Failed to mark attendance")


def create_app(session: Optional[AttendanceSession] = None, log_file: Optional[str] = config.LOG_FILE) -> FastAPI:
    """
    Args:
        session: Pre-built session (tests); built from configuration on startup when omitted
        log_file: Log file path, or None for console only
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "session", None) is None:
            app.state.session = build_session()
        try:
            app.state.session.refresh()
        except SourceUnavailable as e:
            logger.error("Initial descriptor load failed: %s", e)
        yield
        logger.info("Shutting down...")

    app = FastAPI(
        title="Face Attendance",
        description="Face descriptor matching and once-per-day attendance",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.session = session

    perf_logger = setup_logger(log_file)
    create_logging_middleware(app, perf_logger)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check(request: Request):
        session = get_session(request)
        detector = session.detector
        info = detector.get_provider_info() if hasattr(detector, "get_provider_info") else {}
        return {
            "status": "running",
            "recognition_threshold": session.recognition_threshold,
            "duplicate_threshold": session.duplicate_threshold,
            "cutoff": session.classifier.cutoff.isoformat(),
            "timezone": str(session.classifier.tz),
            "enrolled": len(session.descriptors),
            "mode": session.mode.value,
            **info,
        }

    @app.post("/register/")
    async def register(
        request: Request,
        student_id: str = Form(...),
        name: str = Form(...),
        major: str = Form(...),
        file: UploadFile = File(...),
    ):
        """Register a new person from a captured face."""
        session = get_session(request)
        student_id, name, major = student_id.strip(), name.strip(), major.strip()
        if not student_id or not name or not major:
            raise HTTPException(status_code=400, detail="Please complete all fields")

        img = await read_image(file)
        try:
            outcome = session.register_face(img, student_id, name, major)
        except DimensionMismatch as e:
            raise HTTPException(status_code=400, detail=str(e))
        return enrollment_response(outcome, "Face registered successfully")

    @app.post("/people/{person_id}/faces/")
    async def add_face(request: Request, person_id: int, file: UploadFile = File(...)):
        """Add another face sample to an existing person."""
        session = get_session(request)
        img = await read_image(file)
        try:
            outcome = session.add_face(img, person_id)
        except DimensionMismatch as e:
            raise HTTPException(status_code=400, detail=str(e))
        return enrollment_response(outcome, "Face sample added")

    @app.post("/attendance/mark/")
    async def mark_attendance(request: Request, file: UploadFile = File(...)):
        """Recognize the captured face and record today's attendance."""
        session = get_session(request)
        img = await read_image(file)
        try:
            result = session.mark_attendance(img)
        except DimensionMismatch as e:
            raise HTTPException(status_code=400, detail=str(e))

        decision = result.authorization
        if decision.kind == Authorization.NO_FACE_DETECTED:
            return {"result": decision.kind.value, "message": "No face detected"}
        if decision.kind == Authorization.NOT_RECOGNIZED:
            return {"result": decision.kind.value, "message": "Face not recognized"}

        return attendance_response(session, result)

    @app.post("/people/{person_id}/attendance/")
    async def mark_verified_attendance(request: Request, person_id: int):
        """Record today's attendance for a person verified by another device, e.g. a fingerprint reader."""
        session = get_session(request)
        result = session.mark_verified_attendance(person_id)
        if result is None:
            raise HTTPException(status_code=404, detail="Person not found")
        return attendance_response(session, result)

    @app.get("/attendance/")
    async def list_attendance(request: Request, limit: int = 50):
        """Recent attendance with local time and status."""
        session = get_session(request)
        return {
            "attendance": [
                {
                    "id": entry.id,
                    "person_id": entry.person_id,
                    "student_id": entry.student_id,
                    "name": entry.name,
                    "timestamp": entry.timestamp.isoformat(),
                    "local_time": entry.local_time.isoformat(),
                    "status": entry.status.value,
                    "auto": entry.auto,
                }
                for entry in session.ledger.history(limit)
            ]
        }

    @app.get("/people/")
    async def list_people(request: Request):
        """Enrolled people from the descriptor cache."""
        session = get_session(request)
        return {
            "people": [
                {**identity_json(identity), "faces": len(vectors)}
                for identity, vectors in session.descriptors.all()
            ]
        }

    @app.post("/descriptors/refresh/")
    async def refresh_descriptors(request: Request):
        session = get_session(request)
        try:
            count = session.refresh()
        except SourceUnavailable as e:
            raise HTTPException(status_code=503, detail=f"Record store unavailable: {e}")
        return {"message": "Descriptors refreshed", "enrolled": count}

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
