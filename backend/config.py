"""
Configuration for the attendance core, read from environment variables.
"""
import os
from datetime import time

# Record store
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./attendance.db")

# Matching thresholds (Euclidean distance on L2-normalised descriptors).
# Duplicate enrollment is stricter than recognition.
RECOGNITION_THRESHOLD = float(os.getenv("RECOGNITION_THRESHOLD", "0.6"))
DUPLICATE_THRESHOLD = float(os.getenv("DUPLICATE_THRESHOLD", "0.5"))

# Attendance policy
ATTENDANCE_CUTOFF = time.fromisoformat(os.getenv("ATTENDANCE_CUTOFF", "08:00:00"))
DISPLAY_TIMEZONE = os.getenv("DISPLAY_TIMEZONE", "Asia/Jakarta")

# Detection capability
DESCRIPTOR_DIMENSION = int(os.getenv("DESCRIPTOR_DIMENSION", "512"))
FACE_MODEL_NAME = os.getenv("FACE_MODEL_NAME", "buffalo_l")
USE_GPU = os.getenv("USE_GPU", "1") == "1"
MIN_FACE_SIZE = int(os.getenv("MIN_FACE_SIZE", "30"))

# Logging
LOG_FILE = os.getenv("LOG_FILE", "attendance.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
