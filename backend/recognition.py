"""
Face detection and descriptor extraction using InsightFace.
Supports GPU with CPU fallback.
"""
import logging
from typing import Dict, List, Optional

import cv2
import numpy as np

from config import FACE_MODEL_NAME, MIN_FACE_SIZE

logger = logging.getLogger(__name__)


def decode_image(data: bytes) -> Optional[np.ndarray]:
    """Decode uploaded bytes into a BGR image, or None if not an image."""
    nparr = np.frombuffer(data, np.uint8)
    if nparr.size == 0:
        return None
    return cv2.imdecode(nparr, cv2.IMREAD_COLOR)


def encode_jpeg(image: np.ndarray, quality: int = 90) -> Optional[bytes]:
    success, buffer = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, quality])
    return buffer.tobytes() if success else None


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    vector = np.asarray(vector, dtype=np.float32).ravel()
    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector
    return vector / norm


class FaceRecognizer:
    """
    Wrapper around InsightFace used as the detection capability.
    detect() returns one L2-normalised descriptor, or None when no face is found.
    """

    def __init__(self, model_name: str = FACE_MODEL_NAME, det_size: tuple = (640, 640), use_gpu: bool = True):
        """
        Args:
            model_name: InsightFace model name (buffalo_l, buffalo_sc, etc.)
            det_size: Detection size for face detector
            use_gpu: Try to use GPU, fallback to CPU if unavailable
        """
        from insightface.app import FaceAnalysis

        logger.info("Loading InsightFace model: %s", model_name)
        providers = self._select_providers(use_gpu)

        self.app = FaceAnalysis(name=model_name, providers=providers)
        self.app.prepare(ctx_id=0, det_size=det_size)

        self.model_name = model_name
        self.providers = providers
        logger.info("Model %s loaded with providers: %s", model_name, providers)

    @staticmethod
    def _select_providers(use_gpu: bool) -> List[str]:
        if not use_gpu:
            return ["CPUExecutionProvider"]
        try:
            import onnxruntime as ort
            available = ort.get_available_providers()
        except Exception as e:
            logger.warning("Error checking GPU: %s, falling back to CPU", e)
            return ["CPUExecutionProvider"]

        if "CUDAExecutionProvider" in available:
            return ["CUDAExecutionProvider", "CPUExecutionProvider"]
        if "CoreMLExecutionProvider" in available:
            return ["CoreMLExecutionProvider", "CPUExecutionProvider"]
        logger.info("GPU not available, using CPU")
        return ["CPUExecutionProvider"]

    def detect(self, image: np.ndarray, min_face_size: int = MIN_FACE_SIZE) -> Optional[np.ndarray]:
        """
        Descriptor of the largest face in a BGR image.

        Returns:
            float32 vector, or None if no face of at least min_face_size pixels was found
        """
        best = None
        best_area = 0
        for face in self.app.get(image):
            x1, y1, x2, y2 = face.bbox.astype(int)
            w, h = x2 - x1, y2 - y1
            if w < min_face_size or h < min_face_size:
                continue
            if w * h > best_area:
                best, best_area = face, w * h

        if best is None:
            return None
        return l2_normalize(best.embedding)

    def get_provider_info(self) -> Dict:
        """Get information about active execution providers."""
        return {
            "model": self.model_name,
            "providers": self.providers,
            "using_gpu": any(p in ["CUDAExecutionProvider", "CoreMLExecutionProvider"] for p in self.providers),
        }
