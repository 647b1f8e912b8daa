import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Protocol

import cv2  # type: ignore
import face_recognition  # type: ignore
import numpy as np  # type: ignore

from backend.config import (
    FACE_DESCRIPTOR_SIZE,
    FACE_DETECTION_MODEL,
    FACE_ENCODING_JITTERS,
    FACE_UPSAMPLE_TIMES,
)
from backend.errors import InternalServiceError

logger = logging.getLogger(__name__)

# dlib's 5-point shape predictor, in a fixed order.
_LANDMARK_KEYS = ("left_eye", "right_eye", "nose_tip")


@dataclass(frozen=True)
class FaceDetection:
    x: float
    y: float
    width: float
    height: float
    score: float
    landmarks: tuple[tuple[float, float], ...] = field(default_factory=tuple)


class FaceModel(Protocol):
    """Capability the matcher needs from any face detection/recognition model."""

    def detect(self, image: np.ndarray) -> FaceDetection | None: ...

    def embed(self, image: np.ndarray) -> list[float] | None: ...


class DlibFaceModel:
    """
    face_recognition (dlib) detector, 5-point landmarks and the 128-d ResNet
    descriptor that FACE_MATCH_THRESHOLD is calibrated for.

    dlib's HOG/CNN detectors report no per-face confidence, so detections
    carry score 1.0.
    """

    def __init__(
        self,
        *,
        detection_model: str = FACE_DETECTION_MODEL,
        upsample_times: int = FACE_UPSAMPLE_TIMES,
        num_jitters: int = FACE_ENCODING_JITTERS,
    ):
        self._detection_model = detection_model
        self._upsample_times = upsample_times
        self._num_jitters = num_jitters
        # dlib's shared detector objects are not safe to drive from several threads.
        self._lock = threading.Lock()

    def _largest_face(self, rgb: np.ndarray):
        locations = face_recognition.face_locations(
            rgb,
            number_of_times_to_upsample=self._upsample_times,
            model=self._detection_model,
        )
        if not locations:
            return None
        # (top, right, bottom, left)
        return max(locations, key=lambda loc: (loc[2] - loc[0]) * (loc[1] - loc[3]))

    def detect(self, image: np.ndarray) -> FaceDetection | None:
        rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        with self._lock:
            location = self._largest_face(rgb)
            if location is None:
                return None
            marks = face_recognition.face_landmarks(rgb, [location], model="small")

        points: list[tuple[float, float]] = []
        if marks:
            for key in _LANDMARK_KEYS:
                points.extend((float(x), float(y)) for x, y in marks[0].get(key, []))

        top, right, bottom, left = location
        return FaceDetection(
            x=float(left),
            y=float(top),
            width=float(right - left),
            height=float(bottom - top),
            score=1.0,
            landmarks=tuple(points),
        )

    def embed(self, image: np.ndarray) -> list[float] | None:
        rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        with self._lock:
            location = self._largest_face(rgb)
            if location is None:
                return None
            encodings = face_recognition.face_encodings(rgb, [location], num_jitters=self._num_jitters)

        if not encodings:
            return None
        vector = np.asarray(encodings[0], dtype=np.float64).flatten()
        if vector.size != FACE_DESCRIPTOR_SIZE:
            logger.error("Face model returned %s values, expected %s", vector.size, FACE_DESCRIPTOR_SIZE)
            return None
        return vector.tolist()


def load_face_model() -> FaceModel | None:
    model = DlibFaceModel()
    try:
        # Warm-up: fails fast when dlib or its bundled weights are unusable.
        model.detect(np.zeros((64, 64, 3), dtype=np.uint8))
    except RuntimeError:
        logger.exception("Face model failed to initialise (detector=%s)", FACE_DETECTION_MODEL)
        return None
    logger.info("Face model ready (detector=%s, jitters=%s)", FACE_DETECTION_MODEL, FACE_ENCODING_JITTERS)
    return model


MODEL: FaceModel | None = None
_MODEL_LOCK = threading.Lock()


def get_face_model() -> FaceModel:
    """Loaded on first use; raises when the model cannot be initialised."""
    global MODEL
    with _MODEL_LOCK:
        if MODEL is None:
            MODEL = load_face_model()
        if MODEL is None:
            raise InternalServiceError("Face recognition model is unavailable.")
        return MODEL


def get_face_model_loader() -> Callable[[], FaceModel]:
    """
    FastAPI dependency handing out the loader instead of the model, so a
    request only touches the model once it reaches the face gate. Tests swap
    it through `app.dependency_overrides`.
    """
    return get_face_model


def reload_model() -> bool:
    global MODEL
    with _MODEL_LOCK:
        MODEL = load_face_model()
        return MODEL is not None


def decode_image(data: bytes) -> np.ndarray | None:
    if not data:
        return None
    img_array = np.frombuffer(data, np.uint8)
    return cv2.imdecode(img_array, cv2.IMREAD_COLOR)
