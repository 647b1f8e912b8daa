"""Descriptor comparison and the multi-sample liveness heuristic."""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Protocol, Sequence

import numpy as np  # type: ignore

from backend import config
from backend.recognizer import FaceDetection, FaceModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchResult:
    match: bool
    distance: float


@dataclass(frozen=True)
class LivenessSample:
    qualified: bool
    reason: str | None = None
    detection: FaceDetection | None = None


@dataclass
class LivenessResult:
    is_live: bool
    passes: int
    samples: list[LivenessSample] = field(default_factory=list)
    exhausted: bool = False
    frame: np.ndarray | None = field(default=None, repr=False)

    @property
    def reasons(self) -> list[str]:
        return [s.reason for s in self.samples if s.reason]


# -----------------------------
# Frame sources
# -----------------------------
class FrameSource(Protocol):
    async def read(self) -> np.ndarray | None: ...

    def close(self) -> None: ...


class UploadedFrameSource:
    """Frames the client captured and uploaded, consumed in order."""

    def __init__(self, frames: Sequence[np.ndarray]):
        self._frames = list(frames)

    async def read(self) -> np.ndarray | None:
        if not self._frames:
            return None
        return self._frames.pop(0)

    def close(self) -> None:
        self._frames.clear()


# -----------------------------
# Matching
# -----------------------------
def compare(a: Sequence[float] | None, b: Sequence[float] | None) -> MatchResult:
    size = config.FACE_DESCRIPTOR_SIZE
    if a is None or b is None or len(a) != size or len(b) != size:
        return MatchResult(match=False, distance=1.0)

    diff = np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)
    raw = float(np.sqrt(np.sum(diff * diff)))
    if not math.isfinite(raw):
        return MatchResult(match=False, distance=1.0)
    rounded = round(raw, 4)
    return MatchResult(match=rounded < config.FACE_MATCH_THRESHOLD, distance=rounded)


# -----------------------------
# Liveness
# -----------------------------
def mean_landmark_displacement(previous: FaceDetection, current: FaceDetection) -> float | None:
    count = min(len(previous.landmarks), len(current.landmarks))
    if count == 0:
        return None
    total = 0.0
    for (px, py), (cx, cy) in zip(previous.landmarks[:count], current.landmarks[:count]):
        total += math.hypot(cx - px, cy - py)
    return total / count


def assess_sample(detection: FaceDetection | None, previous: FaceDetection | None) -> LivenessSample:
    if detection is None:
        return LivenessSample(False, "No face detected")
    if detection.width < config.LIVENESS_MIN_FACE_SIZE or detection.height < config.LIVENESS_MIN_FACE_SIZE:
        return LivenessSample(False, "Move your face closer to the camera", detection)
    if detection.score < config.LIVENESS_MIN_SCORE:
        return LivenessSample(False, "Face is not clearly visible", detection)
    if previous is not None:
        movement = mean_landmark_displacement(previous, detection)
        if movement is not None and movement < config.LIVENESS_MIN_MOTION:
            return LivenessSample(False, "No movement detected; move your head slightly", detection)
    return LivenessSample(True, None, detection)


async def check_liveness(
    model: FaceModel,
    frames: FrameSource,
    *,
    samples: int | None = None,
    interval: float | None = None,
) -> LivenessResult:
    """
    Sample the capture `samples` times, `interval` seconds apart. Live when at
    least LIVENESS_REQUIRED_PASSES samples qualify.
    """
    total = config.LIVENESS_SAMPLES if samples is None else samples
    pause = config.LIVENESS_SAMPLE_INTERVAL_SECONDS if interval is None else interval

    result = LivenessResult(is_live=False, passes=0)
    previous: FaceDetection | None = None
    for index in range(total):
        frame = await frames.read()
        if frame is None:
            result.exhausted = True
            result.samples.append(LivenessSample(False, "No frame available"))
            break

        detection = await asyncio.to_thread(model.detect, frame)
        sample = assess_sample(detection, previous)
        result.samples.append(sample)
        if sample.qualified:
            result.passes += 1
            result.frame = frame
        if detection is not None:
            previous = detection

        if index < total - 1 and pause > 0:
            await asyncio.sleep(pause)

    result.is_live = result.passes >= config.LIVENESS_REQUIRED_PASSES
    logger.debug("Liveness: passes=%s/%s live=%s", result.passes, total, result.is_live)
    return result
