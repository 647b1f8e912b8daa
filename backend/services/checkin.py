"""
Check-in state machine.

    PIN_ENTRY -> LESSON_LOOKUP -> GPS_GATE -> FACE_GATE -> RESULT
                                  GPS_GATE -> NO_FACE_REGISTERED -> RESULT

Only this module writes attendance rows. PIN and GPS rejections are audited
but never persisted as attendance; a failed face match is persisted as
`suspicious`, a successful one as `present`.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Literal

from backend import config
from backend.errors import BiometricMismatch, ForbiddenError, GpsRejected, ValidationError
from backend.recognizer import FaceModel, get_face_model
from backend.services import biometric
from backend.services.audit import record_activity
from backend.services.geolocation import LocationCheck, LocationReading, LocationSource, evaluate_location
from database import db

logger = logging.getLogger(__name__)

PIN_PATTERN = re.compile(r"^[0-9]{6}$")

CheckinStatus = Literal["present", "suspicious", "rejected"]


class CheckinState(str, Enum):
    PIN_ENTRY = "pin_entry"
    LESSON_LOOKUP = "lesson_lookup"
    GPS_GATE = "gps_gate"
    NO_FACE_REGISTERED = "no_face_registered"
    FACE_GATE = "face_gate"
    RESULT = "result"


@dataclass(frozen=True)
class CheckinResult:
    status: CheckinStatus
    message: str
    reason: str | None = None
    lesson_id: int | None = None
    distance_meters: float | None = None
    face_distance: float | None = None
    attendance_id: int | None = None

    def as_payload(self) -> dict[str, Any]:
        return {
            "success": self.status == "present",
            "status": self.status,
            "message": self.message,
            "reason": self.reason,
            "lesson_id": self.lesson_id,
            "distance_meters": round(self.distance_meters, 1) if self.distance_meters is not None else None,
            "face_distance": self.face_distance,
            "attendance_recorded": self.attendance_id is not None,
        }


class CheckinFlow:
    """One student's check-in attempt; discard or `reset()` after RESULT."""

    def __init__(
        self,
        *,
        student: dict,
        fingerprint: str | None,
        user_agent: str | None,
        ip_address: str | None,
        model: FaceModel | None = None,
        load_model: Callable[[], FaceModel] = get_face_model,
    ):
        if student.get("role") != "student":
            raise ForbiddenError("Only students can check in.")
        self.student = student
        self.model = model
        self.load_model = load_model
        self.fingerprint = fingerprint
        self.user_agent = user_agent
        self.ip_address = ip_address
        self.state = CheckinState.PIN_ENTRY
        self.lesson: dict | None = None
        self.reading: LocationReading | None = None
        self.location: LocationCheck | None = None
        self.result: CheckinResult | None = None

    # -----------------------------
    # Bookkeeping
    # -----------------------------
    def _audit(self, action: str, **details: Any) -> None:
        if self.lesson is not None:
            details.setdefault("lesson_id", self.lesson["id"])
        record_activity(
            action,
            user_id=self.student["id"],
            details=details,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
        )

    def _transition(self, target: CheckinState, **details: Any) -> None:
        source = self.state
        self.state = target
        self._audit("checkin_transition", from_state=source.value, to_state=target.value, **details)

    def _finish(self, result: CheckinResult, action: str, **details: Any) -> CheckinResult:
        source = self.state
        self.state = CheckinState.RESULT
        self.result = result
        self._audit(
            action,
            from_state=source.value,
            to_state=CheckinState.RESULT.value,
            status=result.status,
            reason=result.reason,
            distance=result.distance_meters,
            face_distance=result.face_distance,
            **details,
        )
        logger.info(
            "Check-in %s: student_id=%s lesson_id=%s reason=%s",
            result.status,
            self.student["id"],
            result.lesson_id,
            result.reason,
        )
        return result

    def reset(self) -> None:
        """Back to PIN entry with all transient capture state dropped."""
        self.state = CheckinState.PIN_ENTRY
        self.lesson = None
        self.reading = None
        self.location = None
        self.result = None

    def _require(self, expected: CheckinState) -> None:
        if self.state is not expected:
            raise RuntimeError(f"Check-in is in state {self.state.value}, expected {expected.value}.")

    # -----------------------------
    # Steps
    # -----------------------------
    def submit_pin(self, pin: str) -> dict | None:
        self._require(CheckinState.PIN_ENTRY)
        if not isinstance(pin, str) or not PIN_PATTERN.match(pin):
            raise ValidationError("PIN must be exactly 6 digits.")

        lesson = db.find_active_lesson_by_pin(pin)
        if lesson is None:
            self._finish(
                CheckinResult(status="rejected", message="Invalid or expired PIN.", reason="invalid or expired PIN"),
                "checkin_rejected",
            )
            return None

        self.lesson = lesson
        self._transition(CheckinState.LESSON_LOOKUP)
        return lesson

    async def pass_gps_gate(self, source: LocationSource) -> LocationCheck:
        self._require(CheckinState.LESSON_LOOKUP)
        self._transition(CheckinState.GPS_GATE)

        try:
            reading = await asyncio.wait_for(source.acquire(), timeout=config.LOCATION_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            raise GpsRejected("Location could not be determined in time.", reasons=["location timeout"])
        except (OSError, RuntimeError) as exc:
            raise GpsRejected("Location is unavailable.", reasons=[str(exc) or "location unavailable"])

        self.reading = reading
        check = evaluate_location(reading, self.lesson, self.user_agent)
        self.location = check

        if check.is_fake_gps:
            raise GpsRejected(
                "Fake GPS detected: " + ", ".join(check.fake_reasons),
                distance_meters=check.distance_meters,
                reasons=check.reasons,
            )
        if not check.within_radius:
            raise GpsRejected(
                check.reasons[0],
                distance_meters=check.distance_meters,
                reasons=check.reasons,
            )
        return check

    async def pass_face_gate(self, frames: biometric.FrameSource) -> biometric.MatchResult | None:
        """
        Liveness with bounded retries, then compare against the enrolled
        descriptor. Returns None when liveness never passed; raises
        BiometricMismatch when the live face is someone else.
        """
        self._require(CheckinState.GPS_GATE)
        self._transition(CheckinState.FACE_GATE)

        if self.model is None:
            self.model = await asyncio.to_thread(self.load_model)

        attempts = 1 + config.LIVENESS_MAX_RETRIES
        embedding: list[float] | None = None
        for attempt in range(1, attempts + 1):
            liveness = await biometric.check_liveness(self.model, frames)
            if liveness.is_live and liveness.frame is not None:
                embedding = await asyncio.to_thread(self.model.embed, liveness.frame)
                if embedding is not None:
                    break
            self._audit("liveness_failed", attempt=attempt, reasons=liveness.reasons)
            if liveness.exhausted:
                break

        if embedding is None:
            return None

        match = biometric.compare(self.student["face_embedding"], embedding)
        if not match.match:
            raise BiometricMismatch(
                f"Face does not match enrollment (distance {match.distance}).",
                distance=match.distance,
            )
        return match

    # -----------------------------
    # Driver
    # -----------------------------
    async def run(self, pin: str, location: LocationSource, frames: biometric.FrameSource) -> CheckinResult:
        try:
            if self.submit_pin(pin) is None:
                return self.result

            check = await self.pass_gps_gate(location)
            location.close()

            if not self.student.get("face_embedding"):
                self._transition(CheckinState.NO_FACE_REGISTERED)
                return self._finish(
                    CheckinResult(
                        status="suspicious",
                        message="Face ID is not registered. Contact an administrator.",
                        reason="no biometric enrollment",
                        lesson_id=self.lesson["id"],
                        distance_meters=check.distance_meters,
                    ),
                    "checkin_failed",
                )

            match = await self.pass_face_gate(frames)
            if match is None:
                return self._finish(
                    CheckinResult(
                        status="rejected",
                        message="Live face not detected. Move your head slightly and try again.",
                        reason="liveness check failed",
                        lesson_id=self.lesson["id"],
                        distance_meters=check.distance_meters,
                    ),
                    "checkin_rejected",
                )
            return self._record_present(check, match)

        except GpsRejected as exc:
            return self._finish(
                CheckinResult(
                    status="rejected",
                    message=exc.message,
                    reason=exc.message,
                    lesson_id=self.lesson["id"] if self.lesson else None,
                    distance_meters=exc.distance_meters,
                ),
                "checkin_rejected",
                is_fake_gps=self.location.is_fake_gps if self.location else False,
                reasons=exc.reasons,
            )
        except BiometricMismatch as exc:
            return self._record_suspicious(exc)
        except asyncio.CancelledError:
            self._audit("checkin_cancelled", state=self.state.value)
            raise
        finally:
            location.close()
            frames.close()

    def _record_present(self, check: LocationCheck, match: biometric.MatchResult) -> CheckinResult:
        attendance_id = db.upsert_attendance(
            lesson_id=self.lesson["id"],
            student_id=self.student["id"],
            status="present",
            check_in_time=db.utcnow(),
            latitude=self.reading.latitude,
            longitude=self.reading.longitude,
            distance_meters=check.distance_meters,
            is_fake_gps=False,
            suspicious_reason=None,
            fingerprint=self.fingerprint,
            user_agent=self.user_agent,
        )
        return self._finish(
            CheckinResult(
                status="present",
                message=f"Attendance recorded ({round(check.distance_meters)}m).",
                lesson_id=self.lesson["id"],
                distance_meters=check.distance_meters,
                face_distance=match.distance,
                attendance_id=attendance_id,
            ),
            "checkin_success",
        )

    def _record_suspicious(self, exc: BiometricMismatch) -> CheckinResult:
        check = self.location
        attendance_id = db.upsert_attendance(
            lesson_id=self.lesson["id"],
            student_id=self.student["id"],
            status="suspicious",
            check_in_time=db.utcnow(),
            latitude=self.reading.latitude,
            longitude=self.reading.longitude,
            distance_meters=check.distance_meters,
            is_fake_gps=check.is_fake_gps,
            suspicious_reason="Face ID not confirmed",
            fingerprint=self.fingerprint,
            user_agent=self.user_agent,
        )
        return self._finish(
            CheckinResult(
                status="suspicious",
                message="Face not confirmed. The attempt was flagged as suspicious.",
                reason=exc.message,
                lesson_id=self.lesson["id"],
                distance_meters=check.distance_meters,
                face_distance=exc.distance,
                attendance_id=attendance_id,
            ),
            "checkin_suspicious",
        )
