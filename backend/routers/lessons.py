import logging
from datetime import timedelta
from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from backend import config
from backend.errors import ForbiddenError, NotFoundError, ValidationError
from backend.security import client_ip, generate_pin, reject_blocked_ip, require_csrf, require_role, user_agent
from backend.services.audit import record_activity
from database import db

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(reject_blocked_ip), Depends(require_role("teacher"))])

ManualStatus = Literal["present", "absent", "excused", "unexcused"]


class LessonStart(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    group_id: int | None = None
    subject_id: int | None = None
    radius_meters: int | None = Field(default=None, ge=1)
    pin_validity_seconds: int | None = Field(default=None, ge=5)


class RadiusUpdate(BaseModel):
    radius_meters: int = Field(ge=1)


class AttendanceUpdate(BaseModel):
    status: ManualStatus


def _owned_lesson(lesson_id: int, teacher: dict) -> dict:
    lesson = db.get_lesson(lesson_id)
    if lesson is None:
        raise NotFoundError("Lesson not found.")
    if lesson["teacher_id"] != teacher["id"]:
        raise ForbiddenError("This lesson belongs to another teacher.")
    return lesson


def _pin_payload(lesson_id: int, pin: str, expires_at) -> dict:
    return {
        "success": True,
        "lesson_id": lesson_id,
        "pin_code": pin,
        "pin_expires_at": db.to_iso(expires_at),
    }


@router.post("/lessons")
def start_lesson(payload: LessonStart, request: Request, context: dict = Depends(require_csrf)):
    teacher = context["user"]
    validity = payload.pin_validity_seconds or config.PIN_VALIDITY_SECONDS
    radius = payload.radius_meters or config.DEFAULT_RADIUS_METERS

    pin = generate_pin()
    expires_at = db.utcnow() + timedelta(seconds=validity)
    lesson_id = db.create_lesson(
        teacher_id=teacher["id"],
        latitude=payload.latitude,
        longitude=payload.longitude,
        radius_meters=radius,
        pin_code=pin,
        pin_expires_at=expires_at,
        group_id=payload.group_id,
        subject_id=payload.subject_id,
    )

    record_activity(
        "lesson_started",
        user_id=teacher["id"],
        details={"lesson_id": lesson_id, "group_id": payload.group_id, "radius_meters": radius},
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    logger.info("Lesson started: lesson_id=%s teacher_id=%s", lesson_id, teacher["id"])
    return {**_pin_payload(lesson_id, pin, expires_at), "radius_meters": radius}


@router.post("/lessons/{lesson_id}/pin")
def regenerate_pin(lesson_id: int, context: dict = Depends(require_csrf)):
    lesson = _owned_lesson(lesson_id, context["user"])
    if not lesson["is_active"]:
        raise ValidationError("Lesson has already ended.")

    pin = generate_pin()
    expires_at = db.utcnow() + timedelta(seconds=config.PIN_VALIDITY_SECONDS)
    if not db.update_lesson_pin(lesson_id, pin, expires_at):
        raise ValidationError("Lesson has already ended.")
    return _pin_payload(lesson_id, pin, expires_at)


@router.patch("/lessons/{lesson_id}/radius")
def update_radius(lesson_id: int, payload: RadiusUpdate, request: Request, context: dict = Depends(require_csrf)):
    lesson = _owned_lesson(lesson_id, context["user"])
    if not lesson["is_active"] or not db.update_lesson_radius(lesson_id, payload.radius_meters):
        raise ValidationError("Lesson has already ended.")

    record_activity(
        "lesson_radius_updated",
        user_id=context["user"]["id"],
        details={
            "lesson_id": lesson_id,
            "from_radius": lesson["radius_meters"],
            "to_radius": payload.radius_meters,
        },
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return {"success": True, "lesson_id": lesson_id, "radius_meters": payload.radius_meters}


@router.post("/lessons/{lesson_id}/end")
def end_lesson(lesson_id: int, request: Request, context: dict = Depends(require_csrf)):
    _owned_lesson(lesson_id, context["user"])
    ended = db.end_lesson(lesson_id)
    if ended:
        record_activity(
            "lesson_ended",
            user_id=context["user"]["id"],
            details={"lesson_id": lesson_id},
            ip_address=client_ip(request),
            user_agent=user_agent(request),
        )
    return {"success": True, "lesson_id": lesson_id, "ended": ended}


@router.get("/lessons/{lesson_id}/attendance")
def lesson_attendance(lesson_id: int, context: dict = Depends(require_role("teacher"))):
    _owned_lesson(lesson_id, context["user"])
    return {"success": True, "lesson_id": lesson_id, "data": db.list_lesson_attendance(lesson_id)}


@router.patch("/lessons/{lesson_id}/attendance/{student_id}")
def update_attendance(
    lesson_id: int,
    student_id: int,
    payload: AttendanceUpdate,
    request: Request,
    context: dict = Depends(require_csrf),
):
    _owned_lesson(lesson_id, context["user"])
    if not db.set_attendance_status(lesson_id, student_id, payload.status):
        raise NotFoundError("Attendance record not found.")

    record_activity(
        "attendance_updated",
        user_id=context["user"]["id"],
        details={"lesson_id": lesson_id, "student_id": student_id, "status": payload.status},
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return {"success": True, "data": db.get_attendance(lesson_id, student_id)}
