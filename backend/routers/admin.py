import asyncio
import logging
import sqlite3
from typing import Callable, Literal

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile
from pydantic import BaseModel, Field

from backend.errors import InternalServiceError, NotFoundError, ValidationError
from backend.recognizer import FaceModel, decode_image, get_face_model_loader, reload_model
from backend.security import client_ip, hash_password, reject_blocked_ip, require_csrf, require_role, user_agent
from backend.services import auth, device
from backend.services.audit import record_activity
from database.db import (
    add_student_to_group,
    create_user,
    get_user_by_id,
    list_activity_logs,
    list_ip_rules,
    list_login_attempts,
    set_face_embedding,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(reject_blocked_ip), Depends(require_role("admin"))])


class BlockIpRequest(BaseModel):
    target_ip: str
    reason: str | None = None
    expires_in: int | None = Field(default=None, ge=1, description="Minutes until the block lapses.")


class UnblockIpRequest(BaseModel):
    target_ip: str


class UserCreate(BaseModel):
    login: str
    full_name: str
    role: Literal["admin", "teacher", "student"]
    password: str
    group_id: int | None = None


@router.post("/admin/ip/block")
def block_ip(payload: BlockIpRequest, request: Request, context: dict = Depends(require_csrf)):
    return auth.block_ip(
        context["user"],
        payload.target_ip,
        reason=payload.reason,
        expires_in_minutes=payload.expires_in,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )


@router.post("/admin/ip/unblock")
def unblock_ip(payload: UnblockIpRequest, request: Request, context: dict = Depends(require_csrf)):
    return auth.unblock_ip(
        context["user"],
        payload.target_ip,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )


@router.get("/admin/ip/blocked")
def blocked_ips():
    return {"success": True, "data": list_ip_rules("blacklist")}


@router.get("/admin/login-attempts")
def login_attempts(
    login: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
):
    clean_login = login.strip() if login else None
    return {"success": True, "data": list_login_attempts(clean_login or None, limit)}


@router.get("/admin/activity-logs")
def activity_logs(
    user_id: int | None = None,
    action: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
):
    return {"success": True, "data": list_activity_logs(user_id=user_id, action=action, limit=limit)}


@router.post("/admin/users")
def create_account(payload: UserCreate, request: Request, context: dict = Depends(require_csrf)):
    login = payload.login.strip()
    full_name = payload.full_name.strip()

    if not login or not full_name or not payload.password:
        raise ValidationError("All fields are required.")
    if payload.group_id is not None and payload.role != "student":
        raise ValidationError("Only students belong to groups.")

    try:
        user_id = create_user(login, full_name, payload.role, hash_password(payload.password))
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Login already exists.")
    if payload.group_id is not None:
        add_student_to_group(user_id, payload.group_id)

    record_activity(
        "user_created",
        user_id=context["user"]["id"],
        details={"target_user_id": user_id, "role": payload.role},
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return {"success": True, "user": auth.public_user(get_user_by_id(user_id))}


@router.post("/admin/groups/{group_id}/students/{student_id}")
def add_to_group(group_id: int, student_id: int, _context: dict = Depends(require_csrf)):
    student = get_user_by_id(student_id)
    if student is None or student["role"] != "student":
        raise NotFoundError("Student not found.")
    add_student_to_group(student_id, group_id)
    return {"success": True, "group_id": group_id, "student_id": student_id}


@router.post("/admin/users/{user_id}/device/reset")
def reset_device(user_id: int, request: Request, context: dict = Depends(require_csrf)):
    device.reset_binding(user_id)
    record_activity(
        "device_reset",
        user_id=context["user"]["id"],
        details={"target_user_id": user_id},
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return {"success": True, "user_id": user_id, "device_bound": False}


@router.post("/admin/users/{user_id}/face")
async def enroll_face(
    user_id: int,
    request: Request,
    file: UploadFile = File(...),
    context: dict = Depends(require_csrf),
    load_model: Callable[[], FaceModel] = Depends(get_face_model_loader),
):
    target = get_user_by_id(user_id)
    if target is None:
        raise NotFoundError("User not found.")
    if target["role"] != "student":
        raise ValidationError("Face ID can only be registered for students.")
    if file.content_type not in ("image/jpeg", "image/png"):
        raise ValidationError("Upload JPG/PNG only.")

    frame = decode_image(await file.read())
    if frame is None:
        raise ValidationError("Invalid image data.")

    model = await asyncio.to_thread(load_model)
    embedding = await asyncio.to_thread(model.embed, frame)
    if embedding is None:
        raise ValidationError("No face detected. Try again.")

    set_face_embedding(user_id, embedding)
    record_activity(
        "face_registered",
        user_id=context["user"]["id"],
        details={"target_user_id": user_id},
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    logger.info("Face registered: user_id=%s by admin_id=%s", user_id, context["user"]["id"])
    return {"success": True, "user_id": user_id, "face_registered": True}


@router.post("/admin/model/reload")
def reload_face_model(_context: dict = Depends(require_csrf)):
    if not reload_model():
        raise InternalServiceError("Face recognition model is unavailable.")
    return {"success": True, "message": "Face model reloaded"}
