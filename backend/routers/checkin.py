from typing import Callable

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from backend.config import MAX_CHECKIN_FRAMES
from backend.errors import ForbiddenError, ValidationError
from backend.recognizer import FaceModel, decode_image, get_face_model_loader
from backend.security import client_ip, reject_blocked_ip, require_csrf, require_role, user_agent
from backend.services.audit import record_activity
from backend.services.biometric import UploadedFrameSource
from backend.services.checkin import CheckinFlow
from backend.services.device import is_allowed_browser
from backend.services.geolocation import LocationReading, ReportedLocationSource

router = APIRouter(dependencies=[Depends(reject_blocked_ip), Depends(require_role("student"))])


def _require_student_browser(account: dict, ua: str, ip_address: str) -> None:
    if is_allowed_browser("student", ua):
        return
    record_activity(
        "checkin_rejected",
        user_id=account["id"],
        details={"reason": "unsupported_browser"},
        ip_address=ip_address,
        user_agent=ua,
    )
    raise ForbiddenError("Check in from Chrome or Safari on your phone.")


async def _decode_frames(files: list[UploadFile]) -> list:
    if len(files) > MAX_CHECKIN_FRAMES:
        raise ValidationError(f"At most {MAX_CHECKIN_FRAMES} frames are accepted.")

    frames = []
    for f in files:
        if f.content_type not in ("image/jpeg", "image/png"):
            raise ValidationError("Upload JPG/PNG only.")
        frame = decode_image(await f.read())
        if frame is None:
            raise ValidationError("Invalid image data.")
        frames.append(frame)
    return frames


@router.post("/checkin")
async def checkin(
    request: Request,
    pin: str = Form(...),
    latitude: float = Form(...),
    longitude: float = Form(...),
    accuracy: float = Form(...),
    timestamp: float | None = Form(default=None),
    frames: list[UploadFile] | None = File(default=None),
    context: dict = Depends(require_csrf),
    load_model: Callable[[], FaceModel] = Depends(get_face_model_loader),
):
    ua = user_agent(request)
    ip_address = client_ip(request)
    _require_student_browser(context["account"], ua, ip_address)
    decoded = await _decode_frames(frames or [])

    flow = CheckinFlow(
        student=context["account"],
        fingerprint=context["session"]["fingerprint"],
        user_agent=ua,
        ip_address=ip_address,
        load_model=load_model,
    )
    result = await flow.run(
        pin.strip(),
        ReportedLocationSource(LocationReading(latitude, longitude, accuracy, timestamp)),
        UploadedFrameSource(decoded),
    )
    return result.as_payload()
