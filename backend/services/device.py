import hashlib
import logging
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, Field

from backend.errors import ForbiddenError, NotFoundError
from database.db import get_user_by_id, set_device_fingerprint

logger = logging.getLogger(__name__)

FINGERPRINT_SEPARATOR = "§"

BindingAction = Literal["bound", "matched", "rebound"]


class DeviceTraits(BaseModel):
    """Browser characteristics a client reports for fingerprinting."""

    user_agent: str = ""
    language: str = ""
    platform: str = ""
    screen_width: int = 0
    screen_height: int = 0
    color_depth: int = 0
    pixel_depth: int = 0
    timezone_offset: int = 0
    hardware_concurrency: int = 0
    max_touch_points: int = 0
    device_memory: float = 0
    canvas_sample: str = Field(default="no-canvas")
    audio_sample: str = Field(default="no-audio")


@dataclass(frozen=True)
class BindingOutcome:
    action: BindingAction
    fingerprint: str
    previous_fingerprint: str | None = None


def _js_number(value: float | int) -> str:
    # Match how a browser stringifies numbers: 8 -> "8", 0.5 -> "0.5".
    number = float(value)
    if number.is_integer():
        return str(int(number))
    return repr(number)


def compute_fingerprint(traits: DeviceTraits) -> str:
    components = [
        traits.user_agent,
        traits.language,
        traits.platform,
        f"{traits.screen_width}x{traits.screen_height}x{traits.color_depth}",
        _js_number(traits.timezone_offset),
        _js_number(traits.hardware_concurrency),
        _js_number(traits.max_touch_points),
        _js_number(traits.pixel_depth),
        _js_number(traits.device_memory),
        traits.canvas_sample,
        traits.audio_sample,
    ]
    data = FINGERPRINT_SEPARATOR.join(components)
    return hashlib.sha512(data.encode("utf-8")).hexdigest()


def enforce_binding(account: dict, fingerprint: str) -> BindingOutcome:
    """
    Apply the role's device policy to a login from `fingerprint`.

    Students and admins are pinned to the first device they log in from;
    teachers follow their latest device.
    """
    stored = account.get("device_fingerprint")
    role = account["role"]

    if not stored:
        set_device_fingerprint(account["id"], fingerprint)
        logger.info("Device bound: user_id=%s role=%s", account["id"], role)
        return BindingOutcome("bound", fingerprint)

    if stored == fingerprint:
        return BindingOutcome("matched", fingerprint)

    if role == "teacher":
        set_device_fingerprint(account["id"], fingerprint)
        logger.info("Teacher device changed: user_id=%s", account["id"])
        return BindingOutcome("rebound", fingerprint, previous_fingerprint=stored)

    logger.warning("Device mismatch: user_id=%s role=%s", account["id"], role)
    raise ForbiddenError(
        "Login from this device is not allowed. Contact an administrator to change devices."
    )


def reset_binding(user_id: int) -> None:
    if get_user_by_id(user_id) is None:
        raise NotFoundError("User not found.")
    set_device_fingerprint(user_id, None)
    logger.info("Device binding reset: user_id=%s", user_id)


MOBILE_MARKERS = ("android", "iphone", "ipad", "ipod", "mobile", "webos")


def is_mobile_user_agent(user_agent: str | None) -> bool:
    ua = (user_agent or "").lower()
    return any(marker in ua for marker in MOBILE_MARKERS)


def is_allowed_browser(role: str, user_agent: str | None) -> bool:
    """
    Students: mobile Chrome or Safari only. Staff: desktop Chrome, or
    Chrome/Safari on a phone.
    """
    ua = (user_agent or "").lower()
    is_chrome = "chrome" in ua and "edg" not in ua
    is_safari = "safari" in ua and "chrome" not in ua
    is_mobile = is_mobile_user_agent(ua)
    if role == "student":
        return is_mobile and (is_chrome or is_safari)
    return is_chrome or (is_mobile and is_safari)
