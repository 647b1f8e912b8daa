import hashlib

import pytest

import database.db as db
from backend.errors import ForbiddenError, NotFoundError
from backend.services.device import (
    DeviceTraits,
    compute_fingerprint,
    enforce_binding,
    is_allowed_browser,
    reset_binding,
)
from fakes import DESKTOP_CHROME_UA, MOBILE_CHROME_UA


def _traits(**overrides) -> DeviceTraits:
    values = {
        "user_agent": "Mozilla/5.0 (X11; Linux x86_64)",
        "language": "ru-RU",
        "platform": "Linux x86_64",
        "screen_width": 1920,
        "screen_height": 1080,
        "color_depth": 24,
        "pixel_depth": 24,
        "timezone_offset": -180,
        "hardware_concurrency": 8,
        "max_touch_points": 0,
        "device_memory": 8,
        "canvas_sample": "data:image/png;base64,AAAA",
        "audio_sample": "124.04347527516074",
    }
    values.update(overrides)
    return DeviceTraits(**values)


def test_fingerprint_is_sha512_of_ordered_components():
    expected_source = "§".join(
        [
            "Mozilla/5.0 (X11; Linux x86_64)",
            "ru-RU",
            "Linux x86_64",
            "1920x1080x24",
            "-180",
            "8",
            "0",
            "24",
            "8",
            "data:image/png;base64,AAAA",
            "124.04347527516074",
        ]
    )
    expected = hashlib.sha512(expected_source.encode("utf-8")).hexdigest()
    assert compute_fingerprint(_traits()) == expected


def test_fingerprint_formats_fractional_memory_like_a_browser():
    half = compute_fingerprint(_traits(device_memory=0.5))
    source = "§".join(
        ["Mozilla/5.0 (X11; Linux x86_64)", "ru-RU", "Linux x86_64", "1920x1080x24", "-180", "8", "0", "24",
         "0.5", "data:image/png;base64,AAAA", "124.04347527516074"]
    )
    assert half == hashlib.sha512(source.encode("utf-8")).hexdigest()


def test_fingerprint_changes_with_any_component():
    base = compute_fingerprint(_traits())
    assert compute_fingerprint(_traits(language="en-US")) != base
    assert compute_fingerprint(_traits(canvas_sample="no-canvas")) != base
    assert len(base) == 128


def test_first_login_binds_device(make_user):
    alice = make_user("alice")
    outcome = enforce_binding(alice, "phone-1")
    assert outcome.action == "bound"
    assert db.get_user_by_id(alice["id"])["device_fingerprint"] == "phone-1"


def test_same_device_matches(make_user):
    alice = make_user("alice", fingerprint="phone-1")
    assert enforce_binding(alice, "phone-1").action == "matched"


@pytest.mark.parametrize("role", ["student", "admin"])
def test_mismatch_is_blocked_for_pinned_roles(make_user, role):
    user = make_user("pinned", role=role, fingerprint="phone-1")
    with pytest.raises(ForbiddenError):
        enforce_binding(user, "phone-2")
    assert db.get_user_by_id(user["id"])["device_fingerprint"] == "phone-1"


def test_teacher_mismatch_rebinds(make_user):
    bob = make_user("bob", role="teacher", fingerprint="laptop-1")
    outcome = enforce_binding(bob, "laptop-2")
    assert outcome.action == "rebound"
    assert outcome.previous_fingerprint == "laptop-1"
    assert db.get_user_by_id(bob["id"])["device_fingerprint"] == "laptop-2"


def test_reset_binding(make_user):
    alice = make_user("alice", fingerprint="phone-1")
    reset_binding(alice["id"])
    assert db.get_user_by_id(alice["id"])["device_fingerprint"] is None

    with pytest.raises(NotFoundError):
        reset_binding(424242)


IPHONE_SAFARI = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1"
)
ANDROID_EDGE = MOBILE_CHROME_UA + " EdgA/124.0.0.0"
ANDROID_FIREFOX = "Mozilla/5.0 (Android 14; Mobile; rv:125.0) Gecko/125.0 Firefox/125.0"


@pytest.mark.parametrize(
    "user_agent,allowed",
    [
        (MOBILE_CHROME_UA, True),
        (IPHONE_SAFARI, True),
        (DESKTOP_CHROME_UA, False),
        (ANDROID_EDGE, False),
        (ANDROID_FIREFOX, False),
        ("", False),
    ],
)
def test_students_need_mobile_chrome_or_safari(user_agent, allowed):
    assert is_allowed_browser("student", user_agent) is allowed


def test_staff_may_use_desktop_chrome():
    assert is_allowed_browser("teacher", DESKTOP_CHROME_UA)
    assert is_allowed_browser("admin", IPHONE_SAFARI)
    assert not is_allowed_browser("admin", ANDROID_FIREFOX)
