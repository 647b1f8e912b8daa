import pytest

from backend.services.geolocation import (
    LocationReading,
    detect_fake_gps,
    distance,
    evaluate_location,
    is_within_radius,
    lesson_radius,
)

LESSON = {"latitude": 55.7558, "longitude": 37.6173, "radius_meters": 120}


def test_distance_zero_for_same_point():
    assert distance(55.7558, 37.6173, 55.7558, 37.6173) == 0.0


def test_distance_one_degree_of_latitude():
    assert distance(0.0, 0.0, 1.0, 0.0) == pytest.approx(111_195, rel=1e-3)


def test_distance_is_symmetric():
    a = distance(55.7558, 37.6173, 59.9343, 30.3351)
    b = distance(59.9343, 30.3351, 55.7558, 37.6173)
    assert a == pytest.approx(b)
    assert a == pytest.approx(634_000, rel=0.01)


def test_radius_boundary_is_inclusive():
    assert is_within_radius(120.0, 120)
    assert not is_within_radius(120.01, 120)


def test_lesson_radius_defaults():
    assert lesson_radius({"radius_meters": None}) == 120.0
    assert lesson_radius({"radius_meters": 50}) == 50.0


@pytest.mark.parametrize("ua", ["Android SDK built for x86", "iPhone Simulator", "Some-Emulator/1.0"])
def test_emulator_user_agents_are_fake(ua):
    check = detect_fake_gps(ua, 10.0)
    assert check.is_fake
    assert "Emulator detected" in check.reasons


def test_accuracy_heuristics():
    assert detect_fake_gps("Mozilla/5.0", 10.0).is_fake is False
    assert detect_fake_gps("Mozilla/5.0", 1.0).is_fake is False
    assert detect_fake_gps("Mozilla/5.0", 1000.0).is_fake is False
    assert detect_fake_gps("Mozilla/5.0", 0.5).reasons == ["GPS accuracy is suspiciously precise"]
    assert detect_fake_gps("Mozilla/5.0", 1500.0).reasons == ["GPS accuracy is invalid"]
    assert detect_fake_gps("Mozilla/5.0", 0.0).reasons == [
        "GPS accuracy is suspiciously precise",
        "GPS accuracy is invalid",
    ]


def test_evaluate_location_inside_radius():
    reading = LocationReading(55.7560, 37.6175, 12.0)
    check = evaluate_location(reading, LESSON, "Mozilla/5.0")
    assert check.within_radius
    assert not check.is_fake_gps
    assert check.reasons == []
    assert check.distance_meters < 50


def test_evaluate_location_outside_radius_reports_distance():
    reading = LocationReading(55.7600, 37.6173, 12.0)
    check = evaluate_location(reading, LESSON, "Mozilla/5.0")
    assert not check.within_radius
    assert check.reasons[0].endswith("m from lesson (allowed: 120m)")
    assert check.fake_reasons == []


def test_evaluate_location_keeps_fake_reasons_separate():
    reading = LocationReading(55.7558, 37.6173, 0.2)
    check = evaluate_location(reading, LESSON, "emulator")
    assert check.within_radius
    assert check.is_fake_gps
    assert check.fake_reasons == ["Emulator detected", "GPS accuracy is suspiciously precise"]
