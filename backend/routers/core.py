from fastapi import APIRouter

from backend.config import (
    ACCESS_TOKEN_TTL_SECONDS,
    DEFAULT_RADIUS_METERS,
    FACE_MATCH_THRESHOLD,
    GPS_MAX_ACCURACY_METERS,
    GPS_MIN_ACCURACY_METERS,
    LIVENESS_MAX_RETRIES,
    LIVENESS_MIN_FACE_SIZE,
    LIVENESS_MIN_MOTION,
    LIVENESS_MIN_SCORE,
    LIVENESS_REQUIRED_PASSES,
    LIVENESS_SAMPLE_INTERVAL_SECONDS,
    LIVENESS_SAMPLES,
    LOCATION_TIMEOUT_SECONDS,
    MAX_CHECKIN_FRAMES,
    PIN_VALIDITY_SECONDS,
    REFRESH_TOKEN_TTL_SECONDS,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/checkin")
def checkin_config():
    return {
        "access_token_ttl_seconds": ACCESS_TOKEN_TTL_SECONDS,
        "refresh_token_ttl_seconds": REFRESH_TOKEN_TTL_SECONDS,
        "default_radius_meters": DEFAULT_RADIUS_METERS,
        "pin_validity_seconds": PIN_VALIDITY_SECONDS,
        "gps_min_accuracy_meters": GPS_MIN_ACCURACY_METERS,
        "gps_max_accuracy_meters": GPS_MAX_ACCURACY_METERS,
        "location_timeout_seconds": LOCATION_TIMEOUT_SECONDS,
        "face_match_threshold": FACE_MATCH_THRESHOLD,
        "liveness_samples": LIVENESS_SAMPLES,
        "liveness_required_passes": LIVENESS_REQUIRED_PASSES,
        "liveness_sample_interval_seconds": LIVENESS_SAMPLE_INTERVAL_SECONDS,
        "liveness_min_face_size": LIVENESS_MIN_FACE_SIZE,
        "liveness_min_score": LIVENESS_MIN_SCORE,
        "liveness_min_motion": LIVENESS_MIN_MOTION,
        "liveness_max_retries": LIVENESS_MAX_RETRIES,
        "max_checkin_frames": MAX_CHECKIN_FRAMES,
    }
