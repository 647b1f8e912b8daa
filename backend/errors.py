class ServiceError(Exception):
    """Base error rendered as ``{"success": false, "error": message}``."""

    status_code = 500
    default_message = "Internal error."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ServiceError):
    status_code = 400
    default_message = "Invalid request."


class AuthError(ServiceError):
    status_code = 401
    default_message = "Invalid login or password."


class ForbiddenError(ServiceError):
    status_code = 403
    default_message = "Access denied."


class NotFoundError(ServiceError):
    status_code = 404
    default_message = "Not found."


class RateLimitError(ServiceError):
    status_code = 429
    default_message = "Too many failed attempts. Try again in 15 minutes."


class InternalServiceError(ServiceError):
    status_code = 500
    default_message = "Internal error."


# Check-in outcomes. The orchestrator turns these into results and never lets
# them reach the HTTP layer.
class GpsRejected(ServiceError):
    status_code = 403
    default_message = "Location rejected."

    def __init__(self, message: str | None = None, *, distance_meters: float | None = None, reasons=None):
        super().__init__(message)
        self.distance_meters = distance_meters
        self.reasons = list(reasons or [])


class BiometricMismatch(ServiceError):
    status_code = 403
    default_message = "Face verification failed."

    def __init__(self, message: str | None = None, *, distance: float | None = None):
        super().__init__(message)
        self.distance = distance
