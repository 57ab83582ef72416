"""Custom application exceptions."""


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code."""
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class BadRequestException(AppException):
    """Bad request exception."""

    def __init__(self, message: str = "Bad request"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class ValidationException(AppException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation error"):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422)


class SchedulingError(AppException):
    """The delayed job store failed while (re)scheduling or clearing reminders.

    Some windows may have been applied before the failure; ``errors`` holds
    every store exception collected across the windows.
    """

    def __init__(
        self,
        message: str,
        appointment_id: str | None = None,
        errors: list[BaseException] | None = None,
    ):
        """Initialize with 503 status code."""
        self.appointment_id = appointment_id
        self.errors = errors or []
        super().__init__(message, status_code=503)


class DeliveryError(AppException):
    """Sending a reminder failed inside the notification worker."""

    def __init__(self, message: str, job_id: str | None = None):
        """Initialize with 502 status code."""
        self.job_id = job_id
        super().__init__(message, status_code=502)
