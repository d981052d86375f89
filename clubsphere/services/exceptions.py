class ServiceError(Exception):
    """Error raised by service functions and rendered by the API layer."""

    status_code = 400

    def __init__(self, message: str, status_code: int | None = None, *, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.detail = message
        if status_code is not None:
            self.status_code = status_code
        self.retryable = retryable


class BadRequest(ServiceError):
    status_code = 400


class Unauthorized(ServiceError):
    status_code = 401


class Forbidden(ServiceError):
    status_code = 403


class NotFound(ServiceError):
    status_code = 404


class Conflict(ServiceError):
    status_code = 409


class AlreadyRegistered(Conflict):
    """Duplicate registration; callers report it as an informational success."""

    def __init__(self, message: str = "Already registered", registration=None):
        super().__init__(message)
        self.registration = registration


class Full(Conflict):
    def __init__(self, message: str = "Event is full"):
        super().__init__(message)


class PaymentIncomplete(ServiceError):
    status_code = 400

    def __init__(self, message: str = "Payment not completed"):
        super().__init__(message)


class InvalidMetadata(ServiceError):
    status_code = 400


class UpstreamFailure(ServiceError):
    """A gateway or identity provider call failed; safe for the client to retry."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message, retryable=True)
