class CadenceError(Exception):
    """Base error; ``status_code`` is what the HTTP layer answers with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CadenceError):
    status_code = 400


class InvalidCursorError(ValidationError):
    pass


class UnsupportedError(ValidationError):
    pass


class NotFoundError(CadenceError):
    status_code = 404


class UnauthorizedError(CadenceError):
    status_code = 401


class UpstreamDeliveryError(CadenceError):
    status_code = 502


class StoreError(CadenceError):
    status_code = 500
