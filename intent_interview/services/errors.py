from __future__ import annotations


class ServiceError(RuntimeError):
    """Base error for service-layer failures that map to HTTP responses."""

    status_code: int = 400

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class SessionNotFoundError(ServiceError):
    status_code = 404


class SessionAlreadyExistsError(ServiceError):
    status_code = 409


class SessionCompletedError(ServiceError):
    status_code = 409


class SessionNotSuspendedError(ServiceError):
    status_code = 409


class InvalidIntentError(ServiceError):
    status_code = 400


class ModelGatewayError(RuntimeError):
    """The model gateway could not produce a reply."""


class ModelGatewayTimeout(ModelGatewayError):
    pass
