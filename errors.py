from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    validation = "validation"
    authentication = "authentication"
    authorization = "authorization"
    not_found = "not_found"
    conflict = "conflict"
    internal = "internal"


STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.validation: 400,
    ErrorKind.authentication: 401,
    ErrorKind.authorization: 403,
    ErrorKind.not_found: 404,
    ErrorKind.conflict: 409,
    ErrorKind.internal: 500,
}


class ServiceError(Exception):
    kind: ErrorKind = ErrorKind.internal

    def __init__(self, message: str, kind: Optional[ErrorKind] = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]


class ValidationFailed(ServiceError):
    kind = ErrorKind.validation


class AuthenticationFailed(ServiceError):
    kind = ErrorKind.authentication


class PermissionDenied(ServiceError):
    kind = ErrorKind.authorization


class NotFound(ServiceError):
    kind = ErrorKind.not_found
