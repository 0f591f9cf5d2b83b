"""Error types shared across the service and their mapping to RPC status codes."""

from __future__ import annotations

from enum import Enum


class StatusCode(Enum):
    """RPC status codes that service errors are reported with."""

    INVALID_ARGUMENT = 3
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    FAILED_PRECONDITION = 9
    INTERNAL = 13
    UNAUTHENTICATED = 16


class SamsaError(Exception):
    """Base class of every error the service raises."""

    prefix = "Error"

    def __init__(self, message: object = "") -> None:
        self.message = str(message)
        super().__init__(f"{self.prefix}: {self.message}")


class ConfigError(SamsaError):
    prefix = "Configuration error"


class StorageError(SamsaError):
    prefix = "Storage error"


class NetworkError(SamsaError):
    prefix = "Network error"


class ValidationError(SamsaError):
    prefix = "Validation error"


class NotFoundError(SamsaError):
    prefix = "Not found"


class AlreadyExistsError(SamsaError):
    prefix = "Already exists"


class UnauthorizedError(SamsaError):
    prefix = "Unauthorized"


class InternalError(SamsaError):
    prefix = "Internal error"


class EtcdError(SamsaError):
    prefix = "ETCD error"


class ObjectStoreError(SamsaError):
    prefix = "Object store error"


class SerializationError(SamsaError):
    prefix = "Serialization error"


class GrpcError(SamsaError):
    prefix = "gRPC error"


class IoError(SamsaError):
    prefix = "IO error"


class DatabaseError(SamsaError):
    prefix = "Database error"


_DIRECT_CODES: dict[type[SamsaError], StatusCode] = {
    NotFoundError: StatusCode.NOT_FOUND,
    AlreadyExistsError: StatusCode.ALREADY_EXISTS,
    ValidationError: StatusCode.INVALID_ARGUMENT,
    ConfigError: StatusCode.FAILED_PRECONDITION,
    UnauthorizedError: StatusCode.UNAUTHENTICATED,
}


def status_code(error: BaseException) -> tuple[StatusCode, str]:
    """Return the status code and message an error is reported to clients with.

    Errors with a dedicated code carry their bare message; every other error
    is reported as internal with its full text.
    """
    for error_type, code in _DIRECT_CODES.items():
        if isinstance(error, error_type):
            return code, error.message
    return StatusCode.INTERNAL, str(error)