import pytest

from samsa.errors import (
    AlreadyExistsError,
    ConfigError,
    DatabaseError,
    EtcdError,
    GrpcError,
    InternalError,
    IoError,
    NetworkError,
    NotFoundError,
    ObjectStoreError,
    SamsaError,
    SerializationError,
    StatusCode,
    StorageError,
    UnauthorizedError,
    ValidationError,
    status_code,
)


@pytest.mark.parametrize(
    ("error_type", "prefix"),
    [
        (ConfigError, "Configuration error"),
        (StorageError, "Storage error"),
        (NetworkError, "Network error"),
        (ValidationError, "Validation error"),
        (NotFoundError, "Not found"),
        (AlreadyExistsError, "Already exists"),
        (UnauthorizedError, "Unauthorized"),
        (InternalError, "Internal error"),
        (EtcdError, "ETCD error"),
        (ObjectStoreError, "Object store error"),
        (SerializationError, "Serialization error"),
        (GrpcError, "gRPC error"),
        (IoError, "IO error"),
        (DatabaseError, "Database error"),
    ],
)
def test_display_text(error_type, prefix):
    error = error_type("boom")
    assert str(error) == f"{prefix}: boom"
    assert error.message == "boom"
    assert isinstance(error, SamsaError)


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (NotFoundError("bucket"), StatusCode.NOT_FOUND),
        (AlreadyExistsError("bucket"), StatusCode.ALREADY_EXISTS),
        (ValidationError("bucket"), StatusCode.INVALID_ARGUMENT),
        (ConfigError("bucket"), StatusCode.FAILED_PRECONDITION),
        (UnauthorizedError("bucket"), StatusCode.UNAUTHENTICATED),
    ],
)
def test_direct_codes_carry_bare_message(error, code):
    assert status_code(error) == (code, "bucket")


def test_other_errors_are_internal_with_full_text():
    assert status_code(StorageError("disk full")) == (
        StatusCode.INTERNAL,
        "Storage error: disk full",
    )
    assert status_code(EtcdError("lease lost")) == (
        StatusCode.INTERNAL,
        "ETCD error: lease lost",
    )


def test_foreign_exception_is_internal():
    code, message = status_code(RuntimeError("oops"))
    assert code is StatusCode.INTERNAL
    assert message == "oops"


def test_wrapping_keeps_cause_text():
    cause = OSError("no such file")
    try:
        raise IoError(cause) from cause
    except SamsaError as error:
        assert error.message == "no such file"
        assert error.__cause__ is cause