import pytest
from neo4j.exceptions import (
    AuthError,
    ClientError,
    ServiceUnavailable,
    SessionExpired,
    TransientError,
)

from graphloader.neo.errors import (
    ConflictError,
    ErrorClass,
    StoreValidationError,
    TransportError,
    make_error_classifier,
)


class _CodedError(Exception):
    def __init__(self, code):
        super().__init__(code)
        self.code = code


@pytest.mark.parametrize(
    "exc,expected",
    [
        (TransientError("deadlock"), ErrorClass.CONFLICT),
        (ServiceUnavailable("refused"), ErrorClass.TRANSPORT),
        (SessionExpired("expired"), ErrorClass.TRANSPORT),
        (AuthError("bad credentials"), ErrorClass.TRANSPORT),
        (ClientError("syntax"), ErrorClass.VALIDATION),
        (ConnectionResetError("reset"), ErrorClass.TRANSPORT),
        (ValueError("odd"), ErrorClass.VALIDATION),
        (ConflictError("vanished"), ErrorClass.CONFLICT),
        (StoreValidationError("bad"), ErrorClass.VALIDATION),
        (TransportError("down"), ErrorClass.TRANSPORT),
    ],
)
def test_default_classification(exc, expected):
    assert make_error_classifier()(exc) is expected


def test_configured_codes_take_precedence():
    classify = make_error_classifier(
        conflict_codes=["Neo.TransientError.Transaction.DeadlockDetected"],
        transport_codes=["Neo.ClientError.Security.Unauthorized"],
    )
    assert (
        classify(_CodedError("Neo.TransientError.Transaction.DeadlockDetected"))
        is ErrorClass.CONFLICT
    )
    assert (
        classify(_CodedError("Neo.ClientError.Security.Unauthorized"))
        is ErrorClass.TRANSPORT
    )
    assert classify(_CodedError("Neo.ClientError.Statement.SyntaxError")) is ErrorClass.VALIDATION
