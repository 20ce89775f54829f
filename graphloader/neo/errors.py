"""
Error taxonomy and store error classification.

Every failed transaction attempt is classified as one of:

- conflict: a transactional write collision; the batch is retried from
  scratch with a fresh transaction
- validation: the store rejected the batch content; the batch fails, the
  rest of the load continues
- transport: the store is unreachable or refuses our credentials; the batch
  fails and the whole load is cancelled

The boundary between these is vendor specific, so classification is a
plain callable built by ``make_error_classifier`` and injected into the
transaction executor.
"""

from enum import Enum
from typing import Callable, Iterable

from neo4j.exceptions import (
    AuthError,
    DriverError,
    Neo4jError,
    TransientError,
)


class ErrorClass(str, Enum):
    CONFLICT = "conflict"
    VALIDATION = "validation"
    TRANSPORT = "transport"


class LoaderError(Exception):
    """Base class for graphloader errors."""


class InputError(LoaderError):
    """The input stream could not be read."""


class StoreError(LoaderError):
    """A store operation failed with a known classification."""

    error_class: ErrorClass = ErrorClass.VALIDATION


class ConflictError(StoreError):
    """Concurrent modification detected; safe to retry the whole batch."""

    error_class = ErrorClass.CONFLICT


class StoreValidationError(StoreError):
    """The store rejected the mutation content."""

    error_class = ErrorClass.VALIDATION


class TransportError(StoreError):
    """Connection or authentication failure talking to the store."""

    error_class = ErrorClass.TRANSPORT


ErrorClassifier = Callable[[BaseException], ErrorClass]


def make_error_classifier(
    conflict_codes: Iterable[str] = (),
    transport_codes: Iterable[str] = (),
) -> ErrorClassifier:
    """
    Build the default Neo4j error classifier.

    Configured status codes take precedence over the built-in mapping:
    ``TransientError`` is a conflict; ``ServiceUnavailable``,
    ``SessionExpired`` (any ``DriverError``), ``AuthError`` and OS-level
    socket errors are transport failures; anything else fails only its
    batch.

    Args:
        conflict_codes: Extra Neo4j status codes to retry as conflicts
        transport_codes: Extra Neo4j status codes that cancel the load

    Returns:
        Callable mapping an exception to its ErrorClass
    """
    conflicts = frozenset(conflict_codes)
    transports = frozenset(transport_codes)

    def classify(exc: BaseException) -> ErrorClass:
        if isinstance(exc, StoreError):
            return exc.error_class

        code = getattr(exc, "code", None)
        if code in transports:
            return ErrorClass.TRANSPORT
        if code in conflicts:
            return ErrorClass.CONFLICT

        if isinstance(exc, (AuthError, DriverError)):
            return ErrorClass.TRANSPORT
        if isinstance(exc, TransientError):
            return ErrorClass.CONFLICT
        if isinstance(exc, Neo4jError):
            return ErrorClass.VALIDATION
        if isinstance(exc, OSError):
            return ErrorClass.TRANSPORT
        return ErrorClass.VALIDATION

    return classify
