"""
Exception classes and error classification for the upload engine.

Every failure coming out of a transport is an ``UploadError`` tagged with an
``ErrorClass``; the retry policy and the session decide what to do based on
that class alone.
"""

from enum import Enum
from typing import Optional


class ErrorClass(str, Enum):
    """Classification of a failed remote operation."""

    TRANSIENT_NETWORK = "transient_network"
    SERVER_TEMPORARY = "server_temporary"
    SERVER_PERMANENT = "server_permanent"
    CLIENT_ABORTED = "client_aborted"
    PROTOCOL_VIOLATION = "protocol_violation"


# 4xx statuses that still describe a temporary condition
TEMPORARY_CLIENT_STATUSES = frozenset({408, 423, 429})


def classify_status(status_code: Optional[int]) -> ErrorClass:
    """Map an HTTP-like status code to an error class.

    Args:
        status_code: Status of the failed response, or None when no response
            was received at all.

    Returns:
        ErrorClass for the status
    """
    if status_code is None:
        return ErrorClass.TRANSIENT_NETWORK
    if status_code >= 500 or status_code in TEMPORARY_CLIENT_STATUSES:
        return ErrorClass.SERVER_TEMPORARY
    if 400 <= status_code < 500:
        return ErrorClass.SERVER_PERMANENT
    return ErrorClass.PROTOCOL_VIOLATION


class UploadError(Exception):
    """
    Exception raised when an operation against the upload endpoint fails.

    Attributes:
        message (str): Main message of the exception
        error_class (ErrorClass): Classification driving retry decisions
        status_code (int): Status code of the response indicating an error
        response_content (bytes): Content of the response indicating an error
    """

    default_error_class: Optional[ErrorClass] = None

    def __init__(
        self,
        message: Optional[str] = None,
        error_class: Optional[ErrorClass] = None,
        status_code: Optional[int] = None,
        response_content: Optional[bytes] = None,
    ):
        default_message = f"Communication with upload endpoint failed with status {status_code}"
        message = message or default_message
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_content = response_content
        self.error_class = error_class or self.default_error_class or classify_status(status_code)

    @property
    def retryable(self) -> bool:
        """Whether the error class may be retried by a retry policy."""
        return self.error_class in (ErrorClass.TRANSIENT_NETWORK, ErrorClass.SERVER_TEMPORARY)


class ChunkUploadFailed(UploadError):
    """Exception raised when the endpoint rejects an appended chunk."""

    pass


class OffsetMismatchError(UploadError):
    """The endpoint holds a different offset than the one a chunk was sent at.

    This is reconcilable: the session re-queries the offset and continues
    from the server's value.
    """

    default_error_class = ErrorClass.SERVER_TEMPORARY

    def __init__(self, message=None, server_offset=None, **kwargs):
        super().__init__(message, **kwargs)
        self.server_offset = server_offset


class ProtocolViolation(UploadError):
    """The endpoint answered with something that cannot be reconciled."""

    default_error_class = ErrorClass.PROTOCOL_VIOLATION


class SourceError(ProtocolViolation):
    """The byte source could not supply the bytes it declared."""

    pass


class UploadAborted(UploadError):
    """An in-flight operation was abandoned because of pause or cancel."""

    default_error_class = ErrorClass.CLIENT_ABORTED


class InvalidStateTransition(Exception):
    """Raised when a task operation is not valid in the task's current state."""

    def __init__(self, operation: str, state):
        super().__init__(f"Cannot {operation} an upload in state {state.value}")
        self.operation = operation
        self.state = state
