"""Upload task model, states and caller callbacks."""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from upload_engine.client.stats import ProgressEvent
from upload_engine.exceptions import ErrorClass, UploadError
from upload_engine.tracker import OffsetTracker

if TYPE_CHECKING:
    from upload_engine.client.session import UploadSession


class UploadState(str, Enum):
    """Lifecycle states of an upload task."""

    PENDING = "pending"
    UPLOADING = "uploading"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class UploadTask:
    """One file being uploaded.

    Attributes:
        source_size: Total bytes of the source
        chunk_size: Bytes per chunk, fixed when the task is created
        fingerprint: Key of the task in the fingerprint store
        metadata: Caller metadata forwarded verbatim to the transport
        id: Opaque identifier, stable for the task's lifetime
        remote_location: Endpoint-assigned location, set once creation succeeds
        final_location: Permanent location reported by finalization
        state: Current lifecycle state
        last_error: Last classified error, cleared on progress
        attempt: Consecutive failed attempts for the current operation
        tracker: Server-confirmed offsets
    """

    source_size: int
    chunk_size: int
    fingerprint: str
    metadata: dict[str, str] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    remote_location: Optional[str] = None
    final_location: Optional[str] = None
    state: UploadState = UploadState.PENDING
    last_error: Optional[UploadError] = None
    attempt: int = 0
    tracker: OffsetTracker = field(init=False, repr=False)

    def __post_init__(self):
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be at least 1 byte, got {self.chunk_size}")
        self.tracker = OffsetTracker(self.source_size)

    @property
    def bytes_acknowledged(self) -> int:
        return self.tracker.bytes_acknowledged


@dataclass
class UploadCallbacks:
    """Observer callbacks invoked by sessions.

    Callbacks run on the session's worker thread (or the caller's thread for
    caller-driven transitions such as pause and cancel). Exceptions raised by
    a callback are logged and otherwise ignored.
    """

    on_progress: Optional[Callable[["UploadSession", ProgressEvent], None]] = None
    on_completed: Optional[Callable[["UploadSession", str], None]] = None
    on_failed: Optional[Callable[["UploadSession", ErrorClass, str], None]] = None
    on_state_changed: Optional[
        Callable[["UploadSession", UploadState, UploadState], None]
    ] = None
