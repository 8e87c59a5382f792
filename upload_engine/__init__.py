"""Resumable Upload Engine

Client-side engine for resumable chunked uploads: splits sources into
chunks, streams them to a resumable upload endpoint (such as a TUS server)
with byte-offset tracking, resumes after interruptions and runs several
uploads concurrently with pause, resume, cancel and retry per upload.
"""

__version__ = "0.1.0"

from upload_engine.client import (
    ProgressEvent,
    RetryPolicy,
    SpeedEstimator,
    TransportClient,
    TusTransport,
    UploadCallbacks,
    UploadQueue,
    UploadSession,
    UploadState,
    UploadTask,
)
from upload_engine.config import EngineConfig
from upload_engine.exceptions import (
    ErrorClass,
    InvalidStateTransition,
    OffsetMismatchError,
    ProtocolViolation,
    UploadError,
)
from upload_engine.fingerprint import Fingerprint
from upload_engine.fingerprint_store import (
    FileFingerprintStore,
    FingerprintEntry,
    FingerprintStore,
    MemoryFingerprintStore,
    SQLiteFingerprintStore,
)
from upload_engine.planner import ChunkPlanner

__all__ = [
    "UploadQueue",
    "UploadSession",
    "UploadTask",
    "UploadState",
    "UploadCallbacks",
    "ProgressEvent",
    "SpeedEstimator",
    "RetryPolicy",
    "TransportClient",
    "TusTransport",
    "EngineConfig",
    "ChunkPlanner",
    "ErrorClass",
    "UploadError",
    "OffsetMismatchError",
    "ProtocolViolation",
    "InvalidStateTransition",
    "Fingerprint",
    "FingerprintEntry",
    "FingerprintStore",
    "MemoryFingerprintStore",
    "FileFingerprintStore",
    "SQLiteFingerprintStore",
]
