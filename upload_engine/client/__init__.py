"""Upload engine client components."""

from upload_engine.client.queue import UploadQueue
from upload_engine.client.retry import RetryDecision, RetryPolicy
from upload_engine.client.session import UploadSession
from upload_engine.client.stats import ProgressEvent, SpeedEstimator
from upload_engine.client.task import UploadCallbacks, UploadState, UploadTask
from upload_engine.client.transport import TransportClient
from upload_engine.client.tus import TusTransport

__all__ = [
    "UploadQueue",
    "UploadSession",
    "UploadTask",
    "UploadState",
    "UploadCallbacks",
    "RetryPolicy",
    "RetryDecision",
    "ProgressEvent",
    "SpeedEstimator",
    "TransportClient",
    "TusTransport",
]
