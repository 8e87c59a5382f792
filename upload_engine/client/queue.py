"""Upload queue running several sessions with a parallelism limit."""

import logging
import mimetypes
import os
import threading
import time
from collections import deque
from typing import Optional, Union

from upload_engine.client.retry import RetryPolicy
from upload_engine.client.session import UploadSession
from upload_engine.client.task import UploadCallbacks, UploadState
from upload_engine.client.transport import TransportClient
from upload_engine.client.tus import TusTransport
from upload_engine.config import EngineConfig
from upload_engine.exceptions import InvalidStateTransition
from upload_engine.fingerprint import Fingerprint
from upload_engine.fingerprint_store import FingerprintStore, MemoryFingerprintStore
from upload_engine.source import FileSource, SourceLike

logger = logging.getLogger(__name__)

TaskHandle = Union[UploadSession, str]


class UploadQueue:
    """Admit uploads and run at most ``parallel_limit`` of them at once.

    Submitted tasks wait in PENDING until a slot frees up; a slot frees when
    a running session completes, fails, is paused or is cancelled. The queue
    is owned by the caller and released with ``shutdown()`` (or by using it
    as a context manager).

    Example:
        >>> with UploadQueue.for_endpoint("http://localhost:8080/files") as queue:
        ...     session = queue.submit_file("video.mp4")
        ...     queue.wait()
        >>> session.final_location
        'http://localhost:8080/files/3f2a...'
    """

    def __init__(
        self,
        transport: TransportClient,
        config: Optional[EngineConfig] = None,
        store: Optional[FingerprintStore] = None,
        callbacks: Optional[UploadCallbacks] = None,
        fingerprinter: Optional[Fingerprint] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """Initialize the queue.

        Args:
            transport: Remote endpoint operations shared by all sessions
            config: Engine configuration
            store: Fingerprint store shared by all sessions (default: in-memory)
            callbacks: Caller callbacks attached to every session
            fingerprinter: Fingerprint generator
            retry_policy: Retry policy (default: built from config)
        """
        self.transport = transport
        self.config = config or EngineConfig()
        self.store = store if store is not None else MemoryFingerprintStore()
        self.callbacks = callbacks or UploadCallbacks()
        self.fingerprinter = fingerprinter or Fingerprint()
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)

        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._sessions: dict[str, UploadSession] = {}
        self._waiting: deque[UploadSession] = deque()
        self._active: set[str] = set()
        self._closed = False

    @classmethod
    def for_endpoint(
        cls,
        url: str,
        config: Optional[EngineConfig] = None,
        headers: Optional[dict[str, str]] = None,
        checksum: bool = True,
        **kwargs,
    ) -> "UploadQueue":
        """Build a queue uploading to a TUS endpoint.

        Fingerprints are namespaced by ``url`` unless a fingerprinter is given.
        """
        config = config or EngineConfig()
        transport = TusTransport(url, timeout=config.request_timeout, checksum=checksum, headers=headers)
        kwargs.setdefault("fingerprinter", Fingerprint(prefix=url))
        return cls(transport, config=config, **kwargs)

    @property
    def parallel_limit(self) -> int:
        return self.config.parallel_limit

    @property
    def tasks(self) -> list[UploadSession]:
        """Visible sessions in submission order; cancelled ones are dropped."""
        with self._lock:
            return list(self._sessions.values())

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def __len__(self) -> int:
        return len(self._sessions)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    def get(self, task_id: str) -> UploadSession:
        """Look up a visible session by task id.

        Raises:
            KeyError: If no such session is tracked
        """
        with self._lock:
            return self._sessions[task_id]

    def _resolve(self, handle: TaskHandle) -> UploadSession:
        if isinstance(handle, UploadSession):
            return handle
        return self.get(handle)

    def submit(
        self,
        source: SourceLike,
        source_size: Optional[int] = None,
        metadata: Optional[dict[str, str]] = None,
        fingerprint: Optional[str] = None,
    ) -> UploadSession:
        """Submit a source for upload.

        If a live session with the same fingerprint is already tracked, that
        session is returned instead of starting a second upload of the same
        data.

        Args:
            source: Bytes, file path, stream, reader function or UploadSource
            source_size: Total size; required for reader functions
            metadata: Caller metadata forwarded to the endpoint
            fingerprint: Caller-supplied fingerprint

        Returns:
            The session handling the upload

        Raises:
            RuntimeError: If the queue has been shut down
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("UploadQueue has been shut down")

            session = UploadSession.create(
                source,
                self.transport,
                metadata=metadata,
                source_size=source_size,
                fingerprint=fingerprint,
                config=self.config,
                fingerprinter=self.fingerprinter,
                store=self.store,
                retry_policy=self.retry_policy,
                callbacks=self.callbacks,
                on_transition=self._handle_transition,
            )

            for existing in self._sessions.values():
                if (
                    existing.task.fingerprint == session.task.fingerprint
                    and existing.state is not UploadState.COMPLETED
                ):
                    logger.info(
                        f"Upload with fingerprint {session.task.fingerprint} "
                        f"already tracked as {existing.id}"
                    )
                    return existing

            self._sessions[session.id] = session
            self._waiting.append(session)
            logger.info(
                f"Submitted upload {session.id} ({session.task.source_size} bytes, "
                f"chunk size {session.task.chunk_size})"
            )
            self._admit()
        return session

    def submit_file(
        self,
        file_path: str,
        metadata: Optional[dict[str, str]] = None,
        fingerprint: Optional[str] = None,
    ) -> UploadSession:
        """Submit a file, filling filename, filetype and filesize metadata.

        Raises:
            FileNotFoundError: If the file doesn't exist
        """
        source = FileSource(file_path)
        size = source.size
        metadata = dict(metadata or {})
        metadata.setdefault("filename", os.path.basename(file_path))
        filetype, _ = mimetypes.guess_type(file_path)
        metadata.setdefault("filetype", filetype or "application/octet-stream")
        metadata.setdefault("filesize", str(size))
        return self.submit(source, size, metadata, fingerprint)

    def pause(self, handle: TaskHandle) -> None:
        self._resolve(handle).pause()

    def resume(self, handle: TaskHandle) -> None:
        """Put a paused task back in line; it starts as soon as a slot is free."""
        self._resolve(handle).resume()

    def cancel(self, handle: TaskHandle) -> None:
        self._resolve(handle).cancel()

    def retry(self, handle: TaskHandle) -> None:
        """Re-arm a failed task; it starts as soon as a slot is free."""
        self._resolve(handle).retry()

    def pause_all(self) -> None:
        """Pause every pending and uploading session."""
        with self._lock:
            # Pending first, so slots freed by pausing running sessions stay empty
            sessions = sorted(
                self._sessions.values(), key=lambda s: s.state is not UploadState.PENDING
            )
            for session in sessions:
                if session.state in (UploadState.PENDING, UploadState.UPLOADING):
                    self._apply(session, "pause")

    def resume_all(self) -> None:
        """Requeue every paused session."""
        with self._lock:
            for session in list(self._sessions.values()):
                if session.state is UploadState.PAUSED:
                    self._apply(session, "requeue")

    def cancel_all(self) -> None:
        """Cancel every session that has not completed."""
        with self._lock:
            sessions = sorted(
                self._sessions.values(), key=lambda s: s.state is not UploadState.PENDING
            )
            for session in sessions:
                if session.state not in (UploadState.COMPLETED, UploadState.CANCELLED):
                    self._apply(session, "cancel")

    def _apply(self, session: UploadSession, operation: str) -> None:
        try:
            getattr(session, operation)()
        except InvalidStateTransition as e:
            # The session moved on by itself in the meantime
            logger.debug(f"Skipping {operation} of upload {session.id}: {e}")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until no session is pending or uploading.

        Returns:
            True if the queue became idle within the timeout
        """
        with self._idle:
            return self._idle.wait_for(lambda: not self._active and not self._waiting, timeout)

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Cancel all outstanding work and reject further submissions.

        Args:
            wait: Join the sessions' background threads
            timeout: Overall limit for joining, in seconds
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            sessions = list(self._sessions.values())
            self._waiting.clear()
            self.cancel_all()

        logger.info(f"Upload queue shut down ({len(sessions)} sessions)")
        if wait:
            deadline = None if timeout is None else time.monotonic() + timeout
            for session in sessions:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                session.wait(remaining)

    def _admit(self) -> None:
        """Start waiting sessions while slots are free. Caller holds the lock."""
        while len(self._active) < self.parallel_limit and self._waiting:
            session = self._waiting.popleft()
            if session.state is not UploadState.PENDING:
                continue
            self._active.add(session.id)
            try:
                session._launch()
            except InvalidStateTransition:
                self._active.discard(session.id)

    def _handle_transition(
        self, session: UploadSession, old: UploadState, new: UploadState
    ) -> None:
        with self._lock:
            if new is UploadState.UPLOADING:
                self._active.add(session.id)
                return

            self._active.discard(session.id)
            if new is UploadState.PENDING:
                if session not in self._waiting:
                    self._waiting.append(session)
            elif session in self._waiting:
                self._waiting.remove(session)
            if new is UploadState.CANCELLED:
                self._sessions.pop(session.id, None)

            if not self._closed:
                self._admit()
            self._idle.notify_all()
