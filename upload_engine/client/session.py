"""Upload session: drives one file from creation to completion."""

import logging
import threading
import time
from typing import Callable, Mapping, Optional

from upload_engine.client.retry import RetryPolicy
from upload_engine.client.stats import ProgressEvent, SpeedEstimator, SpeedSample
from upload_engine.client.task import UploadCallbacks, UploadState, UploadTask
from upload_engine.client.transport import TransportClient
from upload_engine.config import EngineConfig
from upload_engine.exceptions import (
    ChunkUploadFailed,
    ErrorClass,
    InvalidStateTransition,
    OffsetMismatchError,
    UploadAborted,
    UploadError,
)
from upload_engine.fingerprint import Fingerprint
from upload_engine.fingerprint_store import (
    FingerprintEntry,
    FingerprintStore,
    MemoryFingerprintStore,
)
from upload_engine.planner import ChunkPlanner
from upload_engine.source import SourceLike, UploadSource, open_source

logger = logging.getLogger(__name__)

# Statuses meaning a stored upload no longer exists on the endpoint
GONE_STATUSES = (404, 410)


class _Run:
    """One execution of the chunk loop on its own thread."""

    def __init__(self, previous: Optional[threading.Thread]):
        self.previous = previous
        self.interrupt = threading.Event()
        self.thread: Optional[threading.Thread] = None


class UploadSession:
    """Resumable upload of a single source.

    The session is a state machine::

        PENDING -> UPLOADING <-> PAUSED
        UPLOADING -> COMPLETED | FAILED
        any non-terminal state -> CANCELLED

    ``start()`` returns immediately; the chunk loop runs on a daemon thread.
    Chunks are appended strictly in offset order and only offsets confirmed
    by the endpoint move the task forward. ``pause()`` and ``cancel()``
    return promptly: a pending retry delay is interrupted and the result of
    an in-flight call is discarded when it returns.

    Example:
        >>> session = UploadSession.create(b"data", transport, metadata={"filename": "a.txt"})
        >>> session.start()
        >>> session.wait()
        >>> session.state
        <UploadState.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        task: UploadTask,
        source: UploadSource,
        transport: TransportClient,
        store: Optional[FingerprintStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
        callbacks: Optional[UploadCallbacks] = None,
        config: Optional[EngineConfig] = None,
        speed_estimator: Optional[SpeedEstimator] = None,
        on_transition: Optional[Callable[["UploadSession", UploadState, UploadState], None]] = None,
    ):
        """Initialize an upload session.

        Args:
            task: Task to drive
            source: Where chunk bytes are read from
            transport: Remote endpoint operations
            store: Fingerprint store for cross-restart resume (default: in-memory)
            retry_policy: Retry policy (default: built from config)
            callbacks: Caller callbacks
            config: Engine configuration
            speed_estimator: Throughput estimator (default: one for the task size)
            on_transition: Hook called after every state change, after the
                caller callbacks; used by the owning queue
        """
        self.task = task
        self.source = source
        self.transport = transport
        self.config = config or EngineConfig()
        self.store = store if store is not None else MemoryFingerprintStore()
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self.callbacks = callbacks or UploadCallbacks()
        self.speed = speed_estimator or SpeedEstimator(task.source_size)
        self._on_transition = on_transition

        self.chunks_completed = 0
        self.chunks_retried = 0
        self.failed_attempts = 0

        self._lock = threading.RLock()
        self._run: Optional[_Run] = None
        self._threads: list[threading.Thread] = []
        self._entry_created_at: Optional[float] = None
        self._last_sample = SpeedSample(0.0, float("inf"))

    @classmethod
    def create(
        cls,
        source: SourceLike,
        transport: TransportClient,
        metadata: Optional[Mapping[str, str]] = None,
        source_size: Optional[int] = None,
        fingerprint: Optional[str] = None,
        config: Optional[EngineConfig] = None,
        fingerprinter: Optional[Fingerprint] = None,
        **kwargs,
    ) -> "UploadSession":
        """Build a session for a source, planning its chunk size and fingerprint.

        Args:
            source: Bytes, file path, stream, reader function or UploadSource
            transport: Remote endpoint operations
            metadata: Caller metadata
            source_size: Total size; required for reader functions
            fingerprint: Caller-supplied fingerprint overriding the derived one
            config: Engine configuration
            fingerprinter: Fingerprint generator
            **kwargs: Passed on to the constructor
        """
        config = config or EngineConfig()
        upload_source, size = open_source(source, source_size)
        chunk_size = ChunkPlanner(config).plan_chunk_size(size)
        metadata = dict(metadata or {})
        if fingerprint is None:
            fingerprinter = fingerprinter or Fingerprint()
            fingerprint = fingerprinter.get_fingerprint(size, metadata, chunk_size)
        task = UploadTask(
            source_size=size, chunk_size=chunk_size, fingerprint=fingerprint, metadata=metadata
        )
        return cls(task, upload_source, transport, config=config, **kwargs)

    @property
    def id(self) -> str:
        return self.task.id

    @property
    def state(self) -> UploadState:
        return self.task.state

    @property
    def bytes_acknowledged(self) -> int:
        return self.task.bytes_acknowledged

    @property
    def remote_location(self) -> Optional[str]:
        return self.task.remote_location

    @property
    def final_location(self) -> Optional[str]:
        return self.task.final_location

    @property
    def last_error(self) -> Optional[UploadError]:
        return self.task.last_error

    @property
    def progress(self) -> ProgressEvent:
        """Current progress snapshot."""
        return ProgressEvent(
            bytes_acknowledged=self.task.bytes_acknowledged,
            source_size=self.task.source_size,
            bytes_per_second=self._last_sample.bytes_per_second,
            eta_seconds=self._last_sample.eta_seconds,
            chunks_completed=self.chunks_completed,
            chunks_retried=self.chunks_retried,
        )

    def __repr__(self) -> str:
        return (
            f"UploadSession(id={self.id!r}, state={self.state.value}, "
            f"{self.bytes_acknowledged}/{self.task.source_size})"
        )

    # Caller operations

    def start(self) -> "UploadSession":
        """Start (or resume) uploading on a background thread.

        A session owned by an ``UploadQueue`` does not start by itself: a
        PAUSED task goes back to PENDING and the queue starts it once a slot
        is free, and a PENDING task is left waiting for its slot.

        Raises:
            InvalidStateTransition: Unless the task is PENDING or PAUSED
        """
        if self._on_transition is not None:
            return self._enqueue("start")
        return self._launch()

    def resume(self) -> "UploadSession":
        """Resume a paused upload; the committed offset is always re-queried."""
        if self._on_transition is not None:
            return self._enqueue("resume")
        return self._launch()

    def _enqueue(self, operation: str) -> "UploadSession":
        state = self.task.state
        if state is UploadState.PENDING:
            return self
        if state is not UploadState.PAUSED:
            raise InvalidStateTransition(operation, state)
        self.requeue()
        return self

    def _launch(self) -> "UploadSession":
        """Enter UPLOADING and run the chunk loop on a new thread."""
        with self._lock:
            state = self.task.state
            if state not in (UploadState.PENDING, UploadState.PAUSED):
                raise InvalidStateTransition("start", state)
            previous = self._run.thread if self._run else None
            run = _Run(previous)
            run.thread = threading.Thread(
                target=self._execute, args=(run,), name=f"upload-{self.id[:8]}", daemon=True
            )
            self._run = run
            self._track(run.thread)
            old = self._set_state(UploadState.UPLOADING)

        self._announce(old, UploadState.UPLOADING)
        run.thread.start()
        return self

    def pause(self) -> None:
        """Pause the upload, keeping its fingerprint entry.

        An in-flight append is abandoned without credit; the next run
        reconciles with the endpoint before sending more data. A PENDING task
        can be paused too, which keeps it out of queue admission.

        Raises:
            InvalidStateTransition: Unless the task is UPLOADING or PENDING
        """
        with self._lock:
            state = self.task.state
            if state not in (UploadState.UPLOADING, UploadState.PENDING):
                raise InvalidStateTransition("pause", state)
            self._interrupt_run()
            old = self._set_state(UploadState.PAUSED)

        logger.info(f"Upload {self.id} paused at {self.bytes_acknowledged}/{self.task.source_size}")
        self._announce(old, UploadState.PAUSED)

    def cancel(self) -> None:
        """Cancel the upload and forget its fingerprint entry.

        Partial remote data is deleted in the background when
        ``config.delete_on_cancel`` is set. A FAILED task may be cancelled to
        discard it.

        Raises:
            InvalidStateTransition: If the task is COMPLETED or CANCELLED
        """
        with self._lock:
            state = self.task.state
            if state in (UploadState.COMPLETED, UploadState.CANCELLED):
                raise InvalidStateTransition("cancel", state)
            run = self._run
            self._interrupt_run()
            old = self._set_state(UploadState.CANCELLED)
            location = self.task.remote_location
            self.store.remove(self.task.fingerprint)

        logger.info(f"Upload {self.id} cancelled")
        if location and self.config.delete_on_cancel:
            cleanup = threading.Thread(
                target=self._delete_remote,
                args=(run.thread if run else None, location),
                name=f"upload-{self.id[:8]}-delete",
                daemon=True,
            )
            with self._lock:
                self._track(cleanup)
            cleanup.start()
        self._announce(old, UploadState.CANCELLED)

    def requeue(self) -> None:
        """Move a PAUSED or FAILED task back to PENDING.

        Raises:
            InvalidStateTransition: Unless the task is PAUSED or FAILED
        """
        with self._lock:
            state = self.task.state
            if state not in (UploadState.PAUSED, UploadState.FAILED):
                raise InvalidStateTransition("requeue", state)
            self.task.attempt = 0
            old = self._set_state(UploadState.PENDING)

        self._announce(old, UploadState.PENDING)

    def retry(self) -> None:
        """Re-arm a FAILED task back to PENDING.

        Raises:
            InvalidStateTransition: Unless the task is FAILED
        """
        if self.task.state is not UploadState.FAILED:
            raise InvalidStateTransition("retry", self.task.state)
        self.requeue()

    def _track(self, thread: threading.Thread) -> None:
        """Remember a thread for ``wait()``. Caller holds the lock."""
        # Finished threads are dropped; not-yet-started ones must stay joinable
        self._threads = [t for t in self._threads if t.is_alive() or t.ident is None]
        self._threads.append(thread)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for the session's background threads to finish.

        Returns:
            True if every thread finished within the timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        current = threading.current_thread()
        while True:
            # A finishing run may start a cleanup thread, so look again after joining
            with self._lock:
                threads = [t for t in self._threads if t is not current and t.is_alive()]
            if not threads:
                return True
            for thread in threads:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                thread.join(remaining)
                if thread.is_alive():
                    return False

    # State bookkeeping

    def _set_state(self, new: UploadState) -> UploadState:
        old = self.task.state
        self.task.state = new
        return old

    def _interrupt_run(self) -> None:
        if self._run is not None:
            self._run.interrupt.set()

    def _is_current(self, run: _Run) -> bool:
        return run is self._run and self.task.state is UploadState.UPLOADING

    def _check_current(self, run: _Run) -> None:
        if not self._is_current(run):
            raise UploadAborted(f"Upload {self.id} is {self.task.state.value}")

    def _emit(self, name: str, *args) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            callback(self, *args)
        except Exception:
            logger.exception(f"{name} callback raised for upload {self.id}")

    def _announce(self, old: UploadState, new: UploadState, event: Optional[Callable] = None):
        self._emit("on_state_changed", old, new)
        if event is not None:
            event()
        if self._on_transition is not None:
            self._on_transition(self, old, new)

    # Worker

    def _execute(self, run: _Run) -> None:
        previous, run.previous = run.previous, None
        if previous is not None and previous.ident is not None:
            # Never let two runs talk to the endpoint for the same upload
            previous.join()

        task = self.task
        try:
            self._check_current(run)
            self._prepare(run)

            self.speed.reset()
            self._last_sample = self.speed.observe(task.bytes_acknowledged)

            while not task.tracker.is_complete:
                self._with_retry(
                    run, f"upload chunk at offset {task.tracker.offset}", lambda: self._send_chunk(run)
                )

            final_location = self._with_retry(
                run, "finalize upload", lambda: self.transport.finalize(task.remote_location)
            )
            self._complete(run, final_location)
        except UploadAborted as e:
            logger.debug(f"Run of upload {self.id} stopped: {e}")
        except UploadError as e:
            self._fail(run, e)
        except Exception as e:
            logger.exception(f"Unexpected error in upload {self.id}")
            self._fail(run, UploadError(str(e), error_class=ErrorClass.PROTOCOL_VIOLATION))

    def _with_retry(self, run: _Run, description: str, operation: Callable):
        """Run an operation, retrying failures as the retry policy allows."""
        task = self.task
        while True:
            try:
                result = operation()
            except UploadAborted:
                raise
            except UploadError as e:
                self._check_current(run)
                with self._lock:
                    task.attempt += 1
                    task.last_error = e
                    attempt = task.attempt
                self.failed_attempts += 1

                decision = self.retry_policy.should_retry(e.error_class, attempt)
                if not decision.retry:
                    raise
                logger.warning(
                    f"Failed to {description} for upload {self.id} "
                    f"(attempt {attempt}, {e.error_class.value}): {e}. "
                    f"Retrying in {decision.delay:.1f}s..."
                )
                if run.interrupt.wait(decision.delay):
                    raise UploadAborted(f"Upload {self.id} interrupted while waiting to retry")
                self._check_current(run)
                continue

            self._check_current(run)
            task.attempt = 0
            return result

    def _prepare(self, run: _Run) -> None:
        """Create the remote upload, or reconcile with an existing one."""
        task = self.task

        if task.remote_location is not None:
            server_offset = self._with_retry(
                run, "query offset", lambda: self.transport.query_offset(task.remote_location)
            )
            self._apply_offset(run, server_offset)
            logger.info(
                f"Resuming upload {self.id} at {server_offset}/{task.source_size} "
                f"({task.remote_location})"
            )
            return

        entry = self.store.get(task.fingerprint)
        if entry is not None and entry.is_expired(self.config.fingerprint_ttl_seconds):
            logger.info(f"Discarding expired resume entry for upload {self.id}")
            self.store.remove(task.fingerprint)
            entry = None

        if entry is not None:
            try:
                server_offset = self._with_retry(
                    run,
                    "query offset of stored upload",
                    lambda: self.transport.query_offset(entry.remote_location),
                )
            except UploadAborted:
                raise
            except UploadError as e:
                if e.status_code not in GONE_STATUSES:
                    raise
                logger.info(
                    f"Stored upload {entry.remote_location} is gone ({e.status_code}), "
                    f"creating a new one"
                )
                with self._lock:
                    task.attempt = 0
                    task.last_error = None
                    self.store.remove(task.fingerprint)
            else:
                self._record_location(run, entry.remote_location, entry.created_at)
                self._apply_offset(run, server_offset)
                logger.info(
                    f"Resuming stored upload {self.id} at {server_offset}/{task.source_size} "
                    f"({entry.remote_location})"
                )
                return

        location = self._with_retry(
            run, "create upload", lambda: self.transport.create(task.metadata, task.source_size)
        )
        self._record_location(run, location)
        logger.info(f"Upload {self.id} created: {location} ({task.source_size} bytes)")

    def _record_location(self, run: _Run, location: str, created_at: Optional[float] = None):
        task = self.task
        with self._lock:
            if task.remote_location is None:
                task.remote_location = location
            self._entry_created_at = created_at or time.time()
            cancelled = task.state is UploadState.CANCELLED
            if not cancelled:
                self.store.put(
                    task.fingerprint,
                    FingerprintEntry(location, task.bytes_acknowledged, self._entry_created_at),
                )

        if cancelled and self.config.delete_on_cancel:
            # Cancelled while the upload was being created
            self._delete_remote(None, location)
        self._check_current(run)

    def _send_chunk(self, run: _Run) -> None:
        task = self.task
        tracker = task.tracker
        reconciled = task.attempt > 0

        if reconciled:
            # The previous attempt may have been applied before it failed
            server_offset = self.transport.query_offset(task.remote_location)
            self._apply_offset(run, server_offset)
            if tracker.is_complete:
                return

        offset = tracker.offset
        length = min(task.chunk_size, task.source_size - offset)
        chunk = self.source.read_exact(offset, length)
        retried = task.attempt > 0

        try:
            new_offset = self.transport.append(task.remote_location, chunk, offset)
        except OffsetMismatchError as e:
            if reconciled:
                # Rejected at the offset the endpoint itself just reported
                raise ChunkUploadFailed(
                    f"Endpoint rejected offset {offset} it just reported: {e}",
                    error_class=ErrorClass.SERVER_PERMANENT,
                    status_code=e.status_code,
                    response_content=e.response_content,
                ) from e
            raise
        self._check_current(run)

        if new_offset <= offset:
            self._apply_offset(run, new_offset)
            raise OffsetMismatchError(
                f"Endpoint answered offset {new_offset} to a chunk sent at {offset}",
                server_offset=new_offset,
            )

        self._apply_offset(run, new_offset)
        self.chunks_completed += 1
        if retried:
            self.chunks_retried += 1
        logger.debug(
            f"Upload {self.id}: chunk at offset {offset} accepted, "
            f"offset now {new_offset}/{task.source_size}"
        )

    def _apply_offset(self, run: _Run, server_offset: int) -> None:
        """Record a server-confirmed offset, persist it and report progress."""
        task = self.task
        with self._lock:
            self._check_current(run)
            increased = task.tracker.update(server_offset)
            if increased:
                task.attempt = 0
                task.last_error = None
            self.store.put(
                task.fingerprint,
                FingerprintEntry(
                    task.remote_location,
                    task.bytes_acknowledged,
                    self._entry_created_at or time.time(),
                ),
            )

        if increased:
            self._last_sample = self.speed.observe(task.bytes_acknowledged)
            self._emit("on_progress", self.progress)

    def _complete(self, run: _Run, final_location: str) -> None:
        task = self.task
        with self._lock:
            self._check_current(run)
            task.final_location = final_location
            self.store.remove(task.fingerprint)
            old = self._set_state(UploadState.COMPLETED)

        logger.info(f"Upload {self.id} completed: {final_location}")
        self._announce(
            old,
            UploadState.COMPLETED,
            lambda: self._emit("on_completed", final_location),
        )

    def _fail(self, run: _Run, error: UploadError) -> None:
        task = self.task
        with self._lock:
            if not self._is_current(run):
                logger.debug(f"Ignoring failure of stale run of upload {self.id}: {error}")
                return
            task.last_error = error
            old = self._set_state(UploadState.FAILED)

        logger.error(
            f"Upload {self.id} failed at {task.bytes_acknowledged}/{task.source_size} "
            f"({error.error_class.value}): {error}"
        )
        self._announce(
            old,
            UploadState.FAILED,
            lambda: self._emit("on_failed", error.error_class, error.message),
        )

    def _delete_remote(self, previous: Optional[threading.Thread], location: str) -> None:
        if previous is not None and previous.ident is not None:
            if previous is not threading.current_thread():
                previous.join()
        try:
            self.transport.delete(location)
            logger.info(f"Deleted partial upload {location}")
        except UploadError as e:
            logger.warning(f"Failed to delete partial upload {location}: {e}")
