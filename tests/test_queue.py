"""Tests for UploadQueue admission, bulk operations and shutdown."""

import os
import tempfile

import pytest

from upload_engine import (
    EngineConfig,
    ErrorClass,
    InvalidStateTransition,
    TusTransport,
    UploadQueue,
    UploadState,
)

MB = 1024 * 1024


@pytest.fixture
def slow_endpoint(endpoint):
    """Endpoint taking a little time per append so tasks overlap."""
    endpoint.append_delay = 0.05
    return endpoint


def make_queue(endpoint, recorder, parallel_limit=2):
    config = EngineConfig(
        chunk_size_bounds=(1, 64 * MB),
        chunk_size=1024,
        parallel_limit=parallel_limit,
        retry_delays=(0, 0, 0),
    )
    return UploadQueue(endpoint, config=config, callbacks=recorder.callbacks())


def submit_files(queue, count, size=3000):
    return [
        queue.submit(b"x" * size, metadata={"filename": f"file-{i}.bin"}) for i in range(count)
    ]


class TestAdmission:
    """Test parallelism limit and admission order."""

    def test_parallel_limit_respected(self, endpoint, recorder):
        """Test no more than parallel_limit tasks upload at once."""
        endpoint.append_delay = 0.01
        queue = make_queue(endpoint, recorder, parallel_limit=2)
        sessions = submit_files(queue, 5)

        assert queue.wait(30)

        assert all(s.state is UploadState.COMPLETED for s in sessions)
        assert 1 <= recorder.max_uploading <= 2
        assert len(recorder.completed) == 5
        queue.shutdown()

    def test_excess_tasks_wait_pending(self, slow_endpoint, recorder):
        """Test tasks beyond the limit stay PENDING until a slot frees."""
        queue = make_queue(slow_endpoint, recorder, parallel_limit=1)
        first, second, third = submit_files(queue, 3)

        assert first.state is UploadState.UPLOADING
        assert second.state is UploadState.PENDING
        assert third.state is UploadState.PENDING
        assert queue.active_count == 1

        assert queue.wait(30)
        assert all(s.state is UploadState.COMPLETED for s in (first, second, third))
        queue.shutdown()

    def test_fifo_order(self, endpoint, recorder):
        """Test tasks are admitted in submission order."""
        queue = make_queue(endpoint, recorder, parallel_limit=1)
        submit_files(queue, 3)
        assert queue.wait(30)

        created = [call[1]["filename"] for call in endpoint.calls if call[0] == "create"]
        assert created == ["file-0.bin", "file-1.bin", "file-2.bin"]
        queue.shutdown()

    def test_failed_task_frees_slot(self, endpoint, recorder):
        """Test a permanently failing task does not block the others."""
        endpoint.fail("append", on_call=1, error_class=ErrorClass.SERVER_PERMANENT)
        queue = make_queue(endpoint, recorder, parallel_limit=1)
        failing, other = submit_files(queue, 2)

        assert queue.wait(30)
        assert failing.state is UploadState.FAILED
        assert other.state is UploadState.COMPLETED
        assert len(recorder.failed) == 1
        queue.shutdown()


class TestTaskOperations:
    """Test per-task operations through the queue."""

    def test_pause_and_resume_task(self, slow_endpoint, recorder):
        """Test pausing a task frees its slot and resuming requeues it."""
        queue = make_queue(slow_endpoint, recorder, parallel_limit=1)
        first, second = submit_files(queue, 2)

        queue.pause(first.id)
        assert first.state is UploadState.PAUSED
        assert second.state is UploadState.UPLOADING

        queue.resume(first)
        assert first.state in (UploadState.PENDING, UploadState.UPLOADING)

        assert queue.wait(30)
        assert first.state is UploadState.COMPLETED
        assert second.state is UploadState.COMPLETED
        queue.shutdown()

    def test_resume_pending_is_noop(self, slow_endpoint, recorder):
        """Test resuming a task that is already queued changes nothing."""
        queue = make_queue(slow_endpoint, recorder, parallel_limit=1)
        _, second = submit_files(queue, 2)

        queue.resume(second)
        assert second.state is UploadState.PENDING
        queue.shutdown()

    def test_session_resume_waits_for_slot(self, slow_endpoint, recorder):
        """Test resuming through the session itself still honours parallel_limit."""
        queue = make_queue(slow_endpoint, recorder, parallel_limit=1)
        first, second = submit_files(queue, 2, size=20_000)

        first.pause()
        assert second.state is UploadState.UPLOADING

        first.resume()
        assert first.state is UploadState.PENDING
        assert queue.active_count == 1

        first.start()
        assert first.state is UploadState.PENDING

        assert queue.wait(30)
        assert first.state is UploadState.COMPLETED
        assert second.state is UploadState.COMPLETED
        assert recorder.max_uploading == 1
        queue.shutdown()

    def test_resume_completed_rejected(self, endpoint, recorder):
        """Test completed tasks cannot be resumed."""
        queue = make_queue(endpoint, recorder)
        (session,) = submit_files(queue, 1)
        assert queue.wait(30)

        with pytest.raises(InvalidStateTransition):
            queue.resume(session)
        queue.shutdown()

    def test_cancel_removes_task(self, slow_endpoint, recorder):
        """Test a cancelled task disappears from the queue."""
        queue = make_queue(slow_endpoint, recorder, parallel_limit=1)
        first, second = submit_files(queue, 2)

        queue.cancel(first.id)

        assert first.state is UploadState.CANCELLED
        assert [s.id for s in queue.tasks] == [second.id]
        with pytest.raises(KeyError):
            queue.get(first.id)
        assert queue.wait(30)
        assert second.state is UploadState.COMPLETED
        assert recorder.completed == [second.final_location]
        queue.shutdown()

    def test_retry_failed_task(self, endpoint, recorder):
        """Test a failed task can be retried to completion."""
        endpoint.fail("append", on_call=2, error_class=ErrorClass.SERVER_PERMANENT)
        queue = make_queue(endpoint, recorder)
        (session,) = submit_files(queue, 1)
        assert queue.wait(30)
        assert session.state is UploadState.FAILED

        queue.retry(session.id)
        assert queue.wait(30)

        assert session.state is UploadState.COMPLETED
        assert session.bytes_acknowledged == 3000
        assert endpoint.count("create") == 1
        queue.shutdown()

    def test_unknown_task(self, endpoint, recorder):
        """Test unknown ids raise KeyError."""
        queue = make_queue(endpoint, recorder)
        with pytest.raises(KeyError):
            queue.pause("missing")
        queue.shutdown()


class TestBulkOperations:
    """Test pause_all, resume_all and cancel_all."""

    def test_pause_all_and_resume_all(self, slow_endpoint, recorder):
        """Test every task pauses and later completes."""
        queue = make_queue(slow_endpoint, recorder, parallel_limit=1)
        sessions = submit_files(queue, 3)

        queue.pause_all()
        assert all(s.state is UploadState.PAUSED for s in sessions)
        assert queue.active_count == 0
        assert queue.wait(1)

        queue.resume_all()
        assert queue.wait(30)
        assert all(s.state is UploadState.COMPLETED for s in sessions)
        assert recorder.max_uploading == 1
        queue.shutdown()

    def test_cancel_all(self, slow_endpoint, recorder):
        """Test every unfinished task is cancelled and dropped."""
        queue = make_queue(slow_endpoint, recorder, parallel_limit=1)
        sessions = submit_files(queue, 3)

        queue.cancel_all()

        assert all(s.state is UploadState.CANCELLED for s in sessions)
        assert queue.tasks == []
        assert queue.wait(1)
        assert recorder.completed == []
        queue.shutdown()


class TestSubmission:
    """Test submission paths."""

    def test_duplicate_fingerprint_returns_existing(self, slow_endpoint, recorder):
        """Test submitting the same data twice tracks one upload."""
        queue = make_queue(slow_endpoint, recorder)
        first = queue.submit(b"x" * 3000, metadata={"filename": "a.bin"})
        second = queue.submit(b"x" * 3000, metadata={"filename": "a.bin"})

        assert second is first
        assert len(queue) == 1
        assert queue.wait(30)
        assert slow_endpoint.count("create") == 1
        queue.shutdown()

    def test_submit_file_metadata(self, endpoint, recorder):
        """Test filename, filetype and filesize are filled in."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "report.txt")
            with open(path, "wb") as f:
                f.write(b"hello" * 100)

            queue = make_queue(endpoint, recorder)
            session = queue.submit_file(path, metadata={"owner": "alice"})
            assert queue.wait(30)

        assert session.state is UploadState.COMPLETED
        assert session.task.metadata == {
            "owner": "alice",
            "filename": "report.txt",
            "filetype": "text/plain",
            "filesize": "500",
        }
        queue.shutdown()

    def test_submit_missing_file(self, endpoint, recorder):
        """Test a missing file is rejected before anything is queued."""
        queue = make_queue(endpoint, recorder)
        with pytest.raises(FileNotFoundError):
            queue.submit_file("/nonexistent/file.bin")
        assert len(queue) == 0
        queue.shutdown()

    def test_for_endpoint(self):
        """Test the TUS convenience constructor."""
        config = EngineConfig(request_timeout_ms=5000)
        queue = UploadQueue.for_endpoint(
            "http://localhost:8080/files/", config=config, headers={"Authorization": "Bearer x"}
        )
        assert isinstance(queue.transport, TusTransport)
        assert queue.transport.url == "http://localhost:8080/files"
        assert queue.transport.timeout == 5.0
        assert queue.transport.get_headers() == {"Authorization": "Bearer x"}
        assert queue.fingerprinter.prefix == "http://localhost:8080/files/"
        queue.shutdown()

    def test_fingerprints_namespaced_by_endpoint(self, endpoint):
        """Test the same file sent to two endpoints gets two fingerprints."""
        one = UploadQueue.for_endpoint("http://one.example/files")
        two = UploadQueue.for_endpoint("http://two.example/files")
        one.transport = two.transport = endpoint

        first = one.submit(b"abc", metadata={"filename": "a.txt"})
        second = two.submit(b"abc", metadata={"filename": "a.txt"})
        one.shutdown()
        two.shutdown()

        assert first.task.fingerprint != second.task.fingerprint


class TestShutdown:
    """Test queue shutdown."""

    def test_shutdown_rejects_submissions(self, endpoint, recorder):
        """Test submit after shutdown raises."""
        queue = make_queue(endpoint, recorder)
        queue.shutdown()
        with pytest.raises(RuntimeError):
            submit_files(queue, 1)

    def test_shutdown_cancels_outstanding(self, slow_endpoint, recorder):
        """Test shutdown cancels running and waiting tasks."""
        queue = make_queue(slow_endpoint, recorder, parallel_limit=1)
        sessions = submit_files(queue, 3)

        queue.shutdown(timeout=10)

        assert all(s.state is UploadState.CANCELLED for s in sessions)
        assert recorder.completed == []

    def test_context_manager(self, endpoint, recorder):
        """Test the queue shuts down on exit."""
        with make_queue(endpoint, recorder) as queue:
            (session,) = submit_files(queue, 1)
            assert queue.wait(30)

        assert session.state is UploadState.COMPLETED
        with pytest.raises(RuntimeError):
            submit_files(queue, 1)
