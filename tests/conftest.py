"""Shared fixtures: a fault-injecting fake endpoint and an in-process TUS server."""

import base64
import hashlib
import threading
import time
import uuid
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from threading import Thread
from typing import Any, Callable, Optional

import pytest

from upload_engine import EngineConfig, UploadCallbacks
from upload_engine.client.transport import TransportClient
from upload_engine.exceptions import ErrorClass, OffsetMismatchError, UploadError

MB = 1024 * 1024


class FakeEndpoint(TransportClient):
    """In-memory resumable upload endpoint recording every call.

    Faults are keyed by operation name and 1-based call number. A fault with
    ``after_apply=True`` lets the server apply the request before the client
    sees the error, as when a response is lost on the way back.
    """

    def __init__(self, append_delay: float = 0.0):
        self.uploads: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple] = []
        self.append_results: list[int] = []
        self.deleted: list[str] = []
        self.append_delay = append_delay
        self.before_append: Optional[Callable[[int], None]] = None
        self._faults: list[dict[str, Any]] = []
        self._overrides: dict[int, int] = {}
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def fail(
        self,
        operation: str,
        on_call: int,
        error_class: ErrorClass = ErrorClass.SERVER_TEMPORARY,
        times: int = 1,
        after_apply: bool = False,
        status_code: Optional[int] = None,
    ) -> None:
        """Make calls ``on_call`` .. ``on_call + times - 1`` of ``operation`` fail."""
        self._faults.append(
            {
                "operation": operation,
                "first": on_call,
                "last": on_call + times - 1,
                "error_class": error_class,
                "after_apply": after_apply,
                "status_code": status_code,
            }
        )

    def report_offset(self, on_call: int, offset: int) -> None:
        """Make append call ``on_call`` move the server to ``offset`` and report it."""
        self._overrides[on_call] = offset

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def _next_call(self, operation: str, *args) -> int:
        with self._lock:
            self.calls.append((operation, *args))
            self._counts[operation] = self._counts.get(operation, 0) + 1
            return self._counts[operation]

    def _fault(self, operation: str, call_no: int, after_apply: bool) -> None:
        for fault in self._faults:
            if (
                fault["operation"] == operation
                and fault["first"] <= call_no <= fault["last"]
                and fault["after_apply"] == after_apply
            ):
                raise UploadError(
                    f"Injected {fault['error_class'].value} on {operation} #{call_no}",
                    error_class=fault["error_class"],
                    status_code=fault["status_code"],
                )

    def _upload(self, location: str) -> dict[str, Any]:
        upload = self.uploads.get(location)
        if upload is None:
            raise UploadError(f"Upload {location} not found", status_code=404)
        return upload

    def create(self, metadata, source_size):
        call_no = self._next_call("create", dict(metadata), source_size)
        self._fault("create", call_no, after_apply=False)
        location = f"fake://uploads/{uuid.uuid4().hex}"
        self.uploads[location] = {
            "length": source_size,
            "offset": 0,
            "data": bytearray(),
            "metadata": dict(metadata),
        }
        self._fault("create", call_no, after_apply=True)
        return location

    def append(self, remote_location, chunk, expected_offset):
        call_no = self._next_call("append", remote_location, len(chunk), expected_offset)
        if self.before_append is not None:
            self.before_append(call_no)
        if self.append_delay:
            time.sleep(self.append_delay)
        self._fault("append", call_no, after_apply=False)

        upload = self._upload(remote_location)
        if expected_offset != upload["offset"]:
            raise OffsetMismatchError(
                f"Expected offset {upload['offset']}, got {expected_offset}", status_code=409
            )
        upload["data"][expected_offset:] = chunk
        upload["offset"] = expected_offset + len(chunk)

        if call_no in self._overrides:
            upload["offset"] = self._overrides[call_no]
            del upload["data"][upload["offset"] :]

        self.append_results.append(upload["offset"])
        self._fault("append", call_no, after_apply=True)
        return upload["offset"]

    def query_offset(self, remote_location):
        call_no = self._next_call("query_offset", remote_location)
        self._fault("query_offset", call_no, after_apply=False)
        return self._upload(remote_location)["offset"]

    def finalize(self, remote_location):
        call_no = self._next_call("finalize", remote_location)
        self._fault("finalize", call_no, after_apply=False)
        self._upload(remote_location)
        return remote_location.replace("fake://uploads/", "fake://files/")

    def delete(self, remote_location):
        self._next_call("delete", remote_location)
        self.uploads.pop(remote_location, None)
        self.deleted.append(remote_location)


class EventRecorder:
    """Collects every callback invocation, thread-safely."""

    def __init__(self):
        self.progress: list[int] = []
        self.completed: list[str] = []
        self.failed: list[tuple] = []
        self.transitions: list[tuple] = []
        self.uploading = 0
        self.max_uploading = 0
        self._lock = threading.Lock()

    def on_progress(self, session, event):
        with self._lock:
            self.progress.append(event.bytes_acknowledged)

    def on_completed(self, session, final_location):
        with self._lock:
            self.completed.append(final_location)

    def on_failed(self, session, error_class, message):
        with self._lock:
            self.failed.append((error_class, message))

    def on_state_changed(self, session, old, new):
        with self._lock:
            self.transitions.append((session.id, old, new))
            if new.value == "uploading":
                self.uploading += 1
                self.max_uploading = max(self.max_uploading, self.uploading)
            if old.value == "uploading":
                self.uploading -= 1

    def callbacks(self) -> UploadCallbacks:
        return UploadCallbacks(
            on_progress=self.on_progress,
            on_completed=self.on_completed,
            on_failed=self.on_failed,
            on_state_changed=self.on_state_changed,
        )


@pytest.fixture
def endpoint():
    """Create a fake endpoint."""
    return FakeEndpoint()


@pytest.fixture
def recorder():
    """Create an event recorder."""
    return EventRecorder()


@pytest.fixture
def small_config():
    """Config with 1KB chunks and instant retries."""
    return EngineConfig(
        chunk_size_bounds=(1, 64 * MB),
        chunk_size=1024,
        retry_delays=(0, 0, 0),
    )


class TusTestServer:
    """Minimal in-memory TUS 1.0.0 server used to exercise the HTTP transport."""

    TUS_VERSION = "1.0.0"

    def __init__(self, base_path: str = "/files"):
        self.base_path = base_path
        self.uploads: dict[str, dict[str, Any]] = {}
        self.requests: list[tuple[str, str, dict[str, str]]] = []
        self.fail_next: list[int] = []
        self._lock = threading.Lock()

    def handle(self, method: str, path: str, headers: dict[str, str], body: bytes):
        headers = {k.lower(): v for k, v in headers.items()}
        self.requests.append((method, path, headers))

        if self.fail_next:
            return self.fail_next.pop(0), {}, b"Injected failure"

        if method == "OPTIONS":
            return (
                204,
                {
                    "Tus-Resumable": self.TUS_VERSION,
                    "Tus-Version": self.TUS_VERSION,
                    "Tus-Extension": "creation,termination,checksum",
                    "Tus-Max-Size": "1073741824",
                },
                b"",
            )
        if headers.get("tus-resumable") != self.TUS_VERSION:
            return 412, {"Tus-Resumable": self.TUS_VERSION}, b"Invalid TUS version"

        if method == "POST" and path == self.base_path:
            upload_id = uuid.uuid4().hex
            with self._lock:
                self.uploads[upload_id] = {
                    "length": int(headers["upload-length"]),
                    "offset": 0,
                    "data": bytearray(),
                    "metadata": headers.get("upload-metadata", ""),
                }
            return 201, {"Location": f"{self.base_path}/{upload_id}"}, b""

        upload_id = path[len(self.base_path) + 1 :]
        upload = self.uploads.get(upload_id)
        if upload is None:
            return 404, {}, b"Upload not found"

        if method == "HEAD":
            response = {
                "Upload-Offset": str(upload["offset"]),
                "Upload-Length": str(upload["length"]),
                "Cache-Control": "no-store",
            }
            if upload["metadata"]:
                response["Upload-Metadata"] = upload["metadata"]
            return 200, response, b""

        if method == "PATCH":
            if int(headers.get("upload-offset", "-1")) != upload["offset"]:
                return 409, {}, b"Upload-Offset mismatch"
            checksum = headers.get("upload-checksum")
            if checksum:
                _, value = checksum.split(" ", 1)
                if base64.b64decode(value) != hashlib.sha1(body).digest():
                    return 460, {}, b"Checksum mismatch"
            with self._lock:
                upload["data"].extend(body)
                upload["offset"] += len(body)
            return 204, {"Upload-Offset": str(upload["offset"])}, b""

        if method == "DELETE":
            del self.uploads[upload_id]
            return 204, {}, b""

        return 404, {}, b"Not Found"


class TusTestHandler(BaseHTTPRequestHandler):
    tus_server: TusTestServer = None

    def do_OPTIONS(self):
        self._respond("OPTIONS")

    def do_POST(self):
        self._respond("POST")

    def do_HEAD(self):
        self._respond("HEAD")

    def do_PATCH(self):
        self._respond("PATCH")

    def do_DELETE(self):
        self._respond("DELETE")

    def _respond(self, method: str) -> None:
        body = b""
        content_length = int(self.headers.get("Content-Length", 0))
        if content_length > 0:
            body = self.rfile.read(content_length)

        status, response_headers, response_body = self.tus_server.handle(
            method, self.path, dict(self.headers), body
        )

        self.send_response(status)
        response_headers = {"Tus-Resumable": TusTestServer.TUS_VERSION, **response_headers}
        for key, value in response_headers.items():
            self.send_header(key, value)
        if method != "HEAD":
            self.send_header("Content-Length", str(len(response_body)))
        self.end_headers()
        if response_body and method != "HEAD":
            self.wfile.write(response_body)

    def log_message(self, format, *args):
        """Suppress default logging."""
        pass


@pytest.fixture
def tus_server():
    """Start an in-process TUS server; yields (endpoint url, server state)."""
    state = TusTestServer()

    class Handler(TusTestHandler):
        pass

    Handler.tus_server = state

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    port = server.server_address[1]
    thread = Thread(target=server.serve_forever, daemon=True)
    thread.start()

    yield f"http://127.0.0.1:{port}/files", state

    server.shutdown()
    server.server_close()
