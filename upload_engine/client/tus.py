"""TUS protocol transport implementation."""

import base64
import hashlib
import http.client
import logging
import re
import socket
import ssl
from typing import Any, Mapping, Optional, Union
from urllib.error import HTTPError, URLError
from urllib.parse import urljoin
from urllib.request import Request, urlopen

from upload_engine.client.transport import TransportClient
from upload_engine.config import DEFAULT_REQUEST_TIMEOUT_MS
from upload_engine.exceptions import (
    ChunkUploadFailed,
    ErrorClass,
    OffsetMismatchError,
    ProtocolViolation,
    UploadError,
)

logger = logging.getLogger(__name__)

# TUS checksum extension: checksum mismatch
CHECKSUM_MISMATCH = 460

# Upload-Metadata keys are non-empty and free of whitespace and commas
METADATA_KEY_PATTERN = re.compile(r"[^\s,]+")


class TusTransport(TransportClient):
    """Resumable upload endpoint speaking TUS 1.0.0 over HTTP.

    This transport implements TUS protocol version 1.0.0 as specified at:
    https://tus.io/protocols/resumable-upload.html

    Requests:
        - POST creates an upload (creation extension)
        - PATCH appends a chunk at an offset
        - HEAD queries the committed offset
        - DELETE terminates an upload (termination extension)
        - OPTIONS discovers server capabilities

    Example:
        >>> transport = TusTransport("http://localhost:8080/files", timeout=10)
        >>> location = transport.create({"filename": "a.bin"}, 1024)
        >>> transport.append(location, b"x" * 1024, 0)
        1024
    """

    TUS_VERSION = "1.0.0"

    def __init__(
        self,
        url: str,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_MS / 1000,
        checksum: bool = True,
        verify_tls_cert: bool = True,
        metadata_encoding: str = "utf-8",
        headers: Optional[dict[str, str]] = None,
    ):
        """Initialize TUS transport.

        Args:
            url: Creation endpoint of the TUS server
            timeout: Timeout for each request in seconds
            checksum: Send SHA1 Upload-Checksum headers (default: True)
            verify_tls_cert: Verify TLS certificates (default: True)
            metadata_encoding: Encoding for metadata values (default: utf-8)
            headers: Optional custom headers to include in all requests
        """
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.checksum = checksum
        self.verify_tls_cert = verify_tls_cert
        self.metadata_encoding = metadata_encoding
        self.headers = headers or {}
        self._ssl_context = None
        if not verify_tls_cert:
            self._ssl_context = ssl.create_default_context()
            self._ssl_context.check_hostname = False
            self._ssl_context.verify_mode = ssl.CERT_NONE

    def _base_headers(self) -> dict[str, str]:
        return {"Tus-Resumable": self.TUS_VERSION, **self.headers}

    def _open(self, req: Request, action: str, error_cls=UploadError):
        """Send a request, translating transport failures into UploadError."""
        try:
            return urlopen(req, timeout=self.timeout, context=self._ssl_context)
        except HTTPError as e:
            raise error_cls(
                f"Failed to {action}: {e.code} {e.reason}",
                status_code=e.code,
                response_content=e.read(),
            ) from e
        except (URLError, socket.timeout, http.client.HTTPException, OSError) as e:
            raise UploadError(
                f"Failed to {action}: {e}", error_class=ErrorClass.TRANSIENT_NETWORK
            ) from e

    def create(self, metadata: Mapping[str, str], source_size: int) -> str:
        """Create a new upload on the server."""
        headers = {
            **self._base_headers(),
            "Upload-Length": str(source_size),
        }

        encoded_metadata = self.encode_metadata(metadata)
        if encoded_metadata:
            headers["Upload-Metadata"] = ",".join(encoded_metadata)

        req = Request(self.url, headers=headers, method="POST")
        with self._open(req, "create upload") as response:
            location = response.headers.get("Location")

        if not location:
            raise ProtocolViolation("Server did not return Location header")

        # Handle relative URLs
        if not location.startswith("http"):
            location = urljoin(self.url, location)

        logger.debug(f"Created upload {location} for {source_size} bytes")
        return location

    def append(self, remote_location: str, chunk: bytes, expected_offset: int) -> int:
        """Upload a chunk of data and return the server's new offset."""
        headers = {
            **self._base_headers(),
            "Upload-Offset": str(expected_offset),
            "Content-Type": "application/offset+octet-stream",
            "Content-Length": str(len(chunk)),
        }

        if self.checksum:
            checksum_bytes = hashlib.sha1(chunk).digest()
            checksum_b64 = base64.b64encode(checksum_bytes).decode("ascii")
            headers["Upload-Checksum"] = f"sha1 {checksum_b64}"

        req = Request(remote_location, data=chunk, headers=headers, method="PATCH")
        try:
            with self._open(req, f"upload chunk at offset {expected_offset}", ChunkUploadFailed) as response:
                new_offset = response.headers.get("Upload-Offset")
        except ChunkUploadFailed as e:
            if e.status_code == 409:
                raise OffsetMismatchError(
                    f"Upload-Offset {expected_offset} rejected by server",
                    status_code=e.status_code,
                    response_content=e.response_content,
                ) from e
            if e.status_code == CHECKSUM_MISMATCH:
                e.error_class = ErrorClass.SERVER_TEMPORARY
            raise

        return self._parse_offset(new_offset)

    def query_offset(self, remote_location: str) -> int:
        """Get the current upload offset."""
        headers = {**self._base_headers(), "Cache-Control": "no-store"}
        req = Request(remote_location, headers=headers, method="HEAD")
        with self._open(req, "get offset") as response:
            return self._parse_offset(response.headers.get("Upload-Offset"))

    def finalize(self, remote_location: str) -> str:
        """Verify that the server holds the complete upload."""
        info = self.get_upload_info(remote_location)
        if info["length"] is not None and info["offset"] != info["length"]:
            raise ProtocolViolation(
                f"Upload {remote_location} is not complete: {info['offset']}/{info['length']}"
            )
        return remote_location

    def delete(self, remote_location: str) -> None:
        """Delete an upload from the server; a missing upload is not an error."""
        req = Request(remote_location, headers=self._base_headers(), method="DELETE")
        try:
            with self._open(req, "delete upload"):
                pass
        except UploadError as e:
            if e.status_code != 404:
                raise

    @staticmethod
    def _parse_offset(value: Optional[str]) -> int:
        if value is None:
            raise ProtocolViolation("Server did not return Upload-Offset header")
        try:
            offset = int(value)
        except ValueError as e:
            raise ProtocolViolation(f"Invalid Upload-Offset header: {value!r}") from e
        if offset < 0:
            raise ProtocolViolation(f"Invalid Upload-Offset header: {value!r}")
        return offset

    def encode_metadata(self, metadata: Mapping[str, str]) -> list:
        """Render caller metadata as ``Upload-Metadata`` pairs.

        Each pair is the key followed by a space and the base64 of the value in
        ``metadata_encoding``; callers join the pairs with commas.

        Raises:
            ValueError: For an empty key or one with whitespace or a comma
        """
        pairs = []
        for key, value in metadata.items():
            name = str(key)
            if not METADATA_KEY_PATTERN.fullmatch(name):
                raise ValueError(f"Invalid Upload-Metadata key {name!r}")
            encoded = base64.b64encode(str(value).encode(self.metadata_encoding))
            pairs.append(f"{name} {encoded.decode('ascii')}")
        return pairs

    def decode_metadata(self, header: str) -> dict[str, str]:
        """Parse an Upload-Metadata header back into a dictionary."""
        metadata = {}
        for pair in header.split(","):
            pair = pair.strip()
            if not pair:
                continue
            key, _, value = pair.partition(" ")
            try:
                metadata[key] = base64.b64decode(value).decode(self.metadata_encoding)
            except (ValueError, UnicodeDecodeError):
                # If decoding fails, use raw value
                metadata[key] = value
        return metadata

    def get_upload_info(self, remote_location: str) -> dict[str, Any]:
        """Get upload information including offset, length, and metadata.

        Returns:
            Dictionary containing:
                - offset (int): Current upload offset in bytes
                - length (int | None): Total upload length, None if deferred
                - complete (bool): Whether upload is complete
                - metadata (dict): Upload metadata
        """
        headers = {**self._base_headers(), "Cache-Control": "no-store"}
        req = Request(remote_location, headers=headers, method="HEAD")
        with self._open(req, "get upload info") as response:
            offset = self._parse_offset(response.headers.get("Upload-Offset"))
            length_str = response.headers.get("Upload-Length")
            upload_metadata = response.headers.get("Upload-Metadata")

        length = int(length_str) if length_str else None
        return {
            "offset": offset,
            "length": length,
            "complete": length is not None and offset >= length,
            "metadata": self.decode_metadata(upload_metadata) if upload_metadata else {},
        }

    def get_server_info(self) -> dict[str, Union[str, list[str], Optional[int]]]:
        """Discover the endpoint's capabilities with an OPTIONS request.

        Returns:
            ``version`` (falls back to the version this transport speaks),
            ``extensions`` as a list and ``max_size`` in bytes or None
        """
        req = Request(self.url, method="OPTIONS")
        with self._open(req, "discover server capabilities") as response:
            advertised = response.headers
            version = advertised.get("Tus-Version", self.TUS_VERSION)
            extensions = advertised.get("Tus-Extension", "")
            max_size = advertised.get("Tus-Max-Size")

        return {
            "version": version,
            "extensions": [name.strip() for name in extensions.split(",") if name.strip()],
            "max_size": int(max_size) if max_size else None,
        }

    def update_headers(self, headers: dict[str, str]) -> None:
        """Merge extra headers into those sent with every request, e.g. auth tokens."""
        self.headers.update(headers)

    def get_headers(self) -> dict[str, str]:
        return dict(self.headers)
