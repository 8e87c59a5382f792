"""Per-upload record of bytes confirmed by the endpoint."""

from threading import Lock

from upload_engine.exceptions import ProtocolViolation


class OffsetTracker:
    """Track the server-confirmed offset of one upload.

    ``offset`` is where the next append starts and follows the server, even
    backwards after a rollback. ``bytes_acknowledged`` is the high-water mark
    of confirmed bytes and never decreases.
    """

    def __init__(self, total_bytes: int):
        if total_bytes < 0:
            raise ValueError(f"total_bytes must not be negative, got {total_bytes}")
        self.total_bytes = total_bytes
        self._offset = 0
        self._acknowledged = 0
        self._lock = Lock()

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def bytes_acknowledged(self) -> int:
        return self._acknowledged

    @property
    def remaining(self) -> int:
        return self.total_bytes - self._offset

    @property
    def is_complete(self) -> bool:
        return self._offset == self.total_bytes

    def update(self, server_offset: int) -> bool:
        """Record an offset confirmed by the endpoint.

        Args:
            server_offset: Offset reported by a successful append or query

        Returns:
            True if bytes_acknowledged increased

        Raises:
            ProtocolViolation: If the offset lies outside [0, total_bytes]
        """
        if not 0 <= server_offset <= self.total_bytes:
            raise ProtocolViolation(
                f"Endpoint reported offset {server_offset} outside [0, {self.total_bytes}]"
            )
        with self._lock:
            self._offset = server_offset
            if server_offset > self._acknowledged:
                self._acknowledged = server_offset
                return True
            return False
