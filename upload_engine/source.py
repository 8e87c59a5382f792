"""Byte sources the engine reads chunks from."""

import os
from abc import ABC, abstractmethod
from threading import Lock
from typing import IO, Callable, Optional, Union

from upload_engine.exceptions import SourceError


class UploadSource(ABC):
    """Random-access provider of the bytes being uploaded."""

    @abstractmethod
    def read(self, offset: int, length: int) -> bytes:
        """Return ``length`` bytes starting at ``offset``."""
        pass

    def read_exact(self, offset: int, length: int) -> bytes:
        """Read a chunk and verify it has the requested length.

        Raises:
            SourceError: If the source returned fewer or more bytes
        """
        try:
            data = self.read(offset, length)
        except OSError as e:
            raise SourceError(f"Failed to read {length} bytes at offset {offset}: {e}") from e
        if len(data) != length:
            raise SourceError(f"Read {len(data)} bytes, expected {length} at offset {offset}")
        return data


class BytesSource(UploadSource):
    """Source backed by an in-memory bytes object."""

    def __init__(self, data: bytes):
        self.data = bytes(data)

    def read(self, offset: int, length: int) -> bytes:
        return self.data[offset : offset + length]

    def __len__(self) -> int:
        return len(self.data)


class FileSource(UploadSource):
    """Source backed by a file path; the file is opened for each read."""

    def __init__(self, file_path: str):
        if not os.path.exists(file_path):
            raise FileNotFoundError(f"File not found: {file_path}")
        self.file_path = file_path

    def read(self, offset: int, length: int) -> bytes:
        with open(self.file_path, "rb") as f:
            f.seek(offset)
            return f.read(length)

    @property
    def size(self) -> int:
        return os.path.getsize(self.file_path)


class StreamSource(UploadSource):
    """Source backed by a seekable binary stream owned by the caller."""

    def __init__(self, stream: IO[bytes]):
        self.stream = stream
        self._lock = Lock()

    def read(self, offset: int, length: int) -> bytes:
        with self._lock:
            self.stream.seek(offset)
            return self.stream.read(length)

    @property
    def size(self) -> int:
        with self._lock:
            current_pos = self.stream.tell()
            self.stream.seek(0, os.SEEK_END)
            size = self.stream.tell()
            self.stream.seek(current_pos)
            return size


class CallableSource(UploadSource):
    """Source backed by a ``read(offset, length) -> bytes`` function."""

    def __init__(self, reader: Callable[[int, int], bytes]):
        self.reader = reader

    def read(self, offset: int, length: int) -> bytes:
        return self.reader(offset, length)


SourceLike = Union[UploadSource, bytes, bytearray, str, IO[bytes], Callable[[int, int], bytes]]


def open_source(obj: SourceLike, size: Optional[int] = None) -> tuple[UploadSource, int]:
    """Wrap any supported source object and determine its size.

    Args:
        obj: Source, bytes, file path, seekable stream or reader function
        size: Total size; required for reader functions, otherwise derived

    Returns:
        Tuple of (source, size)

    Raises:
        ValueError: If the size cannot be determined or is negative
        FileNotFoundError: If a file path does not exist
    """
    if isinstance(obj, UploadSource):
        source = obj
    elif isinstance(obj, (bytes, bytearray)):
        source = BytesSource(obj)
    elif isinstance(obj, (str, os.PathLike)):
        source = FileSource(os.fspath(obj))
    elif hasattr(obj, "read") and hasattr(obj, "seek"):
        source = StreamSource(obj)
    elif callable(obj):
        source = CallableSource(obj)
    else:
        raise TypeError(f"Unsupported upload source: {type(obj).__name__}")

    if size is None:
        if isinstance(source, BytesSource):
            size = len(source)
        elif isinstance(source, (FileSource, StreamSource)):
            size = source.size
        else:
            raise ValueError("source_size is required for this kind of source")
    if size < 0:
        raise ValueError(f"source_size must not be negative, got {size}")
    return source, size
