"""Abstract contract of a resumable upload endpoint."""

from abc import ABC, abstractmethod
from typing import Mapping


class TransportClient(ABC):
    """Performs the remote operations of a resumable upload.

    Implementations raise ``UploadError`` (or a subclass) tagged with an
    ``ErrorClass`` for every failure; the engine never inspects
    transport-specific exceptions.
    """

    @abstractmethod
    def create(self, metadata: Mapping[str, str], source_size: int) -> str:
        """Create a new upload and return its remote location."""
        pass

    @abstractmethod
    def append(self, remote_location: str, chunk: bytes, expected_offset: int) -> int:
        """Append ``chunk`` at ``expected_offset`` and return the new server offset."""
        pass

    @abstractmethod
    def query_offset(self, remote_location: str) -> int:
        """Return the offset currently committed by the endpoint."""
        pass

    def finalize(self, remote_location: str) -> str:
        """Confirm a fully written upload and return its permanent location.

        Endpoints that do not distinguish "fully written" from "finalized"
        keep this default, which returns the upload location unchanged.
        """
        return remote_location

    def delete(self, remote_location: str) -> None:
        """Ask the endpoint to discard a partial upload.

        The default does nothing, for endpoints without termination support.
        """
        return None
