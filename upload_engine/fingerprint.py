"""
Fingerprints identifying an upload across process restarts.

A fingerprint is derived from the source size, the caller's metadata and the
planned chunk size, so the same file submitted with the same metadata maps to
the same stored upload.
"""

import hashlib
import json
from typing import Mapping


class Fingerprint:
    """Generate deterministic fingerprints for uploads.

    Args:
        prefix: Optional namespace, e.g. the endpoint URL, so that the same
            file sent to two endpoints gets two fingerprints.
    """

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def get_fingerprint(self, source_size: int, metadata: Mapping[str, str], chunk_size: int) -> str:
        """
        Generate a fingerprint for an upload.

        Args:
            source_size: Total bytes of the source
            metadata: Caller metadata; order matters
            chunk_size: Planned chunk size

        Returns:
            str: Fingerprint in format "size:{size}--chunk:{chunk}--md5:{hash}"
        """
        hasher = hashlib.md5()
        if self.prefix:
            hasher.update(self.prefix.encode("utf-8"))
        hasher.update(json.dumps(list(metadata.items()), ensure_ascii=False).encode("utf-8"))
        return f"size:{source_size}--chunk:{chunk_size}--md5:{hasher.hexdigest()}"
