"""
Fingerprint store interface and implementations for resumable uploads.

Maps upload fingerprints to the remote location of the in-progress upload,
enabling resumable uploads across sessions. Stored offsets are hints only:
a resumed session always re-queries the endpoint.
"""

import json
import os
import sqlite3
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any, Optional


@dataclass
class FingerprintEntry:
    """Stored state for one in-progress upload."""

    remote_location: str
    bytes_acknowledged: int = 0
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FingerprintEntry":
        return cls(
            remote_location=data["remote_location"],
            bytes_acknowledged=int(data.get("bytes_acknowledged", 0)),
            created_at=float(data.get("created_at", 0.0)),
        )

    def is_expired(self, ttl_seconds: Optional[float], now: Optional[float] = None) -> bool:
        """Whether the entry is older than ``ttl_seconds`` (None never expires)."""
        if ttl_seconds is None:
            return False
        now = time.time() if now is None else now
        return now - self.created_at > ttl_seconds


class FingerprintStore(ABC):
    """Abstract interface for fingerprint store implementations."""

    @abstractmethod
    def get(self, fingerprint: str) -> Optional[FingerprintEntry]:
        """
        Retrieve the entry for a given fingerprint.

        Args:
            fingerprint: Upload fingerprint

        Returns:
            The stored entry if found, None otherwise
        """
        pass

    @abstractmethod
    def put(self, fingerprint: str, entry: FingerprintEntry) -> None:
        """
        Store or replace the entry for a given fingerprint.

        Args:
            fingerprint: Upload fingerprint
            entry: Entry to store
        """
        pass

    @abstractmethod
    def remove(self, fingerprint: str) -> None:
        """
        Remove the stored entry for a given fingerprint, if any.

        Args:
            fingerprint: Upload fingerprint
        """
        pass


class MemoryFingerprintStore(FingerprintStore):
    """In-memory store; resume works within one process only."""

    def __init__(self):
        self._entries: dict[str, FingerprintEntry] = {}
        self._lock = Lock()

    def get(self, fingerprint: str) -> Optional[FingerprintEntry]:
        with self._lock:
            entry = self._entries.get(fingerprint)
            return FingerprintEntry(**entry.to_dict()) if entry else None

    def put(self, fingerprint: str, entry: FingerprintEntry) -> None:
        with self._lock:
            self._entries[fingerprint] = FingerprintEntry(**entry.to_dict())

    def remove(self, fingerprint: str) -> None:
        with self._lock:
            self._entries.pop(fingerprint, None)

    def __len__(self) -> int:
        return len(self._entries)


class FileFingerprintStore(FingerprintStore):
    """
    File-based fingerprint store using JSON.

    Stores entries in a JSON file for persistence across sessions. Writes go
    through a temporary file and ``os.replace`` so a crash never leaves a
    half-written store behind.
    """

    def __init__(self, storage_path: str = ".upload_fingerprints.json"):
        """
        Initialize file-based fingerprint store.

        Args:
            storage_path: Path to JSON file for storing entries
        """
        self.storage_path = storage_path
        self._lock = Lock()
        self._ensure_file_exists()

    def _ensure_file_exists(self):
        """Create storage file if it doesn't exist."""
        if not os.path.exists(self.storage_path):
            self._save_data({})

    def _load_data(self) -> dict:
        """Load data from storage file."""
        try:
            with open(self.storage_path) as f:
                return json.load(f)
        except (json.JSONDecodeError, FileNotFoundError):
            return {}

    def _save_data(self, data: dict):
        """Save data to storage file."""
        tmp_path = f"{self.storage_path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.storage_path)

    def get(self, fingerprint: str) -> Optional[FingerprintEntry]:
        """Retrieve entry for fingerprint."""
        with self._lock:
            data = self._load_data()
        raw = data.get(fingerprint)
        return FingerprintEntry.from_dict(raw) if raw else None

    def put(self, fingerprint: str, entry: FingerprintEntry) -> None:
        """Store entry for fingerprint."""
        with self._lock:
            data = self._load_data()
            data[fingerprint] = entry.to_dict()
            self._save_data(data)

    def remove(self, fingerprint: str) -> None:
        """Remove entry for fingerprint."""
        with self._lock:
            data = self._load_data()
            if fingerprint in data:
                del data[fingerprint]
                self._save_data(data)


class SQLiteFingerprintStore(FingerprintStore):
    """SQLite-based fingerprint store."""

    def __init__(self, db_path: str = "upload_fingerprints.db"):
        """Initialize SQLite fingerprint store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._lock = Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS fingerprints (
                fingerprint TEXT PRIMARY KEY,
                remote_location TEXT NOT NULL,
                bytes_acknowledged INTEGER DEFAULT 0,
                created_at REAL NOT NULL
            )
            """
        )
        conn.commit()
        conn.close()

    def get(self, fingerprint: str) -> Optional[FingerprintEntry]:
        """Get the entry for a fingerprint."""
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            cursor = conn.execute(
                "SELECT * FROM fingerprints WHERE fingerprint = ?", (fingerprint,)
            )
            row = cursor.fetchone()
            conn.close()

        if row is None:
            return None

        return FingerprintEntry(
            remote_location=row["remote_location"],
            bytes_acknowledged=row["bytes_acknowledged"],
            created_at=row["created_at"],
        )

    def put(self, fingerprint: str, entry: FingerprintEntry) -> None:
        """Insert or replace the entry for a fingerprint."""
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            conn.execute(
                """
                INSERT OR REPLACE INTO fingerprints
                    (fingerprint, remote_location, bytes_acknowledged, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (fingerprint, entry.remote_location, entry.bytes_acknowledged, entry.created_at),
            )
            conn.commit()
            conn.close()

    def remove(self, fingerprint: str) -> None:
        """Delete the entry for a fingerprint."""
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            conn.execute("DELETE FROM fingerprints WHERE fingerprint = ?", (fingerprint,))
            conn.commit()
            conn.close()
