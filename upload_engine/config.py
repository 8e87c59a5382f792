"""Engine configuration."""

from dataclasses import dataclass, field, fields
from typing import Any, Mapping, Optional

KIB = 1024
MIB = 1024 * KIB
GIB = 1024 * MIB

DEFAULT_CHUNK_SIZE_BOUNDS = (64 * KIB, 100 * MIB)

# (files smaller than this size, get chunks of this size)
DEFAULT_CHUNK_SIZE_BANDS = (
    (10 * MIB, 1 * MIB),
    (100 * MIB, 5 * MIB),
    (1 * GIB, 10 * MIB),
)
DEFAULT_LARGE_CHUNK_SIZE = 25 * MIB

DEFAULT_PARALLEL_LIMIT = 3
DEFAULT_RETRY_DELAYS = (0, 1000, 3000, 5000, 10000)
DEFAULT_REQUEST_TIMEOUT_MS = 30000
DEFAULT_FINGERPRINT_TTL = 24 * 60 * 60


@dataclass(frozen=True)
class EngineConfig:
    """All options recognized by the upload engine.

    Attributes:
        chunk_size_bounds: Inclusive (min, max) chunk size in bytes
        chunk_size: Fixed chunk size overriding the size bands (still clamped)
        chunk_size_bands: Ordered (upper_exclusive_source_size, chunk_size) pairs
        large_chunk_size: Chunk size for sources beyond the last band
        parallel_limit: Maximum number of uploads transferring at once
        retry_delays: Delay before each retry in milliseconds
        max_retries: Optional cap on retries below len(retry_delays)
        request_timeout_ms: Timeout for each network call in milliseconds
        delete_on_cancel: Ask the endpoint to delete partial data on cancel
        fingerprint_ttl_seconds: Age after which a stored resume entry is ignored
    """

    chunk_size_bounds: tuple[int, int] = DEFAULT_CHUNK_SIZE_BOUNDS
    chunk_size: Optional[int] = None
    chunk_size_bands: tuple[tuple[int, int], ...] = DEFAULT_CHUNK_SIZE_BANDS
    large_chunk_size: int = DEFAULT_LARGE_CHUNK_SIZE
    parallel_limit: int = DEFAULT_PARALLEL_LIMIT
    retry_delays: tuple[int, ...] = field(default=DEFAULT_RETRY_DELAYS)
    max_retries: Optional[int] = None
    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    delete_on_cancel: bool = True
    fingerprint_ttl_seconds: Optional[float] = DEFAULT_FINGERPRINT_TTL

    def __post_init__(self):
        min_size, max_size = self.chunk_size_bounds
        if min_size < 1:
            raise ValueError(f"minimum chunk size must be at least 1 byte, got {min_size}")
        if max_size < min_size:
            raise ValueError(
                f"maximum chunk size {max_size} is smaller than minimum chunk size {min_size}"
            )
        if self.chunk_size is not None and self.chunk_size < 1:
            raise ValueError(f"chunk_size must be at least 1 byte, got {self.chunk_size}")
        if self.large_chunk_size < 1:
            raise ValueError(f"large_chunk_size must be at least 1 byte, got {self.large_chunk_size}")
        previous = 0
        for upper, size in self.chunk_size_bands:
            if upper <= previous or size < 1:
                raise ValueError(f"invalid chunk size band ({upper}, {size})")
            previous = upper
        if self.parallel_limit < 1:
            raise ValueError(f"parallel_limit must be at least 1, got {self.parallel_limit}")
        if any(delay < 0 for delay in self.retry_delays):
            raise ValueError(f"retry delays must not be negative, got {self.retry_delays}")
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError(f"max_retries must not be negative, got {self.max_retries}")
        if self.request_timeout_ms <= 0:
            raise ValueError(f"request_timeout_ms must be positive, got {self.request_timeout_ms}")

        # Lists coming from JSON or callers are frozen into tuples
        object.__setattr__(self, "chunk_size_bounds", (int(min_size), int(max_size)))
        object.__setattr__(self, "retry_delays", tuple(int(d) for d in self.retry_delays))
        object.__setattr__(
            self,
            "chunk_size_bands",
            tuple((int(upper), int(size)) for upper, size in self.chunk_size_bands),
        )

    @property
    def request_timeout(self) -> float:
        """Request timeout in seconds."""
        return self.request_timeout_ms / 1000

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "EngineConfig":
        """Build a config from a plain mapping, rejecting unknown options.

        Example:
            >>> EngineConfig.from_dict({"parallel_limit": 2, "retry_delays": [0, 500]})
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ValueError(f"Unknown engine options: {', '.join(unknown)}")
        return cls(**options)
