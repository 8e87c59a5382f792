"""Chunk size planning."""

from upload_engine.config import EngineConfig


class ChunkPlanner:
    """Pick a chunk size for a source from its total size.

    The result depends only on the size and the configuration, so a resumed
    upload always recomputes the chunk size the original session used.
    """

    def __init__(self, config: EngineConfig = None):
        self.config = config or EngineConfig()

    def plan_chunk_size(self, source_size: int) -> int:
        """Return the chunk size to use for a source of ``source_size`` bytes."""
        if source_size < 0:
            raise ValueError(f"source_size must not be negative, got {source_size}")

        config = self.config
        if config.chunk_size is not None:
            chunk_size = config.chunk_size
        else:
            chunk_size = config.large_chunk_size
            for upper, band_size in config.chunk_size_bands:
                if source_size < upper:
                    chunk_size = band_size
                    break

        min_size, max_size = config.chunk_size_bounds
        return max(min_size, min(chunk_size, max_size))

    def chunk_count(self, source_size: int) -> int:
        """Number of chunks a full upload of ``source_size`` bytes takes."""
        chunk_size = self.plan_chunk_size(source_size)
        return (source_size + chunk_size - 1) // chunk_size
