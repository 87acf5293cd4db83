from typing import NamedTuple, Optional, List

MB = 1024 * 1024
GB = 1024 * MB

# (file size strictly above, chunk size)
CHUNK_SIZE_TIERS = [
    (2 * GB, 2 * MB),
    (1 * GB, 5 * MB),
    (500 * MB, 10 * MB),
]
DEFAULT_CHUNK_SIZE = 20 * MB


class ChunkRange(NamedTuple):
    index: int
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start


class ChunkPlan(NamedTuple):
    chunk_size: int
    ranges: List[ChunkRange]

    @property
    def total_chunks(self) -> int:
        return len(self.ranges)


def choose_chunk_size(file_size: int) -> int:
    for threshold, chunk_size in CHUNK_SIZE_TIERS:
        if file_size > threshold:
            return chunk_size
    return DEFAULT_CHUNK_SIZE


def plan_chunks(file_size: int, chunk_size: Optional[int] = None) -> ChunkPlan:
    """
    Split [0, file_size) into contiguous, non-overlapping byte ranges.

    The last range is shorter when file_size is not a multiple of chunk_size.
    """
    if file_size <= 0:
        raise ValueError(f"file size must be positive, got {file_size}")
    if chunk_size is None:
        chunk_size = choose_chunk_size(file_size)
    if chunk_size <= 0:
        raise ValueError(f"chunk size must be positive, got {chunk_size}")

    ranges = [
        ChunkRange(index, start, min(start + chunk_size, file_size))
        for index, start in enumerate(range(0, file_size, chunk_size))
    ]
    return ChunkPlan(chunk_size, ranges)
