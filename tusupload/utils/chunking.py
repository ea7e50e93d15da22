"""Chunk splitting for PATCH bodies"""

from typing import List


def split_into_chunks(data: bytes, chunk_size: int) -> List[bytes]:
    """
    Slice a buffer into contiguous chunks.

    Args:
        data: Bytes to split
        chunk_size: Maximum chunk length in bytes

    Returns:
        Chunks of chunk_size bytes, the last one holding the remainder.
        Empty input gives an empty list.

    Raises:
        ValueError: If chunk_size is not positive
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got: {chunk_size}")

    view = memoryview(data)
    return [bytes(view[start:start + chunk_size]) for start in range(0, len(view), chunk_size)]
