"""Fixed-size, overlapping character windows over normalized text."""

from math import floor

DEFAULT_CHUNK_SIZE = 1200
DEFAULT_CHUNK_OVERLAP = 200
MIN_CHUNK_SIZE = 300
MAX_CHUNK_SIZE = 4000
MAX_CHUNK_OVERLAP = 1000


def clamp_integer(value: float, minimum: int, maximum: int) -> int:
    return min(maximum, max(minimum, floor(value)))


def clamp_chunk_params(
    chunk_size: float | None = None, overlap: float | None = None
) -> tuple[int, int]:
    size = clamp_integer(
        DEFAULT_CHUNK_SIZE if chunk_size is None else chunk_size, MIN_CHUNK_SIZE, MAX_CHUNK_SIZE
    )
    clamped_overlap = clamp_integer(
        DEFAULT_CHUNK_OVERLAP if overlap is None else overlap,
        0,
        min(size - 1, MAX_CHUNK_OVERLAP),
    )
    return size, clamped_overlap


def normalize(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


def chunk_text(text: str, chunk_size: int, overlap: int) -> list[str]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    if not 0 <= overlap < chunk_size:
        raise ValueError("overlap must be in [0, chunk_size)")

    clean = normalize(text)
    if not clean:
        return []

    chunks: list[str] = []
    step = chunk_size - overlap
    cursor = 0
    while True:
        end = min(cursor + chunk_size, len(clean))
        chunks.append(clean[cursor:end])
        if end >= len(clean):
            break
        cursor += step
    return chunks


def expected_chunk_count(length: int, chunk_size: int, overlap: int) -> int:
    if length == 0:
        return 0
    if length <= chunk_size:
        return 1
    step = chunk_size - overlap
    return -(-(length - overlap) // step)


def reconstruct(chunks: list[str], overlap: int) -> str:
    """Inverse of ``chunk_text`` for the normalized source."""
    if not chunks:
        return ""
    head = [chunk[: len(chunk) - overlap] for chunk in chunks[:-1]]
    return "".join(head) + chunks[-1]
