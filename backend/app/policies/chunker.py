"""Policy text chunker - fixed-size character windows with overlap."""

from backend.app.models.policies import TextChunk
from backend.app.policies.errors import InvalidConfiguration

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_OVERLAP = 200


def chunk_text(
    text: str,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_OVERLAP,
) -> list[TextChunk]:
    """Split document text into ordered, overlapping chunks.

    Pure function with no I/O or randomness. Offsets refer to the original
    text, which is not normalized or stripped.

    Args:
        text: Raw document text
        chunk_size: Characters per chunk (final chunk may be shorter)
        overlap: Characters shared by adjacent chunks, must be < chunk_size

    Returns:
        List of TextChunk where:
        - index is 0-based and contiguous
        - chunk i spans [start_index, end_index) of text
        - chunk[i].end_index - chunk[i + 1].start_index == overlap
        - the spans together cover [0, len(text))

    Raises:
        InvalidConfiguration: If chunk_size <= 0, overlap < 0 or overlap >= chunk_size
    """
    if chunk_size <= 0:
        raise InvalidConfiguration(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0:
        raise InvalidConfiguration(f"overlap must not be negative, got {overlap}")
    if overlap >= chunk_size:
        raise InvalidConfiguration(
            f"overlap ({overlap}) must be smaller than chunk_size ({chunk_size})"
        )

    length = len(text)
    step = chunk_size - overlap
    chunks: list[TextChunk] = []
    cursor = 0

    while cursor < length:
        end = min(cursor + chunk_size, length)
        chunks.append(
            TextChunk(
                index=len(chunks),
                content=text[cursor:end],
                start_index=cursor,
                end_index=end,
                overlap_start=max(0, cursor - overlap),
                overlap_end=min(length, end + overlap),
            )
        )
        # A window that reached the end already covers everything after the cursor
        if end == length:
            break
        cursor += step

    return chunks


def reconstruct_text(chunks: list[TextChunk]) -> str:
    """Rebuild the source text from ordered chunks by dropping overlapping prefixes."""
    parts: list[str] = []
    covered = 0
    for chunk in sorted(chunks, key=lambda c: c.index):
        skip = max(0, covered - chunk.start_index)
        parts.append(chunk.content[skip:])
        covered = max(covered, chunk.end_index)
    return "".join(parts)
