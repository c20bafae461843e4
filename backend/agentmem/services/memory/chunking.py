"""
Markdown chunking for the memory index.

Chunks are budgeted in characters (roughly four per token) and built from whole
lines; a line longer than the budget is split into segments that keep its line
number. Consecutive chunks share a tail of whole segments as overlap, so the same
input always produces the same ordered chunk hashes.
"""

import hashlib
from typing import List, Tuple

from agentmem.services.memory.types import Chunk

CHARS_PER_TOKEN = 4
MIN_CHUNK_CHARS = 32


def hash_text(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_newlines(content: str) -> str:
    return content.replace("\r\n", "\n").replace("\r", "\n")


def chunk_markdown(content: str, tokens: int, overlap: int) -> List[Chunk]:
    """Split ``content`` into line-ranged chunks of about ``tokens`` tokens.

    Start and end lines are 1-based. Whitespace-only chunks are kept here and
    dropped by the indexer.
    """
    if not content:
        return []

    max_chars = max(MIN_CHUNK_CHARS, tokens * CHARS_PER_TOKEN)
    overlap_chars = max(0, overlap * CHARS_PER_TOKEN)

    chunks: List[Chunk] = []
    current: List[Tuple[str, int]] = []
    current_chars = 0

    def flush() -> None:
        if not current:
            return
        body = "\n".join(segment for segment, _ in current)
        chunks.append(
            Chunk(
                start_line=current[0][1],
                end_line=current[-1][1],
                text=body,
                hash=hash_text(body),
            )
        )

    def carry_overlap() -> Tuple[List[Tuple[str, int]], int]:
        if overlap_chars <= 0:
            return [], 0
        kept: List[Tuple[str, int]] = []
        acc = 0
        for segment, line_no in reversed(current):
            acc += len(segment) + 1
            kept.insert(0, (segment, line_no))
            if acc >= overlap_chars:
                break
        return kept, acc

    for index, line in enumerate(content.split("\n")):
        line_no = index + 1
        segments = [line[i:i + max_chars] for i in range(0, len(line), max_chars)] or [""]
        for segment in segments:
            size = len(segment) + 1
            if current and current_chars + size > max_chars:
                flush()
                current, current_chars = carry_overlap()
            current.append((segment, line_no))
            current_chars += size

    flush()
    return chunks


def drop_blank_chunks(chunks: List[Chunk]) -> List[Chunk]:
    return [chunk for chunk in chunks if chunk.text.strip()]
