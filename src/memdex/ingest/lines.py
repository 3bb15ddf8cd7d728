"""Line-oriented chunker with overlap and line-range tracking."""

from __future__ import annotations

from memdex.ingest.base import BaseChunker, TextChunk
from memdex.sources.base import content_hash


class LineChunker(BaseChunker):
    """Accumulate whole lines into passages of at most ``chunk_size * 4`` chars.

    * Lines longer than the budget are cut into fixed windows; every window
      keeps the line number of the line it came from.
    * When a passage is flushed, its trailing lines are carried into the
      next passage as long as they fit within ``overlap`` of the budget and
      leave room for the incoming segment. A trailing line longer than the
      overlap is not carried, so no passage exceeds ``max_chars``.
    * Each passage records the 1-based line range it spans.

    Output depends only on the content and the two parameters.
    """

    def chunk(self, content: str) -> list[TextChunk]:
        if not content.strip():
            return []

        max_chars = self.max_chars
        chunks: list[TextChunk] = []
        current: list[tuple[str, int]] = []
        current_chars = 0

        def flush() -> None:
            if not current:
                return
            text = "\n".join(segment for segment, _ in current)
            if text.strip():
                chunks.append(
                    TextChunk(
                        text=text,
                        start_line=current[0][1],
                        end_line=current[-1][1],
                        hash=content_hash(text),
                    )
                )

        def carry_overlap(room: int) -> None:
            """Keep trailing segments that fit in both the overlap and *room*."""
            nonlocal current, current_chars
            limit = min(self.overlap_chars, room)
            kept: list[tuple[str, int]] = []
            acc = 0
            for segment, lineno in reversed(current):
                size = len(segment) + 1
                if acc + size > limit:
                    break
                acc += size
                kept.insert(0, (segment, lineno))
            current = kept
            current_chars = acc

        for lineno, line in enumerate(content.split("\n"), start=1):
            for segment in self._split_line(line, max_chars):
                size = len(segment) + 1
                if current and current_chars + size > max_chars:
                    flush()
                    carry_overlap(max_chars - size)
                current.append((segment, lineno))
                current_chars += size

        flush()
        return chunks

    @staticmethod
    def _split_line(line: str, width: int) -> list[str]:
        if len(line) <= width:
            return [line]
        return [line[pos : pos + width] for pos in range(0, len(line), width)]
