"""Byte offset to editor position mapping.

Positions are zero-based lines and UTF-16 code-unit columns, the default
position encoding of the language server protocol. Lines end at ``\\n``; a
``\\r`` before it belongs to the terminator, not the line.
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass

from marginalia.exceptions import PositionMappingError


@dataclass(frozen=True)
class Position:
    line: int
    column: int


def utf16_length(text: str) -> int:
    return len(text.encode("utf-16-le")) // 2


class LineIndex:
    def __init__(self, text: str) -> None:
        self._source = text.encode("utf-8")
        starts = [0]
        position = self._source.find(b"\n")
        while position != -1:
            starts.append(position + 1)
            position = self._source.find(b"\n", position + 1)
        self._line_starts = starts

    @property
    def byte_length(self) -> int:
        return len(self._source)

    @property
    def line_count(self) -> int:
        return len(self._line_starts)

    def position(self, offset: int) -> Position:
        if not 0 <= offset <= len(self._source):
            raise PositionMappingError(
                f"offset {offset} is outside a {len(self._source)} byte document"
            )
        line = bisect_right(self._line_starts, offset) - 1
        line_start = self._line_starts[line]
        line_end = self._line_end(line)
        prefix_end = min(offset, line_end)
        try:
            prefix = self._source[line_start:prefix_end].decode("utf-8")
        except UnicodeDecodeError as exc:
            raise PositionMappingError(
                f"offset {offset} falls inside a UTF-8 sequence"
            ) from exc
        return Position(line=line, column=utf16_length(prefix))

    def _line_end(self, line: int) -> int:
        if line + 1 < len(self._line_starts):
            end = self._line_starts[line + 1] - 1
            if end > self._line_starts[line] and self._source[end - 1 : end] == b"\r":
                end -= 1
            return end
        return len(self._source)


def utf16_to_byte_offsets(text: str) -> list[int]:
    """Byte offset for every UTF-16 offset into ``text``, plus the end offset.

    A UTF-16 offset that points between the two halves of a surrogate pair
    resolves to the byte offset after the full character.
    """
    table: list[int] = [0]
    cursor = 0
    for char in text:
        width = len(char.encode("utf-8"))
        units = 2 if ord(char) > 0xFFFF else 1
        if units == 2:
            table.append(cursor + width)
        cursor += width
        table.append(cursor)
    return table


def byte_span(table: list[int], offset: int, length: int) -> tuple[int, int]:
    end = offset + length
    if offset < 0 or length < 0 or end >= len(table):
        raise PositionMappingError(
            f"range ({offset}, {length}) is outside a {len(table) - 1} unit document"
        )
    start_byte = table[offset]
    return start_byte, table[end] - start_byte
