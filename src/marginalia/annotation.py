"""Rebuild a document as checkable prose and length-preserving opaque filler.

Every segment has the byte length of the source region it stands for, so an
offset reported against the submitted document is also an offset into the
original source.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Iterable, Sequence, TypeAlias

from marginalia.exceptions import SpanOrderError
from marginalia.extraction import Span
from marginalia.json_types import FormFields
from marginalia.schema import AnnotationDTO, AnnotationItemDTO

DEFAULT_MAX_SEGMENT_BYTES = 1024


def check_url(host: str, port: int) -> str:
    return f"http://{host}:{port}/v2/check"


@dataclass(frozen=True)
class Opaque:
    markup: str
    interpret_as: str | None = None

    @property
    def byte_length(self) -> int:
        return len(self.markup.encode("utf-8"))


@dataclass(frozen=True)
class Checkable:
    text: str

    @property
    def byte_length(self) -> int:
        return len(self.text.encode("utf-8"))


AnnotationSegment: TypeAlias = Opaque | Checkable


@dataclass
class CheckRequest:
    language: str
    host: str
    port: int
    segments: list[AnnotationSegment] = field(default_factory=list)

    def add_text(self, text: str) -> None:
        self.segments.append(Checkable(text))

    def add_markup(self, markup: str, interpret_as: str | None = None) -> None:
        self.segments.append(Opaque(markup, interpret_as))

    @property
    def url(self) -> str:
        return check_url(self.host, self.port)

    @property
    def byte_length(self) -> int:
        return sum(segment.byte_length for segment in self.segments)

    def text(self) -> str:
        """The document exactly as the service sees it."""
        return "".join(
            segment.text if isinstance(segment, Checkable) else segment.markup
            for segment in self.segments
        )

    def annotation(self) -> AnnotationDTO:
        return AnnotationDTO(
            annotation=[
                AnnotationItemDTO(text=segment.text)
                if isinstance(segment, Checkable)
                else AnnotationItemDTO(markup=segment.markup, interpretAs=segment.interpret_as)
                for segment in self.segments
            ]
        )

    def to_form(self) -> FormFields:
        payload = self.annotation().model_dump(exclude_none=True)
        return {"language": self.language, "data": json.dumps(payload)}


def filler_for(region: bytes) -> str:
    # Newlines stay newlines; every other byte becomes one space.
    return "".join("\n" if byte == 0x0A else " " for byte in region)


def interpretation_for(region: bytes) -> str:
    """What the service reads in place of an opaque region.

    Markup is dropped unless it carries an interpretation, which would join
    the prose on either side. The region reads as its line breaks, or as a
    single space when it has none.
    """
    return "\n" * region.count(b"\n") or " "


def chunk_filler(filler: str, max_segment_bytes: int) -> Iterable[str]:
    for start in range(0, len(filler), max_segment_bytes):
        yield filler[start : start + max_segment_bytes]


def _check_spans(spans: Sequence[Span], source_length: int) -> None:
    previous_end = 0
    for index, span in enumerate(spans):
        if not 0 <= span.start_byte <= span.end_byte <= source_length:
            raise SpanOrderError(
                f"span {index} ({span.start_byte}, {span.end_byte}) is outside "
                f"a {source_length} byte document"
            )
        if span.start_byte < previous_end:
            raise SpanOrderError(
                f"span {index} starts at {span.start_byte} before the previous "
                f"span ends at {previous_end}; spans must be sorted and disjoint"
            )
        previous_end = span.end_byte


def build_request(
    spans: Sequence[Span],
    source_text: str,
    *,
    language: str,
    host: str,
    port: int,
    max_segment_bytes: int = DEFAULT_MAX_SEGMENT_BYTES,
) -> CheckRequest:
    if max_segment_bytes <= 0:
        raise ValueError("max_segment_bytes must be positive")
    source = source_text.encode("utf-8")
    _check_spans(spans, len(source))
    request = CheckRequest(language=language, host=host, port=port)

    def _opaque(start: int, end: int) -> None:
        region = source[start:end]
        interpret_as: str | None = interpretation_for(region)
        for chunk in chunk_filler(filler_for(region), max_segment_bytes):
            # Only the first chunk of a region carries its interpretation.
            request.add_markup(chunk, interpret_as)
            interpret_as = None

    cursor = 0
    for span in spans:
        if span.start_byte > cursor:
            _opaque(cursor, span.start_byte)
        if span.end_byte > span.start_byte:
            request.add_text(source[span.start_byte : span.end_byte].decode("utf-8"))
        cursor = span.end_byte
    if cursor < len(source):
        _opaque(cursor, len(source))
    return request
