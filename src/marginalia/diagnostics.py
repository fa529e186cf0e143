"""Versioned per-document diagnostics built from checking-service matches."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Iterator, Protocol, Sequence

from marginalia.annotation import DEFAULT_MAX_SEGMENT_BYTES, CheckRequest, build_request
from marginalia.extraction import Span
from marginalia.languagetool import Match
from marginalia.positions import LineIndex, Position

logger = logging.getLogger(__name__)


class Extractor(Protocol):
    def extract(self, language: str, source_text: str) -> list[Span]: ...


class CheckingClient(Protocol):
    async def execute(self, request: CheckRequest) -> list[Match]: ...


@dataclass(frozen=True)
class Fix:
    value: str


@dataclass(frozen=True)
class Diagnostic:
    id: int
    start: Position
    end: Position
    code: str
    message: str
    short_message: str
    fixes: tuple[Fix, ...] = ()


@dataclass(frozen=True)
class DocumentCheckResult:
    language: str
    document_uri: str
    document_version: int
    diagnostics: tuple[Diagnostic, ...]
    _by_id: dict[int, Diagnostic] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._by_id.update((diagnostic.id, diagnostic) for diagnostic in self.diagnostics)

    def find(self, diagnostic_id: int) -> Diagnostic | None:
        return self._by_id.get(diagnostic_id)


@dataclass(frozen=True)
class CheckTarget:
    host: str
    port: int
    language: str
    max_segment_bytes: int = DEFAULT_MAX_SEGMENT_BYTES
    max_replacements: int | None = None


def map_matches(
    matches: Sequence[Match],
    text: str,
    ids: Iterator[int],
    *,
    max_replacements: int | None = None,
) -> tuple[Diagnostic, ...]:
    index = LineIndex(text)
    diagnostics: list[Diagnostic] = []
    for match in matches:
        start = index.position(match.offset)
        end = index.position(match.offset + match.length)
        replacements = match.replacements
        if max_replacements is not None:
            replacements = replacements[:max_replacements]
        diagnostics.append(
            Diagnostic(
                id=next(ids),
                start=start,
                end=end,
                code=match.rule_id,
                message=match.message,
                short_message=match.short_message,
                fixes=tuple(Fix(value) for value in replacements),
            )
        )
    return tuple(diagnostics)


class DocumentChecker:
    """Runs the check pipeline and owns the latest result for each document.

    Results are keyed by URI. A result is only replaced by one whose version
    is not older; the comparison happens before any work and again when the
    awaited check completes, so overlapping checks cannot regress a document.
    """

    def __init__(
        self,
        extractor: Extractor,
        client: CheckingClient,
        target: CheckTarget,
        *,
        ids: Iterator[int] | None = None,
    ) -> None:
        self._extractor = extractor
        self._client = client
        self._target = target
        self._ids = ids if ids is not None else itertools.count(1)
        self._documents: dict[str, DocumentCheckResult] = {}

    def _is_stale(self, uri: str, version: int) -> bool:
        current = self._documents.get(uri)
        return current is not None and current.document_version > version

    def build(self, language: str, text: str) -> CheckRequest:
        spans = self._extractor.extract(language, text)
        return build_request(
            spans,
            text,
            language=self._target.language,
            host=self._target.host,
            port=self._target.port,
            max_segment_bytes=self._target.max_segment_bytes,
        )

    async def check_document(
        self,
        language: str,
        uri: str,
        version: int,
        text: str,
    ) -> DocumentCheckResult | None:
        if self._is_stale(uri, version):
            logger.debug("skipping %s v%s: newer result stored", uri, version)
            return None
        request = self.build(language, text)
        matches = await self._client.execute(request)
        diagnostics = map_matches(
            matches,
            text,
            self._ids,
            max_replacements=self._target.max_replacements,
        )
        if self._is_stale(uri, version):
            logger.debug("dropping %s v%s: newer result stored while checking", uri, version)
            return None
        result = DocumentCheckResult(
            language=language,
            document_uri=uri,
            document_version=version,
            diagnostics=diagnostics,
        )
        self._documents[uri] = result
        logger.debug("%s v%s: %d diagnostics", uri, version, len(diagnostics))
        return result

    def result(self, uri: str) -> DocumentCheckResult | None:
        return self._documents.get(uri)

    def get_diagnostic(self, uri: str, diagnostic_id: int) -> Diagnostic | None:
        result = self._documents.get(uri)
        if result is None:
            return None
        return result.find(diagnostic_id)

    def get_language(self, uri: str) -> str | None:
        result = self._documents.get(uri)
        return result.language if result is not None else None

    def close_document(self, uri: str) -> bool:
        return self._documents.pop(uri, None) is not None
