"""Locate prose-bearing spans (comments) in source text.

The grammar engine sits behind :class:`GrammarBackend` so the registry can be
driven by tree-sitter in production and by fakes in tests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Protocol

from marginalia.config import LanguageSettings
from marginalia.exceptions import (
    ExtractionError,
    GrammarLoadError,
    MarginaliaError,
    NotInitialised,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Span:
    text: str
    start_byte: int
    end_byte: int

    @property
    def byte_length(self) -> int:
        return self.end_byte - self.start_byte


RawCapture = tuple[int, int, bytes]


class GrammarBackend(Protocol):
    def load(self, settings: LanguageSettings) -> object: ...

    def compile_query(self, grammar: object, pattern: str) -> object: ...

    def run(self, grammar: object, query: object, source: bytes) -> Iterable[RawCapture]: ...


@dataclass
class LoadedLanguage:
    settings: LanguageSettings
    grammar: object
    queries: tuple[object, ...]


def span_sort_key(span: Span) -> tuple[int, int]:
    # Equal starts: the shorter span sorts first.
    return (span.start_byte, span.end_byte)


def merge_spans(groups: Iterable[Iterable[Span]]) -> list[Span]:
    unique: set[Span] = set()
    for group in groups:
        unique.update(group)
    return sorted(unique, key=span_sort_key)


@dataclass
class SpanExtractor:
    backend: GrammarBackend
    _loaded: dict[str, LoadedLanguage] = field(default_factory=dict)
    _failed: dict[str, MarginaliaError] = field(default_factory=dict)

    def initialise(self, settings: LanguageSettings) -> None:
        """Load the grammar and compile every query pattern for one language.

        Failure is recorded against the language and re-raised; the language
        then stays unsupported until :meth:`initialise` succeeds for it.
        """
        name = settings.name
        self._loaded.pop(name, None)
        try:
            grammar = self._load(settings)
            queries = tuple(
                self._compile(settings, grammar, pattern) for pattern in settings.queries
            )
        except GrammarLoadError as exc:
            self._failed[name] = exc
            raise
        self._failed.pop(name, None)
        self._loaded[name] = LoadedLanguage(settings=settings, grammar=grammar, queries=queries)
        logger.info("initialised language %s (%d queries)", name, len(queries))

    def initialise_all(self, languages: Iterable[LanguageSettings]) -> dict[str, GrammarLoadError]:
        errors: dict[str, GrammarLoadError] = {}
        for settings in languages:
            try:
                self.initialise(settings)
            except GrammarLoadError as exc:
                logger.error("%s", exc)
                errors[settings.name] = exc
        return errors

    def _load(self, settings: LanguageSettings) -> object:
        try:
            return self.backend.load(settings)
        except GrammarLoadError:
            raise
        except Exception as exc:
            raise GrammarLoadError(settings.name, str(exc)) from exc

    def _compile(self, settings: LanguageSettings, grammar: object, pattern: str) -> object:
        try:
            return self.backend.compile_query(grammar, pattern)
        except GrammarLoadError:
            raise
        except Exception as exc:
            raise GrammarLoadError(
                settings.name,
                f"query {pattern!r} failed to compile: {exc}",
            ) from exc

    def is_supported(self, language: str) -> bool:
        return language in self._loaded

    def failure(self, language: str) -> MarginaliaError | None:
        return self._failed.get(language)

    @property
    def languages(self) -> tuple[str, ...]:
        return tuple(sorted(self._loaded))

    def extract(self, language: str, source_text: str) -> list[Span]:
        loaded = self._loaded.get(language)
        if loaded is None:
            raise NotInitialised(language)
        source = source_text.encode("utf-8")
        groups = [
            self._run_query(language, loaded, query, source) for query in loaded.queries
        ]
        return merge_spans(groups)

    def _run_query(
        self,
        language: str,
        loaded: LoadedLanguage,
        query: object,
        source: bytes,
    ) -> list[Span]:
        try:
            captures = list(self.backend.run(loaded.grammar, query, source))
        except Exception as exc:
            raise ExtractionError(f"query failed for {language!r}: {exc}") from exc
        return [_span_from_capture(language, capture, source) for capture in captures]


def _span_from_capture(language: str, capture: RawCapture, source: bytes) -> Span:
    start, end, _text = capture
    if not 0 <= start <= end <= len(source):
        raise ExtractionError(
            f"capture ({start}, {end}) for {language!r} lies outside a {len(source)} byte document"
        )
    try:
        text = source[start:end].decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ExtractionError(
            f"capture ({start}, {end}) for {language!r} splits a UTF-8 sequence"
        ) from exc
    return Span(text=text, start_byte=start, end_byte=end)
