"""Wiring of extractor, client, store and service manager from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from marginalia.config import Settings
from marginalia.diagnostics import CheckTarget, DocumentChecker
from marginalia.exceptions import GrammarLoadError
from marginalia.extraction import GrammarBackend, SpanExtractor
from marginalia.languagetool import LanguageToolClient
from marginalia.service import ServiceManager

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    settings: Settings
    extractor: SpanExtractor
    client: LanguageToolClient
    checker: DocumentChecker
    grammar_errors: dict[str, GrammarLoadError]

    async def probe(self) -> bool:
        service = self.settings.service
        return await self.client.probe(service.host, service.port, service.language)

    def service_manager(
        self,
        factory: Callable[..., ServiceManager] = ServiceManager,
    ) -> ServiceManager:
        return factory(self.settings.service, self.probe)


def _default_backend() -> GrammarBackend:
    from marginalia.grammar import TreeSitterBackend

    return TreeSitterBackend()


def build_pipeline(
    settings: Settings,
    *,
    backend: GrammarBackend | None = None,
    client: LanguageToolClient | None = None,
) -> Pipeline:
    service = settings.service
    extractor = SpanExtractor(backend if backend is not None else _default_backend())
    grammar_errors = extractor.initialise_all(settings.languages.values())
    if client is None:
        client = LanguageToolClient(timeout=service.request_timeout_seconds)
    checker = DocumentChecker(
        extractor,
        client,
        CheckTarget(
            host=service.host,
            port=service.port,
            language=service.language,
            max_segment_bytes=service.max_segment_bytes,
            max_replacements=service.max_replacements,
        ),
    )
    return Pipeline(
        settings=settings,
        extractor=extractor,
        client=client,
        checker=checker,
        grammar_errors=grammar_errors,
    )
