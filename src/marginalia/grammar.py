"""tree-sitter implementation of the grammar capability.

A language's ``library`` is resolved first as an importable grammar package
(``tree_sitter_rust`` and friends expose ``language()``), then as a shared
library found in the language's search paths.
"""

from __future__ import annotations

import ctypes
import importlib
import logging
import sys
from pathlib import Path
from typing import Callable, Iterator

from tree_sitter import Language, Parser, Query, QueryCursor

from marginalia.config import LanguageSettings
from marginalia.exceptions import GrammarLoadError

logger = logging.getLogger(__name__)

_CAPSULE_NAME = b"tree_sitter.Language"


def library_suffixes(platform: str = sys.platform) -> tuple[str, ...]:
    if platform.startswith("win"):
        return (".dll",)
    if platform == "darwin":
        return (".dylib", ".so")
    return (".so",)


def _looks_like_path(library: str) -> bool:
    return "/" in library or "\\" in library or library.endswith((".so", ".dylib", ".dll"))


def _language_capsule(pointer: int) -> object:
    capsule_new = ctypes.pythonapi.PyCapsule_New
    capsule_new.restype = ctypes.py_object
    capsule_new.argtypes = [ctypes.c_void_p, ctypes.c_char_p, ctypes.c_void_p]
    return capsule_new(pointer, _CAPSULE_NAME, None)


class TreeSitterBackend:
    def __init__(
        self,
        *,
        import_module_fn: Callable[[str], object] = importlib.import_module,
        library_loader: Callable[[str], object] = ctypes.CDLL,
        platform: str = sys.platform,
    ) -> None:
        self._import_module = import_module_fn
        self._library_loader = library_loader
        self._suffixes = library_suffixes(platform)
        # Loaded shared objects must outlive every Language built from them.
        self._libraries: list[object] = []

    def load(self, settings: LanguageSettings) -> Language:
        if not _looks_like_path(settings.library):
            module = self._import_grammar_module(settings)
            if module is not None:
                entry = settings.symbol or "language"
                factory = getattr(module, entry, None)
                if factory is None:
                    raise GrammarLoadError(
                        settings.name,
                        f"module {settings.library!r} has no {entry!r} entry point",
                    )
                return Language(factory())
        return self._load_shared_library(settings)

    def _import_grammar_module(self, settings: LanguageSettings) -> object | None:
        try:
            return self._import_module(settings.library)
        except ModuleNotFoundError:
            logger.debug("no grammar module %s; searching shared libraries", settings.library)
            return None

    def candidate_paths(self, settings: LanguageSettings) -> tuple[Path, ...]:
        if _looks_like_path(settings.library):
            return (Path(settings.library).expanduser(),)
        names: list[str] = []
        for name in (settings.library, settings.grammar):
            if name not in names:
                names.append(name)
        return tuple(
            directory / f"{name}{suffix}"
            for directory in settings.search_paths
            for name in names
            for suffix in self._suffixes
        )

    def _load_shared_library(self, settings: LanguageSettings) -> Language:
        candidates = self.candidate_paths(settings)
        path = next((item for item in candidates if item.is_file()), None)
        if path is None:
            raise GrammarLoadError(
                settings.name,
                "grammar library not found",
                searched_paths=candidates,
            )
        symbol = settings.symbol or f"tree_sitter_{settings.grammar.replace('-', '_')}"
        try:
            library = self._library_loader(str(path))
            language_fn = getattr(library, symbol)
        except (OSError, AttributeError) as exc:
            raise GrammarLoadError(
                settings.name,
                f"cannot load symbol {symbol!r} from {path}: {exc}",
                searched_paths=candidates,
            ) from exc
        language_fn.restype = ctypes.c_void_p
        self._libraries.append(library)
        return Language(_language_capsule(language_fn()))

    def compile_query(self, grammar: Language, pattern: str) -> Query:
        return Query(grammar, pattern)

    def run(self, grammar: Language, query: Query, source: bytes) -> Iterator[tuple[int, int, bytes]]:
        tree = Parser(grammar).parse(source)
        captures = QueryCursor(query).captures(tree.root_node)
        for nodes in captures.values():
            for node in nodes:
                yield node.start_byte, node.end_byte, node.text or b""
