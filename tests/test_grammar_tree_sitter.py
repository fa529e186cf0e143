from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

pytest.importorskip("tree_sitter")

from marginalia.exceptions import GrammarLoadError
from marginalia.extraction import Span, SpanExtractor
from marginalia.grammar import TreeSitterBackend, library_suffixes
from tests.fakes import language_settings


def _no_module(name: str) -> object:
    raise ModuleNotFoundError(name)


def _python_settings(*queries: str):
    return language_settings(
        "python",
        queries=queries or ("(comment) @comment",),
        library="tree_sitter_python",
    )


def test_library_suffixes_follow_platform() -> None:
    assert library_suffixes("linux") == (".so",)
    assert library_suffixes("darwin") == (".dylib", ".so")
    assert library_suffixes("win32") == (".dll",)


def test_missing_library_lists_searched_paths(tmp_path: Path) -> None:
    backend = TreeSitterBackend(import_module_fn=_no_module, platform="linux")
    settings = language_settings("doesnotexist", search_paths=(tmp_path,))
    with pytest.raises(GrammarLoadError) as excinfo:
        backend.load(settings)
    assert excinfo.value.searched_paths == (
        tmp_path / "tree_sitter_doesnotexist.so",
        tmp_path / "doesnotexist.so",
    )
    assert str(tmp_path / "doesnotexist.so") in str(excinfo.value)


def test_explicit_library_path_is_the_only_candidate(tmp_path: Path) -> None:
    backend = TreeSitterBackend(import_module_fn=_no_module, platform="linux")
    library = tmp_path / "custom" / "libtoy.so"
    settings = language_settings("toy", library=str(library), search_paths=(tmp_path,))
    assert backend.candidate_paths(settings) == (library,)


def test_library_without_entry_symbol_fails(tmp_path: Path) -> None:
    (tmp_path / "tree_sitter_toy.so").write_bytes(b"")
    backend = TreeSitterBackend(
        import_module_fn=_no_module,
        library_loader=lambda _path: SimpleNamespace(),
        platform="linux",
    )
    settings = language_settings("toy", search_paths=(tmp_path,))
    with pytest.raises(GrammarLoadError, match="cannot load symbol 'tree_sitter_toy'"):
        backend.load(settings)


def test_module_without_entry_point_fails() -> None:
    backend = TreeSitterBackend(import_module_fn=lambda _name: SimpleNamespace())
    with pytest.raises(GrammarLoadError, match="has no 'language' entry point"):
        backend.load(language_settings("toy"))


def test_python_comments_are_extracted() -> None:
    pytest.importorskip("tree_sitter_python")
    extractor = SpanExtractor(TreeSitterBackend())
    extractor.initialise(_python_settings())
    source = "x = 1  # helo\n# second é\ndef f():\n    return '# not a comment'\n"
    spans = extractor.extract("python", source)
    assert spans == [
        Span(text="# helo", start_byte=7, end_byte=13),
        Span(text="# second é", start_byte=14, end_byte=25),
    ]


def test_invalid_query_fails_initialisation() -> None:
    pytest.importorskip("tree_sitter_python")
    extractor = SpanExtractor(TreeSitterBackend())
    with pytest.raises(GrammarLoadError):
        extractor.initialise(_python_settings("(no_such_node) @comment"))
    assert not extractor.is_supported("python")
    assert extractor.failure("python") is not None
