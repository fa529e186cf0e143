from __future__ import annotations

import asyncio
import logging
from types import SimpleNamespace

import pytest

pytest.importorskip("pygls")
from lsprotocol.types import (
    CodeActionContext,
    CodeActionKind,
    CodeActionParams,
    Diagnostic,
    DiagnosticSeverity,
    DidChangeTextDocumentParams,
    DidCloseTextDocumentParams,
    DidOpenTextDocumentParams,
    Position,
    Range,
    TextDocumentIdentifier,
    TextDocumentItem,
    VersionedTextDocumentIdentifier,
)

from marginalia import server
from marginalia.diagnostics import CheckTarget, DocumentChecker
from marginalia.exceptions import InvariantViolation, ServiceUnreachable
from marginalia.extraction import SpanExtractor
from tests.fakes import FakeBackend, RecordingClient, language_settings, match

URI = "file:///tmp/main.rs"
SOURCE = "// helo wrold\nfn f(){}"


class _Workspace:
    def __init__(self) -> None:
        self.documents: dict[str, SimpleNamespace] = {}

    def get_text_document(self, uri: str) -> SimpleNamespace:
        return self.documents[uri]


def _ls(client: RecordingClient, *, severity=DiagnosticSeverity.Hint):
    extractor = SpanExtractor(FakeBackend())
    extractor.initialise(language_settings("rust"))
    checker = DocumentChecker(
        extractor,
        client,
        CheckTarget(host="localhost", port=8081, language="en-US"),
    )
    published = []
    ls = SimpleNamespace(
        workspace=_Workspace(),
        text_document_publish_diagnostics=published.append,
    )
    server.configure(
        ls,
        server.ServerState(checker=checker, extractor=extractor, severity=severity),
    )
    return ls, published


def _open(ls, *, language: str = "rust", version: int = 1, text: str = SOURCE) -> None:
    params = DidOpenTextDocumentParams(
        text_document=TextDocumentItem(uri=URI, language_id=language, version=version, text=text)
    )
    asyncio.run(server.did_open(ls, params))


def _code_actions(ls, diagnostics: list[Diagnostic]):
    params = CodeActionParams(
        text_document=TextDocumentIdentifier(uri=URI),
        range=Range(start=Position(line=0, character=0), end=Position(line=0, character=1)),
        context=CodeActionContext(diagnostics=diagnostics),
    )
    return server.code_action(ls, params)


def test_did_open_publishes_versioned_diagnostics() -> None:
    ls, published = _ls(RecordingClient([match(3, 4, fixes=("hello",))]))
    _open(ls)
    (params,) = published
    assert params.uri == URI
    assert params.version == 1
    (diagnostic,) = params.diagnostics
    assert diagnostic.range == Range(
        start=Position(line=0, character=3), end=Position(line=0, character=7)
    )
    assert diagnostic.code == "MORFOLOGIK_RULE_EN_US"
    assert diagnostic.source == server.DIAGNOSTIC_SOURCE
    assert diagnostic.severity == DiagnosticSeverity.Hint
    assert isinstance(diagnostic.data, int)


def test_code_action_offers_replacements_for_known_ids() -> None:
    ls, published = _ls(RecordingClient([match(3, 4, fixes=("hello", "help"))]))
    _open(ls)
    reported = published[0].diagnostics
    actions = _code_actions(ls, reported)
    assert [action.title for action in actions] == [
        'Replace with "hello"',
        'Replace with "help"',
    ]
    action = actions[0]
    assert action.kind == CodeActionKind.QuickFix
    (edit,) = action.edit.changes[URI]
    assert edit.new_text == "hello"
    assert edit.range == reported[0].range


def test_code_action_ignores_unknown_ids() -> None:
    ls, _published = _ls(RecordingClient([match(3, 4, fixes=("hello",))]))
    _open(ls)
    stranger = Diagnostic(
        range=Range(start=Position(line=0, character=0), end=Position(line=0, character=1)),
        message="from another tool",
        data=9999,
    )
    no_data = Diagnostic(
        range=Range(start=Position(line=0, character=0), end=Position(line=0, character=1)),
        message="no data",
    )
    assert _code_actions(ls, [stranger, no_data]) == []


def test_did_change_uses_remembered_language() -> None:
    client = RecordingClient([match(3, 4)])
    ls, published = _ls(client)
    _open(ls)
    ls.workspace.documents[URI] = SimpleNamespace(source="// teh end\n", language_id="", version=2)
    params = DidChangeTextDocumentParams(
        text_document=VersionedTextDocumentIdentifier(uri=URI, version=2),
        content_changes=[],
    )
    asyncio.run(server.did_change(ls, params))
    assert [item.version for item in published] == [1, 2]
    assert client.requests[-1].text() == "// teh end\n"


def test_did_change_checks_workspace_text_under_its_own_version() -> None:
    client = RecordingClient([match(3, 2)])
    ls, published = _ls(client)
    _open(ls)
    ls.workspace.documents[URI] = SimpleNamespace(source="// v3 text\n", language_id="", version=3)
    params = DidChangeTextDocumentParams(
        text_document=VersionedTextDocumentIdentifier(uri=URI, version=2),
        content_changes=[],
    )
    asyncio.run(server.did_change(ls, params))
    assert published[-1].version == 3
    assert ls.checking_state.checker.result(URI).document_version == 3
    assert client.requests[-1].text() == "// v3 text\n"


def test_unsupported_language_is_skipped_and_warned_once(caplog) -> None:
    client = RecordingClient()
    ls, published = _ls(client)
    with caplog.at_level(logging.WARNING, logger="marginalia.server"):
        _open(ls, language="cobol")
        _open(ls, language="cobol", version=2)
    assert published == []
    assert client.requests == []
    assert caplog.text.count("not checking cobol documents") == 1


def test_service_failure_is_logged_and_prior_result_kept(caplog) -> None:
    client = RecordingClient([match(3, 4)])
    ls, published = _ls(client)
    _open(ls)
    client.error = ServiceUnreachable("connection refused")
    with caplog.at_level(logging.ERROR, logger="marginalia.server"):
        _open(ls, version=2)
    assert len(published) == 1
    assert "connection refused" in caplog.text
    assert ls.checking_state.checker.result(URI).document_version == 1


def test_did_close_clears_diagnostics() -> None:
    ls, published = _ls(RecordingClient([match(3, 4)]))
    _open(ls)
    server.did_close(ls, DidCloseTextDocumentParams(text_document=TextDocumentIdentifier(uri=URI)))
    assert published[-1].diagnostics == []
    assert ls.checking_state.checker.get_language(URI) is None


def test_handlers_require_configuration() -> None:
    ls = SimpleNamespace()
    with pytest.raises(InvariantViolation):
        server.did_close(ls, DidCloseTextDocumentParams(text_document=TextDocumentIdentifier(uri=URI)))


def test_configured_severity_is_used() -> None:
    ls, published = _ls(RecordingClient([match(3, 4)]), severity=DiagnosticSeverity.Warning)
    _open(ls)
    assert published[0].diagnostics[0].severity == DiagnosticSeverity.Warning
