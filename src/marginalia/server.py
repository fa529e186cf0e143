from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from pygls.lsp.server import LanguageServer
from lsprotocol.types import (
    TEXT_DOCUMENT_CODE_ACTION,
    TEXT_DOCUMENT_DID_CHANGE,
    TEXT_DOCUMENT_DID_CLOSE,
    TEXT_DOCUMENT_DID_OPEN,
    CodeAction,
    CodeActionKind,
    CodeActionOptions,
    CodeActionParams,
    Diagnostic,
    DiagnosticSeverity,
    DidChangeTextDocumentParams,
    DidCloseTextDocumentParams,
    DidOpenTextDocumentParams,
    Position,
    PublishDiagnosticsParams,
    Range,
    TextEdit,
    WorkspaceEdit,
)

from marginalia import __version__
from marginalia import diagnostics as store
from marginalia.exceptions import MarginaliaError
from marginalia.extraction import SpanExtractor
from marginalia.invariants import never

logger = logging.getLogger(__name__)

DIAGNOSTIC_SOURCE = "LanguageTool"

SEVERITIES = {
    "error": DiagnosticSeverity.Error,
    "warning": DiagnosticSeverity.Warning,
    "information": DiagnosticSeverity.Information,
    "hint": DiagnosticSeverity.Hint,
}


@dataclass
class ServerState:
    checker: store.DocumentChecker
    extractor: SpanExtractor
    severity: DiagnosticSeverity = DiagnosticSeverity.Hint
    warned_languages: set[str] = field(default_factory=set)


class MarginaliaServer(LanguageServer):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.checking_state: ServerState | None = None


server = MarginaliaServer("marginalia", __version__)


def configure(ls, state: ServerState) -> None:
    ls.checking_state = state


def _state(ls) -> ServerState:
    state = getattr(ls, "checking_state", None)
    if state is None:
        never("language server used before configure()")
    return state


def _range(diagnostic: store.Diagnostic) -> Range:
    return Range(
        start=Position(line=diagnostic.start.line, character=diagnostic.start.column),
        end=Position(line=diagnostic.end.line, character=diagnostic.end.column),
    )


def to_lsp_diagnostic(
    diagnostic: store.Diagnostic,
    severity: DiagnosticSeverity = DiagnosticSeverity.Hint,
) -> Diagnostic:
    return Diagnostic(
        range=_range(diagnostic),
        message=diagnostic.message,
        severity=severity,
        code=diagnostic.code,
        source=DIAGNOSTIC_SOURCE,
        data=diagnostic.id,
    )


def _publish(ls, uri: str, version: int | None, diagnostics: list[Diagnostic]) -> None:
    ls.text_document_publish_diagnostics(
        PublishDiagnosticsParams(uri=uri, version=version, diagnostics=diagnostics)
    )


def _supported(state: ServerState, language: str) -> bool:
    if state.extractor.is_supported(language):
        return True
    if language not in state.warned_languages:
        state.warned_languages.add(language)
        failure = state.extractor.failure(language)
        if failure is not None:
            logger.warning("not checking %s documents: %s", language, failure)
        else:
            logger.warning("not checking %s documents: language is not configured", language)
    return False


async def check_and_publish(ls, language: str, uri: str, version: int, text: str) -> None:
    state = _state(ls)
    if not _supported(state, language):
        return
    try:
        result = await state.checker.check_document(language, uri, version, text)
    except MarginaliaError as exc:
        logger.error("check of %s v%s failed: %s", uri, version, exc)
        return
    if result is None:
        return
    _publish(
        ls,
        uri,
        result.document_version,
        [to_lsp_diagnostic(item, state.severity) for item in result.diagnostics],
    )


@server.feature(TEXT_DOCUMENT_DID_OPEN)
async def did_open(ls, params: DidOpenTextDocumentParams) -> None:
    document = params.text_document
    await check_and_publish(
        ls, document.language_id, document.uri, document.version, document.text
    )


@server.feature(TEXT_DOCUMENT_DID_CHANGE)
async def did_change(ls, params: DidChangeTextDocumentParams) -> None:
    uri = params.text_document.uri
    document = ls.workspace.get_text_document(uri)
    language = _state(ls).checker.get_language(uri) or document.language_id
    if not language:
        logger.debug("no language known for %s", uri)
        return
    # The workspace may already hold a later edit than these params describe;
    # its text is checked under its own version.
    version = document.version
    if version is None:
        version = params.text_document.version
    await check_and_publish(ls, language, uri, version, document.source)


@server.feature(TEXT_DOCUMENT_DID_CLOSE)
def did_close(ls, params: DidCloseTextDocumentParams) -> None:
    uri = params.text_document.uri
    if _state(ls).checker.close_document(uri):
        _publish(ls, uri, None, [])


def _diagnostic_id(data: object) -> int | None:
    if isinstance(data, bool):
        return None
    if isinstance(data, int):
        return data
    if isinstance(data, str) and data.strip().isdigit():
        return int(data)
    return None


@server.feature(
    TEXT_DOCUMENT_CODE_ACTION,
    CodeActionOptions(code_action_kinds=[CodeActionKind.QuickFix]),
)
def code_action(ls, params: CodeActionParams) -> list[CodeAction]:
    state = _state(ls)
    uri = params.text_document.uri
    actions: list[CodeAction] = []
    for reported in params.context.diagnostics:
        diagnostic_id = _diagnostic_id(reported.data)
        if diagnostic_id is None:
            continue
        diagnostic = state.checker.get_diagnostic(uri, diagnostic_id)
        if diagnostic is None:
            continue
        edit_range = _range(diagnostic)
        for fix in diagnostic.fixes:
            actions.append(
                CodeAction(
                    title=f'Replace with "{fix.value}"',
                    kind=CodeActionKind.QuickFix,
                    diagnostics=[reported],
                    edit=WorkspaceEdit(
                        changes={uri: [TextEdit(range=edit_range, new_text=fix.value)]}
                    ),
                )
            )
    return actions


def start(start_fn: Callable[[], None] | None = None) -> None:
    (start_fn or server.start_io)()
