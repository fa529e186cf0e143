from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Callable, List, Optional

import typer

from marginalia.config import Settings, load_settings
from marginalia.exceptions import ConfigError, MarginaliaError, StartupExhausted
from marginalia.extraction import GrammarBackend
from marginalia.pipeline import Pipeline, build_pipeline
from marginalia.schema import CheckReportDTO, DiagnosticDTO
from marginalia.service import ServiceManager

app = typer.Typer(add_completion=False)

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s:%(lineno)d %(message)s"


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    # stdout carries the protocol stream, so logs never go there.
    handler: logging.Handler
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())


def _settings_or_exit(root: Path, config: Path | None) -> Settings:
    try:
        return load_settings(root=root, config_path=config)
    except ConfigError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2)


def _exit_on_sigterm(signum, _frame) -> None:
    raise SystemExit(128 + signum)


def run_server(
    pipeline: Pipeline,
    *,
    manager_factory: Callable[..., ServiceManager] = ServiceManager,
    start_fn: Callable[[], None] | None = None,
    signal_fn: Callable[..., object] = signal.signal,
) -> int:
    from marginalia import server as server_module

    manager = pipeline.service_manager(manager_factory)
    # SIGTERM unwinds through the finally below so the service is released.
    previous = signal_fn(signal.SIGTERM, _exit_on_sigterm)
    try:
        try:
            asyncio.run(manager.start())
        except StartupExhausted as exc:
            logger.critical("%s", exc)
            typer.echo(str(exc), err=True)
            return 1
        server_module.configure(
            server_module.server,
            server_module.ServerState(
                checker=pipeline.checker,
                extractor=pipeline.extractor,
                severity=server_module.SEVERITIES[pipeline.settings.service.severity],
            ),
        )
        server_module.start(start_fn)
    finally:
        manager.close()
        signal_fn(signal.SIGTERM, previous)
    return 0


async def check_text(
    pipeline: Pipeline,
    *,
    path: Path,
    language: str,
    text: str,
    manager_factory: Callable[..., ServiceManager] = ServiceManager,
) -> CheckReportDTO:
    uri = path.resolve().as_uri()
    async with pipeline.service_manager(manager_factory):
        result = await pipeline.checker.check_document(language, uri, 0, text)
    diagnostics = [] if result is None else list(result.diagnostics)
    return CheckReportDTO(
        language=language,
        uri=uri,
        version=0,
        diagnostics=[
            DiagnosticDTO(
                path=str(path),
                line=item.start.line + 1,
                col=item.start.column + 1,
                end_line=item.end.line + 1,
                end_col=item.end.column + 1,
                code=item.code,
                message=item.message,
                fixes=[fix.value for fix in item.fixes],
            )
            for item in diagnostics
        ],
        stats={"diagnostics": len(diagnostics)},
    )


def render_report(report: CheckReportDTO) -> List[str]:
    lines: List[str] = []
    for item in report.diagnostics:
        line = f"{item.path}:{item.line}:{item.col}: {item.code} {item.message}"
        if item.fixes:
            line += f" (suggestions: {', '.join(item.fixes)})"
        lines.append(line)
    return lines


def language_report(
    settings: Settings,
    *,
    backend: GrammarBackend | None = None,
) -> List[tuple[str, str]]:
    pipeline = build_pipeline(settings, backend=backend)
    rows: List[tuple[str, str]] = []
    for name in sorted(settings.languages):
        error = pipeline.grammar_errors.get(name)
        rows.append((name, "ok" if error is None else f"error: {error}"))
    return rows


@app.command()
def serve(
    root: Path = typer.Option(Path("."), "--root"),
    config: Optional[Path] = typer.Option(None, "--config"),
    log_file: Optional[Path] = typer.Option(None, "--log-file"),
    log_level: str = typer.Option("INFO", "--log-level"),
) -> None:
    """Run the language server over stdio."""
    configure_logging(log_level, log_file)
    settings = _settings_or_exit(root, config)
    if settings.source is None:
        logger.warning("no configuration file found; no languages will be checked")
    raise typer.Exit(code=run_server(build_pipeline(settings)))


@app.command()
def check(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    language: str = typer.Option(..., "--language", "-l"),
    root: Path = typer.Option(Path("."), "--root"),
    config: Optional[Path] = typer.Option(None, "--config"),
    log_level: str = typer.Option("WARNING", "--log-level"),
    as_json: bool = typer.Option(False, "--json"),
) -> None:
    """Check the comments of one file and print the issues found."""
    configure_logging(log_level)
    settings = _settings_or_exit(root, config)
    pipeline = build_pipeline(settings)
    if not pipeline.extractor.is_supported(language):
        error = pipeline.grammar_errors.get(language)
        typer.echo(str(error) if error else f"language {language!r} is not configured", err=True)
        raise typer.Exit(code=2)
    text = path.read_text(encoding="utf-8")
    try:
        report = asyncio.run(check_text(pipeline, path=path, language=language, text=text))
    except MarginaliaError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2)
    if as_json:
        typer.echo(report.model_dump_json(indent=2))
    else:
        for line in render_report(report):
            typer.echo(line)
    raise typer.Exit(code=1 if report.diagnostics else 0)


@app.command()
def languages(
    root: Path = typer.Option(Path("."), "--root"),
    config: Optional[Path] = typer.Option(None, "--config"),
) -> None:
    """List configured languages and whether their grammars load."""
    configure_logging("ERROR")
    settings = _settings_or_exit(root, config)
    rows = language_report(settings)
    if not rows:
        typer.echo("no languages configured")
    for name, status in rows:
        typer.echo(f"{name}: {status}")
    raise typer.Exit(code=0 if all(status == "ok" for _, status in rows) else 1)


def main() -> None:  # pragma: no cover
    app()
