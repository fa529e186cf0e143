from __future__ import annotations

import asyncio
import re
from pathlib import Path
from types import SimpleNamespace
from typing import Iterable, Sequence

from marginalia.annotation import CheckRequest
from marginalia.config import LanguageSettings
from marginalia.exceptions import GrammarLoadError
from marginalia.languagetool import Match

LINE_COMMENT = r"//[^\n]*"


def language_settings(
    name: str,
    *,
    queries: Sequence[str] = (LINE_COMMENT,),
    library: str | None = None,
    search_paths: Sequence[Path] = (),
) -> LanguageSettings:
    return LanguageSettings(
        name=name,
        grammar=name,
        library=library or f"tree_sitter_{name}",
        symbol=None,
        search_paths=tuple(search_paths),
        queries=tuple(queries),
    )


class FakeBackend:
    """Grammar stand-in whose query patterns are regular expressions."""

    def __init__(self, *, missing: Iterable[str] = ()) -> None:
        self.missing = set(missing)
        self.runs = 0

    def load(self, settings: LanguageSettings) -> str:
        if settings.name in self.missing:
            raise GrammarLoadError(
                settings.name,
                "grammar library not found",
                searched_paths=(Path("/grammars") / f"{settings.grammar}.so",),
            )
        return settings.name

    def compile_query(self, grammar: str, pattern: str) -> re.Pattern[bytes]:
        return re.compile(pattern.encode("utf-8"))

    def run(self, grammar: str, query: re.Pattern[bytes], source: bytes):
        self.runs += 1
        for found in query.finditer(source):
            yield found.start(), found.end(), found.group(0)


class RecordingClient:
    def __init__(self, matches: Sequence[Match] = (), *, error: Exception | None = None) -> None:
        self.matches = list(matches)
        self.error = error
        self.requests: list[CheckRequest] = []

    async def execute(self, request: CheckRequest) -> list[Match]:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return list(self.matches)


class GatedClient:
    """Client whose calls complete only when the test releases them."""

    def __init__(self, results: dict[int, list[Match]]) -> None:
        self.results = results
        self.gates: dict[int, asyncio.Event] = {}
        self.started: dict[int, asyncio.Event] = {}
        self.calls = 0

    def prepare(self) -> None:
        for key in self.results:
            self.gates[key] = asyncio.Event()
            self.started[key] = asyncio.Event()

    async def execute(self, request: CheckRequest) -> list[Match]:
        self.calls += 1
        key = self.calls
        self.started[key].set()
        await self.gates[key].wait()
        return list(self.results[key])


def match(offset: int, length: int, *, rule: str = "MORFOLOGIK_RULE_EN_US", fixes: Sequence[str] = ()) -> Match:
    return Match(
        message="Possible spelling mistake found.",
        short_message="Spelling mistake",
        offset=offset,
        length=length,
        rule_id=rule,
        replacements=tuple(fixes),
    )


class FakeProcess:
    def __init__(self, *, returncode: int | None = None, pid: int = 4242) -> None:
        self.returncode = returncode
        self.pid = pid
        self.terminated = False
        self.killed = False

    def poll(self) -> int | None:
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.returncode = -15

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    def wait(self, timeout: float | None = None) -> int | None:
        return self.returncode


class ProcessFactory:
    """Popen stand-in keyed by program name; exceptions are raised on spawn.

    A list of outcomes is consumed one spawn at a time.
    """

    def __init__(self, outcomes: dict[str, FakeProcess | BaseException | list]) -> None:
        self.outcomes = outcomes
        self.commands: list[list[str]] = []

    def __call__(self, command: list[str], **_kwargs) -> FakeProcess:
        self.commands.append(list(command))
        outcome = self.outcomes.get(command[0], FileNotFoundError(command[0]))
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RunRecorder:
    def __init__(self, *, returncode: int = 0, error: BaseException | None = None) -> None:
        self.returncode = returncode
        self.error = error
        self.commands: list[list[str]] = []

    def __call__(self, command: list[str], **_kwargs) -> SimpleNamespace:
        self.commands.append(list(command))
        if self.error is not None:
            raise self.error
        return SimpleNamespace(returncode=self.returncode, stderr=b"name in use")


class ScriptedProbe:
    def __init__(self, answers: Sequence[bool], *, default: bool = False) -> None:
        self.answers = list(answers)
        self.default = default
        self.calls = 0

    async def __call__(self) -> bool:
        self.calls += 1
        if self.answers:
            return self.answers.pop(0)
        return self.default


class StepClock:
    def __init__(self, step: float = 1.0) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


async def no_sleep(_seconds: float) -> None:
    return None

