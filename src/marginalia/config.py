from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date, datetime, time
from pathlib import Path
from typing import TypeAlias
import tomllib

from pydantic import ValidationError

from marginalia.exceptions import ConfigError
from marginalia.schema import LanguageConfigDTO, ServiceConfigDTO

DEFAULT_CONFIG_NAME = "marginalia.toml"
APP_DIR_NAME = "marginalia"
GRAMMAR_RUNTIME_DIR = Path("runtime") / "grammars"

TomlScalar: TypeAlias = str | int | float | bool | None | date | datetime | time
TomlValue: TypeAlias = TomlScalar | list["TomlValue"] | dict[str, "TomlValue"]
TomlTable: TypeAlias = dict[str, TomlValue]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceSettings:
    host: str = "localhost"
    port: int = 8081
    language: str = "en-US"
    executable: str = "languagetool"
    container_runtimes: tuple[str, ...] = ("podman", "docker")
    container_name: str = "marginalia-languagetool"
    container_image: str = "docker.io/erikvl87/languagetool"
    container_port: int = 8010
    startup_timeout_seconds: float = 60.0
    request_timeout_seconds: float = 30.0
    max_segment_bytes: int = 1024
    max_replacements: int = 5
    severity: str = "hint"


@dataclass(frozen=True)
class LanguageSettings:
    name: str
    grammar: str
    library: str
    symbol: str | None
    search_paths: tuple[Path, ...]
    queries: tuple[str, ...]


@dataclass(frozen=True)
class Settings:
    service: ServiceSettings
    languages: dict[str, LanguageSettings]
    source: Path | None = None


def _load_toml(path: Path) -> TomlTable:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError:
        logger.warning("could not read config file %s", path)
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        logger.warning("ignoring invalid config file %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _user_config_dir() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME", "").strip()
    root = Path(base) if base else Path.home() / ".config"
    return root / APP_DIR_NAME


def config_search_dirs(root: Path | None = None) -> list[Path]:
    base = root if root is not None else Path.cwd()
    dirs = [base, _user_config_dir()]
    unique: list[Path] = []
    for item in dirs:
        if item not in unique:
            unique.append(item)
    return unique


def resolve_config_path(root: Path | None = None, config_path: Path | None = None) -> Path | None:
    if config_path is not None:
        return config_path
    for directory in config_search_dirs(root):
        candidate = directory / DEFAULT_CONFIG_NAME
        if candidate.is_file():
            return candidate
    return None


def load_config(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    path = resolve_config_path(root=root, config_path=config_path)
    if path is None:
        return {}
    return _load_toml(path)


def service_defaults(data: TomlTable) -> TomlTable:
    section = data.get("service", {})
    return section if isinstance(section, dict) else {}


def language_tables(data: TomlTable) -> dict[str, TomlTable]:
    section = data.get("languages", {})
    if not isinstance(section, dict):
        return {}
    return {
        str(name): table
        for name, table in section.items()
        if isinstance(table, dict)
    }


def _normalize_name_list(value: TomlValue) -> list[str]:
    items: list[str] = []
    if value is None:
        return items
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple)):
        for item in value:
            if isinstance(item, str):
                items.extend([part.strip() for part in item.split(",") if part.strip()])
    return [item for item in items if item]


def grammar_search_dirs(root: Path | None = None) -> tuple[Path, ...]:
    return tuple(directory / GRAMMAR_RUNTIME_DIR for directory in config_search_dirs(root))


def parse_service(section: TomlTable) -> ServiceSettings:
    payload = dict(section)
    if "container_runtimes" in payload:
        payload["container_runtimes"] = _normalize_name_list(payload["container_runtimes"])
    try:
        dto = ServiceConfigDTO.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"invalid [service] section: {exc}") from exc
    return ServiceSettings(
        host=dto.host,
        port=dto.port,
        language=dto.language,
        executable=dto.executable,
        container_runtimes=tuple(dto.container_runtimes),
        container_name=dto.container_name,
        container_image=dto.container_image,
        container_port=dto.container_port,
        startup_timeout_seconds=dto.startup_timeout_seconds,
        request_timeout_seconds=dto.request_timeout_seconds,
        max_segment_bytes=dto.max_segment_bytes,
        max_replacements=dto.max_replacements,
        severity=dto.severity,
    )


def parse_language(
    name: str,
    table: TomlTable,
    *,
    base_dir: Path | None = None,
    default_search_dirs: tuple[Path, ...] = (),
) -> LanguageSettings:
    try:
        dto = LanguageConfigDTO.model_validate(table)
    except ValidationError as exc:
        raise ConfigError(f"invalid [languages.{name}] section: {exc}") from exc
    grammar = dto.grammar or name
    library = dto.library or f"tree_sitter_{grammar.replace('-', '_')}"
    search_paths: list[Path] = []
    for raw in dto.search_paths:
        path = Path(raw).expanduser()
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        search_paths.append(path)
    for path in default_search_dirs:
        if path not in search_paths:
            search_paths.append(path)
    return LanguageSettings(
        name=name,
        grammar=grammar,
        library=library,
        symbol=dto.symbol,
        search_paths=tuple(search_paths),
        queries=tuple(dto.queries),
    )


def load_settings(root: Path | None = None, config_path: Path | None = None) -> Settings:
    path = resolve_config_path(root=root, config_path=config_path)
    data = _load_toml(path) if path is not None else {}
    base_dir = path.parent if path is not None else root
    service = parse_service(service_defaults(data))
    default_dirs = grammar_search_dirs(root)
    languages = {
        name: parse_language(
            name,
            table,
            base_dir=base_dir,
            default_search_dirs=default_dirs,
        )
        for name, table in language_tables(data).items()
    }
    return Settings(service=service, languages=languages, source=path)
