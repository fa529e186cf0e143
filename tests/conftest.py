from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for entry in (ROOT, ROOT / "src"):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))


import pytest

from marginalia.config import LanguageSettings, ServiceSettings
from tests.env_helpers import env_scope
from tests.fakes import FakeBackend, RecordingClient, language_settings


@pytest.fixture(autouse=True)
def _isolated_config_home(tmp_path_factory: pytest.TempPathFactory):
    home = tmp_path_factory.mktemp("config-home")
    with env_scope({"XDG_CONFIG_HOME": str(home)}):
        yield home


@pytest.fixture
def rust_settings() -> LanguageSettings:
    return language_settings("rust")


@pytest.fixture
def service_settings() -> ServiceSettings:
    return ServiceSettings(startup_timeout_seconds=5.0)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def client() -> RecordingClient:
    return RecordingClient()
