from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from flotilla.config import FlotillaSettings, get_settings


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("FLOTILLA_") or key in {"CODEX_PATH", "CHROMA_PERSIST_PATH"}:
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults() -> None:
    settings = FlotillaSettings()

    assert settings.worker_count == 3
    assert settings.integration_branch == "main"
    assert settings.topology == "auto"
    assert not settings.hierarchical
    assert settings.run_budget_seconds == 120 * 60
    assert settings.rate_limit_patterns is None


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLOTILLA_WORKER_COUNT", "9")
    monkeypatch.setenv("FLOTILLA_CLUSTER_SIZE", "4")
    monkeypatch.setenv("FLOTILLA_LOG_LEVEL", "debug")
    monkeypatch.setenv("FLOTILLA_RATE_LIMIT_PATTERNS", "slow down| quota ")
    monkeypatch.setenv("FLOTILLA_PROFILE_PATHS", os.pathsep.join(["a", "b"]))

    settings = FlotillaSettings()

    assert settings.worker_count == 9
    assert settings.hierarchical
    assert settings.log_level == "DEBUG"
    assert settings.rate_limit_patterns == ("slow down", "quota")
    assert settings.profile_paths == (Path("a"), Path("b"))


def test_explicit_topology_wins_over_team_size() -> None:
    assert not FlotillaSettings(worker_count=20, topology="flat").hierarchical
    assert FlotillaSettings(worker_count=2, topology="Hierarchical").hierarchical


@pytest.mark.parametrize(
    "overrides",
    [
        {"topology": "mesh"},
        {"log_level": "LOUD"},
        {"worker_count": 0},
        {"cluster_size": 0},
    ],
)
def test_invalid_values_rejected(overrides: dict) -> None:
    with pytest.raises(ValidationError):
        FlotillaSettings(**overrides)


def test_get_settings_resolves_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("FLOTILLA_REPO_PATH", "checkout")
    monkeypatch.setenv("FLOTILLA_CREDENTIALS_PATH", "creds.yaml")

    settings = get_settings()

    assert settings.repo_path == (tmp_path / "checkout").resolve()
    assert settings.credentials_path == (tmp_path / "creds.yaml").resolve()
    assert settings.state_path.is_absolute()
    assert get_settings() is settings
