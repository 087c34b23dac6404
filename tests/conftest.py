from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable

import pytest


@pytest.fixture
def git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Deterministic identity and no user or system git configuration."""

    empty_config = tmp_path / "gitconfig"
    empty_config.write_text("", encoding="utf-8")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(empty_config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for prefix in ("GIT_AUTHOR", "GIT_COMMITTER"):
        monkeypatch.setenv(f"{prefix}_NAME", "Flotilla Test")
        monkeypatch.setenv(f"{prefix}_EMAIL", "flotilla@example.com")


@pytest.fixture
def run_git(git_env) -> Callable[..., str]:
    def _run(cwd: Path, *args: str) -> str:
        completed = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            check=True,
            capture_output=True,
            text=True,
        )
        return completed.stdout

    return _run


@pytest.fixture
def seeded_repo(tmp_path: Path, run_git) -> Path:
    """A repository on ``main`` with one commit."""

    repo = tmp_path / "repo"
    repo.mkdir()
    run_git(repo, "init")
    run_git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    (repo / "README.md").write_text("seed\n", encoding="utf-8")
    run_git(repo, "add", "README.md")
    run_git(repo, "commit", "-m", "Initial commit")
    return repo


@pytest.fixture
def bare_remote(tmp_path: Path, seeded_repo: Path, run_git) -> Path:
    """A bare clone of ``seeded_repo`` usable as a push target."""

    remote = tmp_path / "remote.git"
    run_git(tmp_path, "clone", "--bare", str(seeded_repo), str(remote))
    return remote
