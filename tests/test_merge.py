from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import pytest

from flotilla.git import BranchMerger, GitOperationQueue, GitSafety
from flotilla.git.merge import describe

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")


def _commit_on_branch(run_git, repo: Path, branch: str, files: dict[str, str | None]) -> None:
    run_git(repo, "checkout", "-q", "-b", branch, "main")
    for name, content in files.items():
        if content is None:
            run_git(repo, "rm", "-q", name)
        else:
            (repo / name).write_text(content, encoding="utf-8")
            run_git(repo, "add", name)
    run_git(repo, "commit", "-q", "-m", f"{branch} changes")
    run_git(repo, "checkout", "-q", "main")


def _merger(**kwargs) -> BranchMerger:
    return BranchMerger(GitSafety(), GitOperationQueue(settle_delay=0), **kwargs)


def test_conflicting_branches_resolve_in_favour_of_incoming(seeded_repo: Path, run_git) -> None:
    for name in ("a.txt", "b.txt", "keep.txt"):
        (seeded_repo / name).write_text("base\n", encoding="utf-8")
    run_git(seeded_repo, "add", ".")
    run_git(seeded_repo, "commit", "-q", "-m", "shared files")

    _commit_on_branch(run_git, seeded_repo, "worker-1", {"a.txt": "one\n", "b.txt": "one\n", "keep.txt": "one\n"})
    _commit_on_branch(run_git, seeded_repo, "worker-2", {"a.txt": "two\n", "b.txt": "two\n", "keep.txt": None})
    merger = _merger(push_enabled=False)

    async def scenario():
        first = await merger.merge(seeded_repo, "worker-1", is_global=True)
        second = await merger.merge(seeded_repo, "worker-2", is_global=True)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.merged and first.conflicts == 0
    assert second.merged
    assert second.resolutions == {"a.txt": "theirs", "b.txt": "theirs", "keep.txt": "ours"}
    assert second.conflicts == 3
    assert (seeded_repo / "a.txt").read_text(encoding="utf-8") == "two\n"
    assert (seeded_repo / "b.txt").read_text(encoding="utf-8") == "two\n"
    assert (seeded_repo / "keep.txt").read_text(encoding="utf-8") == "one\n"
    assert run_git(seeded_repo, "status", "--porcelain").strip() == ""
    parents = run_git(seeded_repo, "rev-list", "--parents", "-n", "1", "HEAD").split()
    assert len(parents) == 3
    assert describe(second)["conflicts"] == 3


def test_two_conflicting_files_count_two_conflicts(seeded_repo: Path, run_git) -> None:
    _commit_on_branch(run_git, seeded_repo, "worker-1", {"x.txt": "A\n", "y.txt": "A\n"})
    _commit_on_branch(run_git, seeded_repo, "worker-2", {"x.txt": "B\n", "y.txt": "B\n"})
    merger = _merger(push_enabled=False)

    async def scenario():
        await merger.merge(seeded_repo, "worker-1", is_global=True)
        return await merger.merge(seeded_repo, "worker-2", is_global=True)

    outcome = asyncio.run(scenario())

    assert outcome.conflicts == 2
    assert set(outcome.resolutions.values()) == {"theirs"}
    assert (seeded_repo / "x.txt").read_text(encoding="utf-8") == "B\n"


def test_merge_without_new_commits_is_not_counted(seeded_repo: Path, run_git) -> None:
    run_git(seeded_repo, "branch", "worker-1", "main")
    merger = _merger(push_enabled=False)

    outcome = asyncio.run(merger.merge(seeded_repo, "worker-1", is_global=True))

    assert outcome.merged is False
    assert outcome.conflicts == 0


def test_push_disabled_returns_false(seeded_repo: Path) -> None:
    merger = _merger(push_enabled=False)

    assert asyncio.run(merger.push(seeded_repo, "main")) is False


def test_push_and_final_sync_against_bare_remote(seeded_repo: Path, bare_remote: Path, run_git) -> None:
    run_git(seeded_repo, "remote", "add", "origin", str(bare_remote))
    _commit_on_branch(run_git, seeded_repo, "worker-1", {"feature.txt": "done\n"})
    merger = _merger(remote="origin", push_enabled=True)

    async def scenario():
        outcome = await merger.merge(seeded_repo, "worker-1", is_global=True)
        pushed = await merger.push(seeded_repo, "main")
        sync = await merger.final_sync(seeded_repo, "main")
        return outcome, pushed, sync

    outcome, pushed, sync = asyncio.run(scenario())

    assert outcome.merged and pushed
    assert sync.fetched and sync.rebased and sync.pushed
    assert run_git(bare_remote, "rev-parse", "main") == run_git(seeded_repo, "rev-parse", "main")


def test_final_sync_skipped_without_remote(seeded_repo: Path) -> None:
    sync = asyncio.run(_merger().final_sync(seeded_repo, "main"))

    assert not sync.fetched
    assert not sync.pushed
