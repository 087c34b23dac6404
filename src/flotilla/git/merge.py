"""Merging worker branches with automatic conflict resolution.

Conflicts are resolved file by file without operator involvement:

* a content conflict takes the incoming branch's version;
* a file the incoming branch deleted keeps the base side's version;
* a file only the base side deleted takes the incoming version.

Taking the incoming side discards concurrent edits already present on the
target branch. Every resolved path is logged at warning level and reported in
:class:`MergeOutcome` so that the loss is visible.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConflictError, GitCommandError
from .queue import GitOperationQueue, Priority
from .safety import GitSafety

logger = logging.getLogger(__name__)

_STAGE_OURS, _STAGE_THEIRS = 2, 3


@dataclass(slots=True)
class MergeOutcome:
    """Result of merging one branch into a target checkout."""

    branch: str
    target: str
    merged: bool
    commit: str | None = None
    resolutions: dict[str, str] = field(default_factory=dict)

    @property
    def conflicts(self) -> int:
        return len(self.resolutions)


@dataclass(slots=True)
class SyncOutcome:
    fetched: bool
    rebased: bool
    merged_remote: bool
    pushed: bool


class BranchMerger:
    """Merge branches and publish the result through the operation queue."""

    def __init__(
        self,
        git: GitSafety,
        queue: GitOperationQueue,
        *,
        remote: str = "origin",
        push_enabled: bool = True,
    ) -> None:
        self._git = git
        self._queue = queue
        self._remote = remote
        self._push_enabled = push_enabled

    async def merge(
        self,
        workdir: Path,
        branch: str,
        *,
        is_global: bool,
        message: str | None = None,
        priority: Priority = Priority.HIGH,
    ) -> MergeOutcome:
        """Merge ``branch`` into whatever ``workdir`` has checked out."""

        text = message or f"Merge {branch}"
        return await self._queue.enqueue(
            workdir,
            lambda: self._merge_now(Path(workdir), branch, text),
            is_global=is_global,
            priority=priority,
            label=f"merge:{branch}",
        )

    async def push(self, workdir: Path, branch: str) -> bool:
        """Push ``branch`` to the configured remote; ``False`` when pushing is disabled."""

        if not self._push_enabled:
            return False

        async def _push() -> bool:
            await self._git.run(workdir, ["push", self._remote, branch])
            return True

        return await self._queue.enqueue(
            None, _push, is_global=True, priority=Priority.HIGH, label=f"push:{branch}"
        )

    async def final_sync(self, workdir: Path, branch: str) -> SyncOutcome:
        """Fetch, rebase onto the remote branch (merging if the rebase fails) and push."""

        async def _sync() -> SyncOutcome:
            outcome = SyncOutcome(fetched=False, rebased=False, merged_remote=False, pushed=False)
            if not await self._has_remote(workdir):
                logger.info("No remote configured; skipping final sync", extra={"remote": self._remote})
                return outcome

            await self._git.run(workdir, ["fetch", self._remote, branch])
            outcome.fetched = True
            upstream = f"{self._remote}/{branch}"

            rebase = await self._git.execute(workdir, ["rebase", upstream], check=False)
            if rebase.ok:
                outcome.rebased = True
            else:
                logger.warning(
                    "Rebase onto remote failed; falling back to merge",
                    extra={"branch": branch, "stderr": rebase.stderr.strip()[:500]},
                )
                await self._git.execute(workdir, ["rebase", "--abort"], check=False)
                await self._git.run(workdir, ["merge", "--no-edit", upstream])
                outcome.merged_remote = True

            if self._push_enabled:
                await self._git.run(workdir, ["push", self._remote, branch])
                outcome.pushed = True
            return outcome

        return await self._queue.enqueue(
            None, _sync, is_global=True, priority=Priority.HIGH, label=f"final-sync:{branch}"
        )

    async def head(self, workdir: Path) -> str:
        return (await self._git.run(workdir, ["rev-parse", "HEAD"])).strip()

    async def _has_remote(self, workdir: Path) -> bool:
        remotes = await self._git.run(workdir, ["remote"])
        return self._remote in remotes.split()

    async def _merge_now(self, workdir: Path, branch: str, message: str) -> MergeOutcome:
        before = await self.head(workdir)
        try:
            await self._git.run(workdir, ["merge", "--no-ff", "--no-edit", "-m", message, branch])
        except ConflictError as exc:
            return await self._resolve(workdir, branch, exc)

        after = await self.head(workdir)
        return MergeOutcome(
            branch=branch,
            target=str(workdir),
            merged=after != before,
            commit=after,
        )

    async def _resolve(self, workdir: Path, branch: str, conflict: ConflictError) -> MergeOutcome:
        try:
            unmerged = await self.unmerged_paths(workdir)
            if not unmerged:
                raise conflict

            resolutions: dict[str, str] = {}
            for path, stages in sorted(unmerged.items()):
                if _STAGE_THEIRS not in stages:
                    if _STAGE_OURS in stages:
                        await self._git.run(workdir, ["checkout", "--ours", "--", path])
                        await self._git.run(workdir, ["add", "--", path])
                        resolutions[path] = "ours"
                    else:
                        await self._git.run(workdir, ["rm", "--cached", "--quiet", "--", path])
                        resolutions[path] = "deleted"
                else:
                    await self._git.run(workdir, ["checkout", "--theirs", "--", path])
                    await self._git.run(workdir, ["add", "--", path])
                    resolutions[path] = "theirs"

            await self._git.run(workdir, ["commit", "--no-edit"])
        except Exception:
            await self._git.execute(workdir, ["merge", "--abort"], check=False)
            logger.error(
                "Conflict auto-resolution failed; merge aborted",
                extra={"branch": branch, "workdir": str(workdir)},
            )
            raise

        commit = await self.head(workdir)
        logger.warning(
            "Auto-resolved merge conflicts",
            extra={"branch": branch, "workdir": str(workdir), "resolutions": resolutions},
        )
        return MergeOutcome(
            branch=branch,
            target=str(workdir),
            merged=True,
            commit=commit,
            resolutions=resolutions,
        )

    async def unmerged_paths(self, workdir: Path) -> dict[str, set[int]]:
        """Map each unmerged path to the index stages present for it."""

        output = await self._git.run(workdir, ["ls-files", "-u", "-z"])
        stages: dict[str, set[int]] = {}
        for record in output.split("\0"):
            if not record:
                continue
            meta, _, path = record.partition("\t")
            parts = meta.split()
            if len(parts) != 3 or not path:
                raise GitCommandError(f"unexpected ls-files record: {record!r}", workdir=str(workdir))
            stages.setdefault(path, set()).add(int(parts[2]))
        return stages


def describe(outcome: MergeOutcome) -> dict[str, Any]:
    return {
        "branch": outcome.branch,
        "target": outcome.target,
        "merged": outcome.merged,
        "commit": outcome.commit,
        "conflicts": outcome.conflicts,
        "resolutions": dict(outcome.resolutions),
    }


__all__ = ["BranchMerger", "MergeOutcome", "SyncOutcome", "describe"]
