"""Per-worker worktrees sharing the main repository's object store."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from .errors import GitCommandError
from .queue import GitOperationQueue, Priority
from .safety import GitResult, GitSafety

logger = logging.getLogger(__name__)

_STALE_REGISTRATION_MARKERS = (
    "already registered",
    "already checked out",
    "already used by worktree",
    "is a missing but locked worktree",
)


class WorktreeManager:
    """Create and maintain isolated checkouts for workers and cluster leads."""

    def __init__(
        self,
        git: GitSafety,
        queue: GitOperationQueue,
        *,
        repo_path: Path,
        workspace_dir: Path,
    ) -> None:
        self._git = git
        self._queue = queue
        self._repo_path = Path(repo_path)
        self._workspace_dir = Path(workspace_dir)
        self._inflight: dict[str, asyncio.Future[Path]] = {}
        self._created = 0

    @property
    def repo_path(self) -> Path:
        return self._repo_path

    @property
    def created_count(self) -> int:
        """Number of worktrees this manager actually registered."""

        return self._created

    def path_for(self, name: str) -> Path:
        return (self._workspace_dir / name.replace("/", "-")).absolute()

    async def provision(self, name: str, base_branch: str) -> Path:
        """Return the worktree for branch ``name``, creating it from ``base_branch`` if needed."""

        path = self.path_for(name)
        if path.exists():
            return path

        pending = self._inflight.get(name)
        if pending is None:
            pending = asyncio.ensure_future(
                self._queue.enqueue(
                    None,
                    lambda: self._create(name, base_branch, path),
                    is_global=True,
                    priority=Priority.NORMAL,
                    label=f"worktree-add:{name}",
                )
            )
            self._inflight[name] = pending
            pending.add_done_callback(lambda _: self._inflight.pop(name, None))
        return await asyncio.shield(pending)

    async def _create(self, name: str, base_branch: str, path: Path) -> Path:
        if path.exists():
            return path

        repo = self._repo_path
        await self._git.run(repo, ["worktree", "prune"])

        branch = await self._git.execute(repo, ["branch", name, base_branch], check=False)
        if not branch.ok and "already exists" not in branch.stderr.lower():
            raise _command_error(branch, repo)

        path.parent.mkdir(parents=True, exist_ok=True)
        added = await self._git.execute(repo, ["worktree", "add", str(path), name], check=False)
        if not added.ok:
            message = added.stderr.lower()
            if not any(marker in message for marker in _STALE_REGISTRATION_MARKERS):
                raise _command_error(added, repo)
            logger.warning(
                "Worktree registration inconsistent; forcing re-registration",
                extra={"worktree": str(path), "branch": name},
            )
            await self._git.run(repo, ["worktree", "add", "--force", str(path), name])

        self._created += 1
        logger.info(
            "Provisioned worktree",
            extra={"worktree": str(path), "branch": name, "base_branch": base_branch},
        )
        return path

    async def reset_to(self, path: Path, ref: str) -> None:
        """Hard-reset ``path`` to ``ref`` and drop untracked files."""

        async def _reset() -> None:
            await self._git.run(path, ["reset", "--hard", ref])
            await self._git.run(path, ["clean", "-fd"])

        await self._queue.enqueue(path, _reset, label=f"reset:{path.name}")

    async def commit_pending(self, path: Path, message: str) -> bool:
        """Commit any uncommitted work in ``path``; return whether a commit was made."""

        async def _commit() -> bool:
            status = await self._git.run(path, ["status", "--porcelain"])
            if not status.strip():
                return False
            await self._git.run(path, ["add", "-A"])
            await self._git.run(path, ["commit", "-m", message])
            return True

        return await self._queue.enqueue(path, _commit, label=f"commit:{path.name}")

    async def remove(self, name: str) -> None:
        path = self.path_for(name)

        async def _remove() -> None:
            if path.exists():
                await self._git.run(self._repo_path, ["worktree", "remove", "--force", str(path)])
            await self._git.run(self._repo_path, ["worktree", "prune"])

        await self._queue.enqueue(None, _remove, is_global=True, label=f"worktree-remove:{name}")


def _command_error(result: GitResult, repo: Path) -> GitCommandError:
    return GitCommandError(
        f"{' '.join(result.args)} failed: {result.stderr.strip()}",
        args=result.args[1:],
        workdir=str(repo),
        returncode=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
    )


__all__ = ["WorktreeManager"]
