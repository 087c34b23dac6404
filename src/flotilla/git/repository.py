"""Preparing the main checkout before a run."""

from __future__ import annotations

import logging
from pathlib import Path

from .errors import GitError
from .queue import GitOperationQueue, Priority
from .safety import GitSafety

logger = logging.getLogger(__name__)


class RepositoryError(GitError):
    """Raised when the main checkout cannot be prepared."""


async def ensure_repository(
    git: GitSafety,
    queue: GitOperationQueue,
    *,
    repo_path: Path,
    repository_url: str | None,
    branch: str,
    remote: str = "origin",
) -> Path:
    """Clone ``repository_url`` into ``repo_path`` or refresh an existing checkout.

    The main checkout ends up on ``branch``, which serves as the integration
    branch for the run.
    """

    repo_path = Path(repo_path).absolute()

    async def _prepare() -> Path:
        if (repo_path / ".git").exists():
            remotes = (await git.run(repo_path, ["remote"])).split()
            if remote in remotes:
                fetched = await git.execute(repo_path, ["fetch", remote], check=False)
                if not fetched.ok:
                    logger.warning(
                        "Fetch failed while preparing repository",
                        extra={"repo_path": str(repo_path), "stderr": fetched.stderr.strip()[:500]},
                    )
            checkout = await git.execute(repo_path, ["checkout", branch], check=False)
            if not checkout.ok:
                await git.run(repo_path, ["checkout", "-b", branch])
            if remote in remotes:
                await git.execute(repo_path, ["pull", "--ff-only", remote, branch], check=False)
            logger.info(
                "Using existing repository",
                extra={"repo_path": str(repo_path), "branch": branch},
            )
            return repo_path

        if not repository_url:
            raise RepositoryError(
                f"{repo_path} is not a git checkout and no repository URL is configured",
                workdir=str(repo_path),
            )

        repo_path.parent.mkdir(parents=True, exist_ok=True)
        await git.run(
            repo_path.parent,
            ["clone", "--branch", branch, repository_url, str(repo_path)],
        )
        logger.info(
            "Cloned repository",
            extra={"repo_path": str(repo_path), "branch": branch, "url": repository_url},
        )
        return repo_path

    return await queue.enqueue(
        None, _prepare, is_global=True, priority=Priority.HIGH, label="prepare-repository"
    )


__all__ = ["RepositoryError", "ensure_repository"]
