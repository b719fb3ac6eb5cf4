"""Git repository sources."""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

import git

from flux_scheduler.exceptions import SourceUnavailable

from .artifact import SourceArtifact
from .cache import get_git_cache

_LOGGER = logging.getLogger(__name__)


@dataclass
class GitRef:
    """A reference within a git repository.

    Priority when several are set: commit > tag > branch.
    """

    branch: str | None = None
    tag: str | None = None
    commit: str | None = None

    @property
    def ref_str(self) -> str:
        """Return the reference as a cache key."""
        if self.commit:
            return f"commit:{self.commit}"
        if self.tag:
            return f"tag:{self.tag}"
        if self.branch:
            return f"branch:{self.branch}"
        return ""


def repo_revision(repo: git.Repo) -> str:
    """Return the flux style revision of the checked out commit."""
    sha = repo.head.commit.hexsha
    if repo.head.is_detached:
        return f"sha1:{sha}"
    return f"{repo.active_branch.name}@sha1:{sha}"


def local_revision(path: Path) -> str | None:
    """Return the revision of a clean git working tree containing path.

    Returns None if the path is not in a git repository, the repository has no
    commits or the working tree has local changes.
    """
    try:
        repo = git.Repo(str(path), search_parent_directories=True)
    except (git.InvalidGitRepositoryError, git.NoSuchPathError):
        return None
    try:
        if repo.is_dirty(untracked_files=True):
            _LOGGER.debug("Working tree of %s has local changes", path)
            return None
        return repo_revision(repo)
    except (ValueError, git.GitError) as err:
        _LOGGER.debug("Unable to determine revision of %s: %s", path, err)
        return None


def _fetch_git(url: str, ref: GitRef) -> SourceArtifact:
    repo_path = get_git_cache().get_repo_path(url, ref.ref_str)
    if (repo_path / ".git").exists():
        _LOGGER.info("Updating existing repository at %s", repo_path)
        repo = git.Repo(str(repo_path))
        repo.git.fetch("--tags", "--force")
    else:
        _LOGGER.info("Cloning repository %s to %s", url, repo_path)
        repo = git.Repo.clone_from(url, str(repo_path))

    if ref.commit:
        _LOGGER.debug("Checking out commit %s", ref.commit)
        repo.git.checkout(ref.commit)
    elif ref.tag:
        _LOGGER.debug("Checking out tag %s", ref.tag)
        repo.git.checkout(ref.tag)
    else:
        # A fresh clone checks out the default branch of the remote
        branch = ref.branch or repo.active_branch.name
        _LOGGER.debug("Checking out branch %s", branch)
        repo.git.checkout("-B", branch, f"origin/{branch}")
    return SourceArtifact(
        local_path=str(repo_path), revision=repo_revision(repo), url=url
    )


async def fetch_git(url: str, ref: GitRef) -> SourceArtifact:
    """Fetch a Git repository into the cache and check out the ref.

    Raises:
        SourceUnavailable: If the repository can't be cloned, fetched or the
            ref does not exist.
    """
    try:
        return await asyncio.to_thread(_fetch_git, url, ref)
    except git.GitCommandError as err:
        raise SourceUnavailable(f"Git operation failed for {url}: {err}") from err
    except (git.GitError, ValueError, IndexError) as err:
        raise SourceUnavailable(f"Failed to fetch repository {url}: {err}") from err
