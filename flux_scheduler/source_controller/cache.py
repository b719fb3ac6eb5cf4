"""Cache management for git repositories."""

import hashlib
import tempfile
import logging
from pathlib import Path
from shutil import rmtree

from slugify import slugify
from urllib.parse import urlparse

from flux_scheduler.exceptions import SourceUnavailable

_LOGGER = logging.getLogger(__name__)

CACHE_DIR_NAME = "flux-scheduler-cache"


class GitCache:
    """Cache manager for git repositories.

    Clones are kept for the lifetime of the process, one directory per
    repository url and ref, so that each poll only needs a fetch.
    """

    def __init__(self, cache_dir: Path | None = None) -> None:
        """Initialize the cache manager."""
        self._cache_dir = cache_dir or Path(tempfile.gettempdir()) / CACHE_DIR_NAME
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        self._repos: dict[str, Path] = {}

    @staticmethod
    def _slugify_url(url: str) -> str:
        """Return a readable directory name for the repository in the url."""
        parsed = urlparse(url)
        path = parsed.path
        # Handle SSH URLs (git@github.com:user/repo.git)
        if parsed.scheme == "" and "@" in url and ":" in url:
            path = url.split(":", 1)[1]
        if path.endswith(".git"):
            path = path[:-4]
        slug = path.rstrip("/").split("/")[-1] or parsed.netloc or "repo"
        return slugify(slug, max_length=50, lowercase=True, separator="-")

    def get_repo_path(self, url: str, ref: str | None = None) -> Path:
        """Get the local path for a repository clone.

        e.g. /tmp/flux-scheduler-cache/my-repo/ab1234567890abcdef
        """
        cache_key = hashlib.sha256()
        cache_key.update(url.encode("utf-8"))
        if ref:
            cache_key.update(ref.encode("utf-8"))
        cache_path = (
            self._cache_dir / self._slugify_url(url) / cache_key.hexdigest()[:16]
        )
        try:
            cache_path.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise SourceUnavailable(
                f"Failed to create cache directory for {url}: {err}"
            ) from err
        self._repos[url] = cache_path
        return cache_path

    def cleanup(self) -> None:
        """Clean up all cached repositories."""
        for path in self._repos.values():
            if path.exists():
                _LOGGER.info("Cleaning up cached repository: %s", path)
                rmtree(path, ignore_errors=True)
        self._repos.clear()


_git_cache: GitCache | None = None


def get_git_cache() -> GitCache:
    """Get the process wide GitCache instance."""
    global _git_cache
    if _git_cache is None:
        _git_cache = GitCache()
    return _git_cache
