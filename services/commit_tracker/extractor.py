"""
Commit event extraction from the local Git repository.

Reads the just-made commit with GitPython. Fields that cannot be read are
replaced by sentinels so the hook never aborts on partial information; only
an unreadable repository or commit is an error.
"""

import logging
import os
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from git import Repo, GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from git.exc import BadName, BadObject

from shared.models import CommitEvent, UNKNOWN, ensure_utc, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExtractionError(Exception):
    """The repository or the commit itself could not be read."""


def _read(field: str, reader: Callable[[], T], default: T) -> T:
    try:
        return reader()
    except Exception as e:
        logger.info(f"Could not read {field}, using sentinel: {e}")
        return default


class CommitEventExtractor:
    """Builds CommitEvents from Git commits."""

    def __init__(self, repo_path: Optional[str] = None, repo: Optional[Repo] = None):
        self.repo_path = repo_path or os.getcwd()
        self._repo = repo

    @property
    def repo(self) -> Repo:
        if self._repo is None:
            try:
                self._repo = Repo(self.repo_path, search_parent_directories=True)
            except (InvalidGitRepositoryError, NoSuchPathError) as e:
                raise ExtractionError(f"Invalid Git repository: {self.repo_path}") from e
        return self._repo

    def branch_name(self) -> str:
        repo = self.repo
        if repo.head.is_detached:
            return UNKNOWN
        return repo.active_branch.name

    def repository_name(self) -> str:
        working_tree = self.repo.working_tree_dir
        return Path(working_tree).name if working_tree else UNKNOWN

    def extract(self, commit_ref: str = "HEAD") -> CommitEvent:
        """Read one commit; the phase is left unset."""
        try:
            commit = self.repo.commit(commit_ref)
            commit_hash = commit.hexsha
        except ExtractionError:
            raise
        except (BadName, BadObject, GitCommandError, ValueError) as e:
            raise ExtractionError(f"Cannot resolve commit {commit_ref}: {e}") from e

        stats = _read("diff statistics", lambda: commit.stats, None)
        totals: dict = _read("diff totals", lambda: dict(stats.total), {}) if stats else {}
        paths: list = _read("changed paths", lambda: [str(p) for p in stats.files], []) if stats else []

        message = _read("message", lambda: _as_text(commit.message), "")

        return CommitEvent(
            commit_hash=commit_hash,
            branch=_read("branch", self.branch_name, UNKNOWN),
            message=message,
            files_changed=int(totals.get("files", len(paths))),
            lines_added=int(totals.get("insertions", 0)),
            lines_removed=int(totals.get("deletions", 0)),
            changed_paths=paths,
            author=_read("author", lambda: commit.author.name, UNKNOWN),
            repository=_read("repository", self.repository_name, UNKNOWN),
            occurred_at=_read("author time", lambda: ensure_utc(commit.authored_datetime), utc_now()),
        )


def _as_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)
