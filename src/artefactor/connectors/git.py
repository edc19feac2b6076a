"""Version control adapter backed by GitPython."""

from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath

from git import InvalidGitRepositoryError, NoSuchPathError, Repo

from artefactor.errors import ArtefactorError

logger = logging.getLogger(__name__)


def _open(path: Path | str) -> Repo:
    try:
        return Repo(path)
    except (InvalidGitRepositoryError, NoSuchPathError) as e:
        msg = f"{path} is not a git repository: {e}"
        raise ArtefactorError(msg) from e


class GitRepository:
    """Reads the state of local git working trees.

    Paths returned by head_tree_files and metadata_files are relative to the
    working tree root, so they can be handed straight to build_archive with
    the root as base_dir.
    """

    def is_clean(self, path: Path | str) -> bool:
        """True when there are no staged, unstaged or untracked changes."""
        repo = _open(path)
        dirty = repo.is_dirty(index=True, working_tree=True, untracked_files=True)
        if dirty:
            logger.debug("Working tree is dirty", extra={"repo": str(path)})
        return not dirty

    def head_tree_files(self, path: Path | str) -> list[str]:
        """Files recorded in the HEAD commit tree."""
        repo = _open(path)
        try:
            tree = repo.head.commit.tree
        except ValueError as e:
            msg = f"git repo {path} has no commits: {e}"
            raise ArtefactorError(msg) from e
        return [item.path for item in tree.traverse() if item.type == "blob"]

    def metadata_files(self, path: Path | str) -> list[str]:
        """The .git directory and everything below it, directories first."""
        root = Path(path)
        git_dir = root / ".git"
        if not git_dir.is_dir():
            msg = f"{git_dir} is not a directory"
            raise ArtefactorError(msg)

        files = [".git"]
        for dirpath, dirnames, filenames in os.walk(git_dir):
            dirnames.sort()
            rel_dir = PurePosixPath(Path(dirpath).relative_to(root).as_posix())
            files.extend(str(rel_dir / name) for name in dirnames)
            files.extend(str(rel_dir / name) for name in sorted(filenames))
        return files

    def ignored_paths(self, path: Path | str) -> list[str]:
        """Untracked paths matched by ignore rules; whole directories collapse to one entry."""
        repo = _open(path)
        output = repo.git.ls_files(
            "-z", "--others", "--ignored", "--exclude-standard", "--directory"
        )
        return [entry.rstrip("/") for entry in output.split("\0") if entry]

    def repo_name(self, path: Path | str) -> str:
        """Base name of the origin remote URL, or the working tree name."""
        repo = _open(path)
        try:
            url = repo.remotes.origin.url
        except (AttributeError, IndexError):
            return Path(os.path.abspath(path)).name
        base = url.rstrip("/").replace(":", "/").rsplit("/", 1)[-1]
        return base.removesuffix(".git") or Path(os.path.abspath(path)).name
