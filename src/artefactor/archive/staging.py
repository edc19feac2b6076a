"""Refresh-safe restore of an archived tree.

Restoring over an existing checkout must never leave it half overwritten,
and must never lose artifacts that earlier save/restore cycles left inside
it. The swap runs in three phases:

1. stage:    extract into <dest_parent>/<tree>_artefactor_tmp
2. relocate: move each preserved subtree from the live tree into the
             staged tree
3. swap:     remove the live tree, rename the staged tree into place, and
             only then delete the staging directory

If the process dies part way, the worst case is an orphaned staging
directory next to the destination. It holds the only copy of the relocated
subtrees between phases 2 and 3, so it is inspected (never blindly deleted)
when the live tree is missing; otherwise it is safe to delete and retry.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path, PurePath
from typing import TYPE_CHECKING

from artefactor.archive.tarball import extract_archive
from artefactor.errors import ArchiveError

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

STAGING_SUFFIX = "_artefactor_tmp"


def staging_dir_for(dest_parent: Path, tree_name: str) -> Path:
    """Path of the staging directory used when refreshing tree_name."""
    return Path(dest_parent) / f"{tree_name}{STAGING_SUFFIX}"


def is_tree_subpath(rel: str | PurePath) -> bool:
    """True when rel names a path strictly inside a tree (relative, no '..')."""
    path = PurePath(os.path.normpath(str(rel)))
    return bool(path.parts) and not path.anchor and ".." not in path.parts


def _outermost(paths: Sequence[str | PurePath]) -> list[PurePath]:
    """Drop paths nested inside another preserved path."""
    kept: list[PurePath] = []
    normalized = {PurePath(os.path.normpath(str(rel))) for rel in paths}
    for path in sorted(normalized, key=lambda p: (len(p.parts), p)):
        if not any(path.parts[: len(outer.parts)] == outer.parts for outer in kept):
            kept.append(path)
    return kept


def restore_tree(
    archive_path: Path,
    dest_parent: Path,
    tree_name: str,
    *,
    preserve: Sequence[str | PurePath] = (),
) -> Path:
    """Extract an archived tree to dest_parent/tree_name.

    Args:
        archive_path: Tar archive whose root folder is tree_name.
        dest_parent: Directory that holds (or will hold) the tree.
        tree_name: Name of the top-level folder inside the archive.
        preserve: Paths relative to the tree that are carried over from the
            live tree into the refreshed one.

    Returns:
        Path of the restored tree.

    Raises:
        ArchiveError: If a preserve entry is not a path inside the tree, a
            crash left a staging directory but no live tree, or the staged
            archive does not contain tree_name.
    """
    for rel in preserve:
        if not is_tree_subpath(rel):
            msg = f"preserved path {str(rel)!r} must be relative and inside {tree_name!r}"
            raise ArchiveError(msg)

    dest_parent = Path(os.path.abspath(dest_parent))
    live = dest_parent / tree_name
    staging = staging_dir_for(dest_parent, tree_name)

    if not live.exists():
        if staging.exists():
            msg = (
                f"found staging directory {staging} without {live}; a previous restore "
                "was interrupted, inspect and move it back before retrying"
            )
            raise ArchiveError(msg)
        logger.info("Extracting fresh tree", extra={"tree": str(live)})
        extract_archive(archive_path, dest_parent)
        return live

    if staging.exists():
        logger.warning("Removing orphaned staging directory", extra={"staging": str(staging)})
        shutil.rmtree(staging)

    # stage
    staging.mkdir(parents=True)
    logger.info("Extracting to staging", extra={"tree": str(live), "staging": str(staging)})
    extract_archive(archive_path, staging)
    staged = staging / tree_name
    if not staged.is_dir():
        msg = f"archive {archive_path} does not contain a top-level {tree_name!r} folder"
        raise ArchiveError(msg)

    # relocate
    for rel in _outermost(preserve):
        _relocate(live / rel, staged / rel)

    # swap
    logger.info("Replacing live tree", extra={"tree": str(live)})
    shutil.rmtree(live)
    staged.rename(live)
    shutil.rmtree(staging)
    return live


def _relocate(source: Path, target: Path) -> None:
    if not source.exists():
        return
    logger.info("Keeping local artifacts", extra={"source": str(source), "target": str(target)})
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    elif target.exists() or target.is_symlink():
        target.unlink()
    target.parent.mkdir(parents=True, exist_ok=True)
    source.rename(target)
