"""
Restore orchestration: rebuild the home repository and put every archived
artifact back where save found it.

Nothing is changed until the whole archive set has been accounted for:
every ledger entry must be in the source dir or, when refreshing an existing
checkout, already at the destination with a matching checksum.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from artefactor.archive.staging import is_tree_subpath, restore_tree
from artefactor.cache.codec import BINMARK_EXT, GIT_HOME_EXT
from artefactor.cache.ledger import ChecksumLedger, compute_file_sha256
from artefactor.errors import (
    AmbiguousHomeRepoError,
    ArtefactorError,
    ChecksumMismatchError,
    DirtyDestinationError,
    IncompleteArchiveSetError,
    StaleOrMissingArtifactError,
)
from artefactor.sync.save import EXECUTABLE_MODE, SAVE_DIR_META

if TYPE_CHECKING:
    from artefactor.connectors import VersionControl

logger = logging.getLogger(__name__)


@dataclass
class RestoreManifest:
    """Where each ledger entry will come from.

    Attributes:
        present: Source paths that will be moved.
        recoverable: Destination paths already in place and verified.
        missing: Source paths found nowhere.
    """

    present: list[Path] = field(default_factory=list)
    recoverable: list[Path] = field(default_factory=list)
    missing: list[Path] = field(default_factory=list)


@dataclass
class RestoreReport:
    """Outcome of a restore."""

    repo_path: Path
    archive_dir: Path
    refreshed: bool
    moved: list[Path] = field(default_factory=list)


def find_home_repo(source_dir: Path) -> Path | None:
    """
    Locate the home repository archive in source_dir.

    Raises:
        AmbiguousHomeRepoError: If more than one is present.
    """
    homes = sorted(Path(source_dir).glob(f"*{GIT_HOME_EXT}"))
    if len(homes) > 1:
        raise AmbiguousHomeRepoError(
            f"Multiple home git repos found in {source_dir}", [home.name for home in homes]
        )
    return homes[0] if homes else None


def read_saved_dir(source_dir: Path) -> str:
    """
    Archive dir recorded by save, relative to the home repository.

    Raises:
        StaleOrMissingArtifactError: If the meta file is absent, or names a
            directory that is not strictly inside the repository.
    """
    meta = Path(source_dir) / SAVE_DIR_META
    if not meta.is_file():
        raise StaleOrMissingArtifactError(meta, "archive directory meta data is missing")
    saved_dir = meta.read_text(encoding="utf-8").strip()
    if not is_tree_subpath(saved_dir):
        raise StaleOrMissingArtifactError(
            meta, f"archive directory {saved_dir!r} is not a subdirectory of the repository"
        )
    return os.path.normpath(saved_dir)


def plan_restore(ledger: ChecksumLedger, dest_dir: Path, *, refresh: bool) -> RestoreManifest:
    """Partition ledger entries into present, recoverable and missing."""
    manifest = RestoreManifest()
    for path, entry in sorted(ledger.entries.items()):
        if path.is_file():
            manifest.present.append(path)
            continue
        if refresh:
            existing = dest_dir / entry.file_name
            if existing.is_file():
                logger.info("Checking existing file", extra={"path": str(existing)})
                actual = compute_file_sha256(existing)
                if actual == entry.sha256:
                    manifest.recoverable.append(existing)
                    continue
                logger.warning(
                    "Existing file does not match checksum",
                    extra={"path": str(existing), "expected": entry.sha256, "actual": actual},
                )
        manifest.missing.append(path)
    return manifest


def _move_and_verify(source: Path, dest: Path, expected: str) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Moving file", extra={"source": str(source), "target": str(dest)})
    shutil.move(str(source), str(dest))
    actual = compute_file_sha256(dest)
    if actual != expected:
        raise ChecksumMismatchError(dest, expected, actual)


def _apply_binmarks(ledger: ChecksumLedger, dest_dir: Path) -> None:
    for entry in ledger.entries.values():
        if not entry.file_name.endswith(BINMARK_EXT):
            continue
        target = dest_dir / entry.file_name[: -len(BINMARK_EXT)]
        if target.is_file():
            target.chmod(EXECUTABLE_MODE)


def restore(
    source_dir: Path | str,
    dest_dir: Path | str,
    *,
    vcs: VersionControl,
) -> RestoreReport | None:
    """
    Restore the home repository under dest_dir and move artifacts into it.

    Args:
        source_dir: Directory holding the transported archive set.
        dest_dir: Directory the home repository is restored under.
        vcs: Version control adapter used for the destination clean check.

    Returns:
        Report of the restore, or None when there is no home repository.

    Raises:
        IncompleteArchiveSetError: If ledger entries are missing (nothing changed).
        DirtyDestinationError: If the existing checkout is dirty (nothing changed).
        ChecksumMismatchError: If a moved file does not match its checksum.
        AmbiguousHomeRepoError: If the source holds several home repositories.
    """
    source_dir = Path(os.path.abspath(source_dir))
    dest_dir = Path(os.path.abspath(dest_dir))
    if not source_dir.is_dir():
        msg = f"missing src directory (not found) {source_dir}"
        raise ArtefactorError(msg)

    home = find_home_repo(source_dir)
    if home is None:
        logger.warning("No home git repo archive found", extra={"source": str(source_dir)})
        return None

    saved_dir = read_saved_dir(source_dir)
    repo_name = home.name[: -len(GIT_HOME_EXT)]
    repo_path = dest_dir / repo_name
    archive_dir = repo_path / saved_dir
    refresh = repo_path.exists()
    logger.info(
        "Restoring home repo",
        extra={"archive": str(home), "repo": str(repo_path), "refresh": refresh},
    )

    ledger = ChecksumLedger.open(source_dir, error_if_missing=True)
    manifest = plan_restore(ledger, archive_dir, refresh=refresh)
    if manifest.missing:
        raise IncompleteArchiveSetError(manifest.missing, source_dir, archive_dir)

    preserve = [saved_dir]
    if refresh:
        if not vcs.is_clean(repo_path):
            raise DirtyDestinationError(repo_path)
        # ignored output (build dirs, caches) is not in the archive
        preserve.extend(vcs.ignored_paths(repo_path))

    restore_tree(home, dest_dir, repo_name, preserve=preserve)
    archive_dir.mkdir(parents=True, exist_ok=True)

    report = RestoreReport(repo_path=repo_path, archive_dir=archive_dir, refreshed=refresh)
    entries = ledger.entries
    for source in manifest.present:
        entry = entries[source]
        target = archive_dir / entry.file_name
        _move_and_verify(source, target, entry.sha256)
        report.moved.append(target)

    _apply_binmarks(ledger, archive_dir)
    ledger.relocate(archive_dir)
    logger.info("All artifacts restored and checked", extra={"archive_dir": str(archive_dir)})
    return report
