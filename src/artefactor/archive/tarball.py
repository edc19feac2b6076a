"""Build and extract tree-shaped artifacts as uncompressed tar archives.

Every entry is written under one archive-root prefix so extraction recreates
a single top-level folder. Symlinks are stored as link records with their
target verbatim; only regular files carry payload.
"""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from artefactor.errors import ArchiveError

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"


def archive_prefix(first: Path) -> str:
    """Compute the archive-root prefix from the first listed file.

    A directory contributes its own base name; anything else contributes the
    base name of its parent directory.
    """
    first = Path(os.path.abspath(first))
    if first.is_dir() and not first.is_symlink():
        return first.name
    return first.parent.name


def build_archive(
    archive_path: Path,
    files: Sequence[Path | str],
    *,
    base_dir: Path | None = None,
    prefix: str | None = None,
) -> Path:
    """Pack files into a tar archive.

    Args:
        archive_path: Destination archive file.
        files: Files, directories and symlinks to add, in order. Relative
            paths are resolved against base_dir.
        base_dir: Directory the archive names are made relative to
            (default: current working directory).
        prefix: Archive-root prefix; computed from the first file if omitted.

    Returns:
        archive_path.

    Raises:
        ValueError: If files is empty.
        ArchiveError: If a file cannot be added.
    """
    if not files:
        msg = "must supply at least one path to archive"
        raise ValueError(msg)

    base = Path(os.path.abspath(base_dir or Path.cwd()))
    if prefix is None:
        prefix = archive_prefix(_absolute(files[0], base))
    logger.debug("Building archive", extra={"archive": str(archive_path), "prefix": prefix})

    archive_path = Path(archive_path)
    partial = archive_path.with_name(archive_path.name + PARTIAL_SUFFIX)
    try:
        with tarfile.open(partial, "w", format=tarfile.PAX_FORMAT) as tar:
            for item in files:
                _add_file(tar, _absolute(item, base), base, prefix)
        partial.replace(archive_path)
    except BaseException:
        partial.unlink(missing_ok=True)
        raise
    return archive_path


def _absolute(path: Path | str, base: Path) -> Path:
    path = Path(path)
    if not path.is_absolute():
        path = base / path
    return Path(os.path.normpath(path))


def _add_file(tar: tarfile.TarFile, path: Path, base: Path, prefix: str) -> None:
    try:
        relative = path.relative_to(base)
    except ValueError:
        relative = Path(path.name)
    arcname = str(PurePosixPath(prefix, *relative.parts)) if prefix else relative.as_posix()

    try:
        info = tar.gettarinfo(str(path), arcname=arcname)
    except OSError as e:
        msg = f"problem trying to add {path} to archive: {e}"
        raise ArchiveError(msg) from e

    if info.issym():
        info.linkname = os.readlink(path)
        tar.addfile(info)
    elif info.isreg():
        with path.open("rb") as f:
            tar.addfile(info, f)
    elif info.isdir():
        tar.addfile(info)
    else:
        logger.debug("Skipping irregular file", extra={"path": str(path)})


def extract_archive(archive_path: Path, dest_dir: Path) -> None:
    """Extract a tar archive into dest_dir.

    Directories are created idempotently, regular files keep their stored
    mode, and symlinks are created last so their parents (and usually their
    targets) already exist.

    Raises:
        ArchiveError: If a member would land outside dest_dir.
    """
    dest_dir = Path(os.path.abspath(dest_dir))
    dest_dir.mkdir(parents=True, exist_ok=True)
    deferred_links: list[tuple[Path, str]] = []

    logger.debug("Opening archive", extra={"archive": str(archive_path)})
    with tarfile.open(archive_path, "r:") as tar:
        for member in tar:
            target = _member_target(dest_dir, member.name)
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
            elif member.issym():
                deferred_links.append((target, member.linkname))
            elif member.isreg():
                target.parent.mkdir(parents=True, exist_ok=True)
                source = tar.extractfile(member)
                if source is None:
                    msg = f"cannot read {member.name} from {archive_path}"
                    raise ArchiveError(msg)
                if target.is_symlink():
                    target.unlink()
                with source, target.open("wb") as out:
                    shutil.copyfileobj(source, out)
                target.chmod(member.mode & 0o7777)
            else:
                logger.debug("Skipping unsupported member", extra={"member": member.name})

    for target, link_target in deferred_links:
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_symlink() or target.is_file():
            target.unlink()
        os.symlink(link_target, target)


def _member_target(dest_dir: Path, name: str) -> Path:
    member_path = PurePosixPath(name)
    if member_path.is_absolute() or ".." in member_path.parts:
        msg = f"archive member {name!r} escapes destination {dest_dir}"
        raise ArchiveError(msg)
    return dest_dir.joinpath(*member_path.parts)
