"""Delete files in an archive directory that the ledger no longer records."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from artefactor.cache.ledger import ChecksumLedger

logger = logging.getLogger(__name__)


def clean(archive_dir: Path | str) -> list[Path]:
    """
    Remove every file under archive_dir that has no ledger entry.

    The checksum file itself is never removed. Directories are left alone.

    Returns:
        Paths removed, sorted.
    """
    archive_dir = Path(os.path.abspath(archive_dir))
    if not archive_dir.is_dir():
        logger.info("No files to clean", extra={"archive_dir": str(archive_dir)})
        return []

    ledger = ChecksumLedger.open(archive_dir)
    removed = []
    for path in sorted(archive_dir.rglob("*")):
        if path == ledger.ledger_path or path in ledger:
            continue
        if path.is_dir() and not path.is_symlink():
            continue
        logger.info("Removing file", extra={"path": str(path)})
        path.unlink()
        removed.append(path)
    return removed
