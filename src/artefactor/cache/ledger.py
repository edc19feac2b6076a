"""Checksum ledger for an archive directory.

The ledger is the single source of truth for "is this artifact already
captured and unmodified". It is persisted as checksums.txt inside the
archive directory:

    sha256  filename
    abc123...  alpine~~latest.docker.tar
    def456...  myrepo.git.home.tar

Entries are keyed in memory by normalized absolute path; only the file name
relative to the archive directory is written to disk, so the ledger file can
be moved together with the artifacts it describes.

Entries touched during the current process (update or keep) are marked as
kept; sweep() drops everything else. This is the mark-and-sweep cleanup used
after a save run.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path, PurePath

from artefactor.errors import MissingLedgerError, StaleOrMissingArtifactError

logger = logging.getLogger(__name__)

LEDGER_FILE_NAME = "checksums.txt"

_CHUNK_SIZE = 1024 * 1024
_HEX_RE = re.compile(r"[0-9a-fA-F]+")


@dataclass(frozen=True)
class LedgerEntry:
    """Single ledger entry.

    Attributes:
        sha256: Hex SHA256 of the file content.
        file_name: File name relative to the ledger directory.
    """

    sha256: str
    file_name: str


def compute_file_sha256(filepath: Path) -> str:
    """Compute SHA256 hash of a file.

    Args:
        filepath: Path to file.

    Returns:
        Hex-encoded SHA256 hash (64 chars).

    Raises:
        FileNotFoundError: If file doesn't exist.
    """
    hasher = hashlib.sha256()
    with Path(filepath).open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def parse_checksums_txt(content: str) -> dict[str, str]:
    """Parse checksums.txt content into filename -> sha256 mapping.

    Format: sha256  filename (two spaces between hash and name). Blank lines
    and # comments are ignored. Malformed lines are logged and skipped so one
    bad line never makes the whole ledger unreadable.

    Args:
        content: checksums.txt file content.

    Returns:
        Dict mapping filename to lowercase sha256 hash.
    """
    checksums: dict[str, str] = {}
    for lineno, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(maxsplit=1)
        if len(parts) != 2 or not _is_hex_digest(parts[0]):
            logger.warning(
                "Skipping invalid checksum entry",
                extra={"line_number": lineno, "line": raw_line},
            )
            continue
        sha256, filename = parts
        checksums[filename.strip()] = sha256.lower()
    return checksums


def generate_checksums_txt(checksums: dict[str, str]) -> str:
    """Generate canonical checksums.txt content, one entry per line."""
    return "".join(f"{sha256}  {name}\n" for name, sha256 in sorted(checksums.items()))


def _is_hex_digest(value: str) -> bool:
    return _HEX_RE.fullmatch(value) is not None


def _normalize(path: Path | str) -> Path:
    return Path(os.path.abspath(path))


class ChecksumLedger:
    """Directory-scoped checksum ledger.

    Construct with ChecksumLedger.open(). All mutations hold an internal lock
    and rewrite the ledger file atomically, so one instance may be shared by
    concurrent savers as long as a single process owns the directory.
    """

    def __init__(self, directory: Path, entries: dict[Path, LedgerEntry] | None = None) -> None:
        self.directory = _normalize(directory)
        self.ledger_path = self.directory / LEDGER_FILE_NAME
        self._entries: dict[Path, LedgerEntry] = dict(entries or {})
        self._kept: set[Path] = set()
        self._lock = threading.Lock()

    @classmethod
    def open(cls, directory: Path | str, *, error_if_missing: bool = False) -> ChecksumLedger:
        """Load the ledger for a directory.

        Args:
            directory: Archive directory the ledger is scoped to.
            error_if_missing: Raise instead of starting empty when no
                checksum file exists.

        Raises:
            MissingLedgerError: If error_if_missing and the file is absent.
            OSError: If the ledger file exists but cannot be read.
        """
        ledger = cls(Path(directory))
        if not ledger.ledger_path.exists():
            if error_if_missing:
                raise MissingLedgerError(ledger.ledger_path)
            logger.debug("No checksum file yet", extra={"ledger": str(ledger.ledger_path)})
            return ledger

        checksums = parse_checksums_txt(ledger.ledger_path.read_text(encoding="utf-8"))
        for name, sha256 in checksums.items():
            if PurePath(name).is_absolute() or ".." in PurePath(name).parts:
                logger.warning("Skipping checksum entry outside ledger dir", extra={"file": name})
                continue
            ledger._entries[ledger.directory / name] = LedgerEntry(sha256=sha256, file_name=name)
        logger.debug(
            "Loaded checksum file",
            extra={"ledger": str(ledger.ledger_path), "entries": len(ledger._entries)},
        )
        return ledger

    @property
    def entries(self) -> dict[Path, LedgerEntry]:
        """Snapshot of entries keyed by normalized absolute path."""
        with self._lock:
            return dict(self._entries)

    @property
    def kept(self) -> frozenset[Path]:
        """Paths retained during this process."""
        with self._lock:
            return frozenset(self._kept)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, os.PathLike)):
            return False
        return _normalize(path) in self._entries

    def files(self) -> list[Path]:
        """All recorded artifact paths."""
        with self._lock:
            return sorted(self._entries)

    def is_cached(self, path: Path | str) -> bool:
        """True iff the file exists on disk AND has a ledger entry."""
        key = _normalize(path)
        if not key.is_file():
            logger.debug("File doesn't exist", extra={"path": str(key)})
            return False
        hit = key in self._entries
        logger.debug("Cache hit" if hit else "Cache miss", extra={"path": str(key)})
        return hit

    def is_matching(self, path: Path | str, expected_sha256: str) -> bool:
        """True iff the file is cached and its recorded hash equals expected_sha256."""
        if not self.is_cached(path):
            return False
        return self._entries[_normalize(path)].sha256 == expected_sha256.lower()

    def verify(self, path: Path | str) -> bool:
        """True iff the file is cached and its current content matches the ledger."""
        if not self.is_cached(path):
            return False
        return self.is_matching(path, compute_file_sha256(_normalize(path)))

    def get_checksum(self, path: Path | str) -> str:
        """Return the recorded hash for a cached file.

        Raises:
            StaleOrMissingArtifactError: If the file is missing or unrecorded.
        """
        if not self.is_cached(path):
            raise StaleOrMissingArtifactError(_normalize(path), "no checksum recorded")
        return self._entries[_normalize(path)].sha256

    def update(self, path: Path | str) -> str:
        """Hash a file, record it, mark it kept and persist the ledger.

        Returns:
            The new SHA256 hex digest.

        Raises:
            StaleOrMissingArtifactError: If the file does not exist.
            ValueError: If the file is not inside the ledger directory.
        """
        key = _normalize(path)
        if not key.is_file():
            raise StaleOrMissingArtifactError(key)
        file_name = self._relative_name(key)
        sha256 = compute_file_sha256(key)
        with self._lock:
            self._entries[key] = LedgerEntry(sha256=sha256, file_name=file_name)
            self._kept.add(key)
            self._write()
        logger.info("Updated checksum", extra={"file": file_name, "sha256": sha256})
        return sha256

    def keep(self, path: Path | str) -> None:
        """Mark an existing entry as retained without rehashing."""
        key = _normalize(path)
        with self._lock:
            if key not in self._entries:
                raise StaleOrMissingArtifactError(key, "not recorded in ledger")
            self._kept.add(key)

    def sweep(self) -> list[Path]:
        """Drop every entry not kept during this process and persist.

        Returns:
            Paths that were dropped; the caller deletes them from disk.
        """
        with self._lock:
            dropped = sorted(set(self._entries) - self._kept)
            for key in dropped:
                del self._entries[key]
            self._write()
        if dropped:
            logger.info("Swept stale ledger entries", extra={"count": len(dropped)})
        return dropped

    def relocate(self, dest_dir: Path | str) -> ChecksumLedger:
        """Move the ledger file into dest_dir and return a ledger scoped there."""
        dest = _normalize(dest_dir)
        dest.mkdir(parents=True, exist_ok=True)
        with self._lock:
            shutil.move(str(self.ledger_path), str(dest / LEDGER_FILE_NAME))
        return ChecksumLedger.open(dest, error_if_missing=True)

    def _relative_name(self, key: Path) -> str:
        try:
            return key.relative_to(self.directory).as_posix()
        except ValueError:
            msg = f"{key} is not inside ledger directory {self.directory}"
            raise ValueError(msg) from None

    def _write(self) -> None:
        checksums = {entry.file_name: entry.sha256 for entry in self._entries.values()}
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = self.ledger_path.with_suffix(".tmp")
        tmp_path.write_text(generate_checksums_txt(checksums), encoding="utf-8")
        tmp_path.replace(self.ledger_path)
