"""Error taxonomy for artefactor.

Every error raised by the cache, archive and sync layers derives from
ArtefactorError and carries the path or reference it concerns, so callers
(and the CLI) can report it without re-deriving context.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path


class ArtefactorError(Exception):
    """Base exception for artefactor operations."""


class MissingLedgerError(ArtefactorError):
    """Raised when a strict ledger open finds no checksum file."""

    def __init__(self, ledger_path: Path) -> None:
        super().__init__(f"No checksum file found at {ledger_path}")
        self.ledger_path = ledger_path


class StaleOrMissingArtifactError(ArtefactorError):
    """Raised when an artifact file is expected on disk but is absent."""

    def __init__(self, path: Path, reason: str = "file does not exist") -> None:
        super().__init__(f"Artifact {path}: {reason}")
        self.path = path


class ChecksumMismatchError(ArtefactorError):
    """Raised when a computed hash disagrees with the recorded or declared one."""

    def __init__(self, path: Path | str, expected: str, actual: str) -> None:
        super().__init__(f"Checksum mismatch for {path}: expected {expected}, got {actual}")
        self.path = path
        self.expected = expected
        self.actual = actual


class IncompleteArchiveSetError(ArtefactorError):
    """Raised by restore pre-flight when ledger files cannot be found anywhere."""

    def __init__(self, missing: Sequence[Path], source: Path, destination: Path) -> None:
        listing = "\n".join(f"  - {path}" for path in missing)
        super().__init__(
            f"Files in checksum file not present in source {source} "
            f"or destination {destination}:\n{listing}"
        )
        self.missing = list(missing)
        self.source = source
        self.destination = destination


class DirtyWorkingTreeError(ArtefactorError):
    """Raised when a repository has uncommitted or untracked changes."""

    def __init__(self, repo_path: Path | str, message: str) -> None:
        super().__init__(message)
        self.repo_path = repo_path


class DirtySourceError(DirtyWorkingTreeError):
    """Raised by save when a repository to archive is not clean."""

    def __init__(self, repo_path: Path | str) -> None:
        super().__init__(repo_path, f"Git repo {repo_path} is not clean - refusing to continue")


class DirtyDestinationError(DirtyWorkingTreeError):
    """Raised by refresh restore when the destination repository is not clean."""

    def __init__(self, repo_path: Path | str) -> None:
        super().__init__(
            repo_path,
            f"Destination repo is NOT clean, please clean then restore ({repo_path})",
        )


class AmbiguityError(ArtefactorError):
    """Raised when exactly one candidate was expected but several were found."""

    def __init__(self, message: str, candidates: Sequence[str]) -> None:
        super().__init__(f"{message}: {', '.join(candidates)}")
        self.candidates = list(candidates)


class AmbiguousDigestSetError(AmbiguityError):
    """Raised when more than one image digest/id is reported for one artifact."""


class AmbiguousHomeRepoError(AmbiguityError):
    """Raised when an archive directory holds more than one home repository."""


class CodecDecodeError(ArtefactorError):
    """Raised when a file name is not a valid encoded artifact reference."""

    def __init__(self, file_name: str, reason: str) -> None:
        super().__init__(f"Cannot decode artifact file name {file_name!r}: {reason}")
        self.file_name = file_name


class ArchiveError(ArtefactorError):
    """Raised when an archive cannot be built or safely extracted."""


class RuntimeClientError(ArtefactorError):
    """Raised when the container runtime rejects or fails a request."""


class TransferError(ArtefactorError):
    """Raised when a download cannot be completed."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"Download of {url} failed: {message}")
        self.url = url
