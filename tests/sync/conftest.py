"""In-memory collaborators and archive-set builders for sync tests."""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from artefactor.archive.tarball import build_archive
from artefactor.cache.codec import BINMARK_EXT, GIT_HOME_EXT
from artefactor.cache.ledger import ChecksumLedger
from artefactor.errors import TransferError
from artefactor.sync.save import SAVE_DIR_META

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping


class FakeRuntime:
    """Container runtime that writes placeholder image archives."""

    def __init__(self) -> None:
        self.pulls: list[tuple[str, str]] = []
        self.saves: list[str] = []
        self.loads: list[str] = []
        self.tags: list[tuple[str, str, str]] = []
        self.pushes: list[tuple[str, str]] = []
        self.load_ids: dict[str, list[str]] = {}
        self.push_digests: dict[str, str | None] = {}
        self.repo_digests: dict[str, list[str]] = {}

    async def pull(self, ref: str, auth: str = "") -> None:
        self.pulls.append((ref, auth))

    async def save(self, ref: str, dest_path: Path) -> Path:
        dest_path.write_bytes(f"image:{ref}".encode())
        self.saves.append(ref)
        return dest_path

    async def load(self, archive_path: Path) -> list[str]:
        self.loads.append(archive_path.name)
        return list(self.load_ids.get(archive_path.name, []))

    async def tag(self, source: str, repo: str, tag: str) -> None:
        self.tags.append((source, repo, tag))

    async def push(self, repo: str, tag: str, auth: str = "") -> str | None:
        self.pushes.append((f"{repo}:{tag}", auth))
        return self.push_digests.get(f"{repo}:{tag}")

    async def inspect_digests(self, image_id: str) -> list[str]:
        return list(self.repo_digests.get(image_id, []))


class FakeVcs:
    """Version control view computed from the directory contents.

    Every regular file outside .git and the archive dir counts as tracked;
    paths listed in ignored are reported as ignored when they exist.
    """

    def __init__(
        self,
        dirty: Iterable[Path] = (),
        archive_dir: str = "downloads",
        ignored: Iterable[str] = (),
    ) -> None:
        self.dirty = {Path(os.path.abspath(path)) for path in dirty}
        self.archive_dir = archive_dir
        self.ignored = list(ignored)

    def is_clean(self, path: Path | str) -> bool:
        return Path(os.path.abspath(path)) not in self.dirty

    def head_tree_files(self, path: Path | str) -> list[str]:
        root = Path(path)
        return sorted(
            item.relative_to(root).as_posix()
            for item in root.rglob("*")
            if item.is_file()
            and item.relative_to(root).parts[0] not in (".git", self.archive_dir)
        )

    def metadata_files(self, path: Path | str) -> list[str]:
        root = Path(path)
        return [".git"] + sorted(
            item.relative_to(root).as_posix() for item in (root / ".git").rglob("*")
        )

    def ignored_paths(self, path: Path | str) -> list[str]:
        return [rel for rel in self.ignored if (Path(path) / rel).exists()]

    def repo_name(self, path: Path | str) -> str:
        return Path(os.path.abspath(path)).name


class FakeTransfer:
    """Serves downloads by URL base name."""

    def __init__(self, files: Mapping[str, bytes] | None = None) -> None:
        self.files = dict(files or {})
        self.fetched: list[str] = []

    async def fetch(self, url: str, dest_path: Path) -> Path:
        name = url.rsplit("/", 1)[-1]
        if name not in self.files:
            raise TransferError(url, "HTTP 404: not found")
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        dest_path.write_bytes(self.files[name])
        self.fetched.append(url)
        return dest_path


@pytest.fixture
def runtime() -> FakeRuntime:
    """Fake container runtime."""
    return FakeRuntime()


@pytest.fixture
def vcs() -> FakeVcs:
    """Fake version control with every tree clean."""
    return FakeVcs()


@pytest.fixture
def transfer() -> FakeTransfer:
    """Fake transfer client with nothing to serve."""
    return FakeTransfer()


@pytest.fixture
def home_repo(tmp_path: Path) -> Path:
    """A home working tree with one tracked file and git metadata."""
    home = tmp_path / "work" / "home"
    (home / ".git").mkdir(parents=True)
    (home / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    (home / "README.md").write_text("v1")
    return home


@pytest.fixture
def launcher(tmp_path: Path) -> Path:
    """Stand-in for the running artefactor launcher."""
    path = tmp_path / "bin" / "artefactor"
    path.parent.mkdir()
    path.write_bytes(b"#!/bin/sh\necho artefactor\n")
    return path


@pytest.fixture
def make_archive_set(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a transportable archive set like save produces.

    The set holds the home repository archive, saveDir.meta, the given
    artifact files and a binmark for every executable, all recorded in the
    ledger.
    """

    def _make(
        source: Path,
        *,
        repo_name: str = "home",
        readme: str = "v1",
        artifacts: Mapping[str, bytes] | None = None,
        executables: Iterable[str] = (),
        archive_dir: str = "downloads",
    ) -> Path:
        tree = tmp_path / "build" / source.name / repo_name
        tree.mkdir(parents=True, exist_ok=True)
        (tree / "README.md").write_text(readme)

        source.mkdir(parents=True, exist_ok=True)
        ledger = ChecksumLedger.open(source)
        home = build_archive(
            source / f"{repo_name}{GIT_HOME_EXT}", ["README.md"], base_dir=tree, prefix=repo_name
        )
        ledger.update(home)
        meta = source / SAVE_DIR_META
        meta.write_text(archive_dir)
        ledger.update(meta)
        for name, data in (artifacts or {}).items():
            path = source / name
            path.write_bytes(data)
            ledger.update(path)
        for name in executables:
            marker = source / f"{name}{BINMARK_EXT}"
            marker.touch()
            ledger.update(marker)
        return source

    return _make
