"""
Save orchestration: capture every configured artifact into the archive dir.

Order of work:
1. Pre-flight (no changes): every repository to archive must be clean.
2. Record the archive dir in saveDir.meta and save artefactor itself.
3. Repositories, images and web files concurrently, each either kept
   (ledger hit, no collaborator call) or fetched/built and re-hashed.
4. Sweep: ledger entries not touched by this run are dropped and their
   files deleted.

A failure in step 3 cancels the remaining work and skips the sweep, so a
partial run never deletes artifacts.
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import shutil
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from artefactor.archive.tarball import PARTIAL_SUFFIX, build_archive
from artefactor.cache.codec import BINMARK_EXT, GIT_EXT, GIT_HOME_EXT, encode
from artefactor.cache.ledger import (
    LEDGER_FILE_NAME,
    ChecksumLedger,
    compute_file_sha256,
    parse_checksums_txt,
)
from artefactor.config import resolve_images
from artefactor.connectors.auth import resolve_auth
from artefactor.errors import ArtefactorError, ChecksumMismatchError, DirtySourceError
from artefactor.version import get_version

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from artefactor.config import ArtefactorSettings, WebFileSpec
    from artefactor.connectors import ContainerRuntime, TransferClient, VersionControl

logger = logging.getLogger(__name__)

SAVE_DIR_META = "saveDir.meta"
BINARY_NAME = "artefactor"
RELEASE_URL = "https://github.com/appvia/artefactor/releases/download/{version}/"
EXECUTABLE_MODE = 0o755
REBUILD_SUFFIX = ".rebuild"

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
}


def running_platform() -> str:
    """Platform of this process in <os>_<arch> form, e.g. linux_amd64."""
    machine = platform.machine().lower()
    return f"{platform.system().lower()}_{_ARCH_ALIASES.get(machine, machine)}"


@dataclass
class SaveReport:
    """What a save run did, by artifact."""

    archive_dir: Path
    fetched: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    removed: list[Path] = field(default_factory=list)


class SaveOrchestrator:
    """
    Saves images, repositories, web files and artefactor itself into one
    archive directory, tracked by its checksum ledger.
    """

    def __init__(
        self,
        settings: ArtefactorSettings,
        *,
        runtime: ContainerRuntime,
        vcs: VersionControl,
        transfer: TransferClient,
        home_dir: Path | None = None,
        env: Mapping[str, str] | None = None,
        self_binary: Path | None = None,
        auth_resolver: Callable[[str], str] | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            settings: Resolved settings.
            runtime: Container runtime used to pull and save images.
            vcs: Version control adapter used to read repositories.
            transfer: Downloader for web files and release binaries.
            home_dir: Working directory; archive_dir and repos are relative
                to it, and the repo at this path is the home repository.
            env: Environment used to resolve image_vars.
            self_binary: Launcher copied when the target platform matches
                (default: sys.argv[0]).
            auth_resolver: Maps an image to its X-Registry-Auth value.
        """
        self._settings = settings
        self._runtime = runtime
        self._vcs = vcs
        self._transfer = transfer
        self._home_dir = Path(os.path.abspath(home_dir or Path.cwd()))
        self._env = os.environ if env is None else env
        self._self_binary = self_binary
        self._auth_resolver = auth_resolver or self._default_auth
        self.archive_dir = self._home_dir / settings.archive_dir
        self._ledger: ChecksumLedger | None = None
        self._report = SaveReport(archive_dir=self.archive_dir)

    def _default_auth(self, image: str) -> str:
        creds = self._settings.credentials
        return resolve_auth(image, creds.username, creds.password)

    @property
    def ledger(self) -> ChecksumLedger:
        if self._ledger is None:
            msg = "ledger is only available while saving"
            raise RuntimeError(msg)
        return self._ledger

    def _repo_paths(self) -> list[Path]:
        return [Path(os.path.abspath(self._home_dir / repo)) for repo in self._settings.git_repos]

    def preflight(self) -> list[str]:
        """
        Check everything that can fail before the archive dir is touched.

        Returns:
            Images to save.

        Raises:
            DirtySourceError: If a repository has uncommitted or untracked changes.
            ArtefactorError: If an image reference cannot be stored as a file name.
        """
        for repo in self._repo_paths():
            if not self._vcs.is_clean(repo):
                raise DirtySourceError(repo)
        images = resolve_images(self._settings, self._env)
        for image in images:
            try:
                encode(image)
            except ValueError as e:
                raise ArtefactorError(str(e)) from e
        return images

    async def run(self) -> SaveReport:
        """Save every configured artifact and sweep what is no longer wanted."""
        images = self.preflight()

        self.archive_dir.mkdir(parents=True, exist_ok=True)
        self._ledger = await asyncio.to_thread(ChecksumLedger.open, self.archive_dir)

        await asyncio.to_thread(self.save_dir_meta)
        await self.save_self()

        semaphore = asyncio.Semaphore(self._settings.max_concurrency)

        async def bounded(work: Awaitable[None]) -> None:
            async with semaphore:
                await work

        jobs = [self.save_repo(repo) for repo in self._repo_paths()]
        jobs += [self.save_image(image) for image in images]
        jobs += [self.save_web_file(spec) for spec in self._settings.web_files]
        tasks = [asyncio.ensure_future(bounded(job)) for job in jobs]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for path in await asyncio.to_thread(self.ledger.sweep):
            logger.info("Removing stale artifact", extra={"path": str(path)})
            path.unlink(missing_ok=True)
            self._report.removed.append(path)

        logger.info(
            "Save complete",
            extra={
                "archive_dir": str(self.archive_dir),
                "fetched": len(self._report.fetched),
                "kept": len(self._report.kept),
                "removed": len(self._report.removed),
            },
        )
        return self._report

    def save_dir_meta(self) -> Path:
        """Record the archive dir, relative to the home repo, for restore."""
        meta = self.archive_dir / SAVE_DIR_META
        meta.write_text(os.path.normpath(self._settings.archive_dir), encoding="utf-8")
        self.ledger.update(meta)
        return meta

    def binmark(self, path: Path) -> Path:
        """Record that path must be executable after restore."""
        path.chmod(EXECUTABLE_MODE)
        marker = path.with_name(path.name + BINMARK_EXT)
        marker.touch()
        self.ledger.update(marker)
        return marker

    async def save_self(self) -> None:
        """Save the artefactor launcher for the target platform."""
        target = self._settings.target_platform
        if target == running_platform():
            await asyncio.to_thread(self._copy_self)
        else:
            await self._download_self(target)

    def _copy_self(self) -> None:
        source = Path(os.path.abspath(self._self_binary or sys.argv[0]))
        dest = self.archive_dir / BINARY_NAME
        if not source.is_file():
            msg = f"cannot find artefactor launcher at {source}"
            raise ArtefactorError(msg)

        if self.ledger.is_matching(dest, compute_file_sha256(source)):
            self.ledger.keep(dest)
            self._report.kept.append(BINARY_NAME)
        else:
            logger.info("Saving artefactor", extra={"source": str(source), "path": str(dest)})
            shutil.copy2(source, dest)
            self.ledger.update(dest)
            self._report.fetched.append(BINARY_NAME)
        self.binmark(dest)

    async def _download_self(self, target: str) -> None:
        binary = f"{BINARY_NAME}_{target}"
        dest = self.archive_dir / binary
        if dest.exists() and await asyncio.to_thread(self.ledger.verify, dest):
            self.ledger.keep(dest)
            self._report.kept.append(binary)
            await asyncio.to_thread(self.binmark, dest)
            return

        base_url = RELEASE_URL.format(version=get_version())
        with tempfile.TemporaryDirectory(prefix="artefactor_downloads") as tmp:
            tmp_dir = Path(tmp)
            sums_path = await self._transfer.fetch(
                base_url + LEDGER_FILE_NAME, tmp_dir / LEDGER_FILE_NAME
            )
            bin_path = await self._transfer.fetch(base_url + binary, tmp_dir / binary)

            expected = parse_checksums_txt(sums_path.read_text(encoding="utf-8")).get(binary)
            if expected is None:
                msg = f"release checksums at {base_url} have no entry for {binary}"
                raise ArtefactorError(msg)
            actual = await asyncio.to_thread(compute_file_sha256, bin_path)
            if actual != expected:
                raise ChecksumMismatchError(base_url + binary, expected, actual)
            shutil.move(str(bin_path), str(dest))

        await asyncio.to_thread(self.ledger.update, dest)
        await asyncio.to_thread(self.binmark, dest)
        self._report.fetched.append(binary)

    async def save_repo(self, repo: Path) -> None:
        """Archive a repository's HEAD tree plus its .git directory."""
        name = await asyncio.to_thread(self._vcs.repo_name, repo)
        ext = GIT_HOME_EXT if repo == self._home_dir else GIT_EXT
        dest = self.archive_dir / f"{name}{ext}"
        files = await asyncio.to_thread(self._vcs.head_tree_files, repo)
        files += await asyncio.to_thread(self._vcs.metadata_files, repo)

        logger.info("Archiving git repo", extra={"repo": str(repo), "path": str(dest)})
        rebuilt = dest.with_name(dest.name + REBUILD_SUFFIX)
        await asyncio.to_thread(build_archive, rebuilt, files, base_dir=repo, prefix=name)
        sha256 = await asyncio.to_thread(compute_file_sha256, rebuilt)

        if self.ledger.is_matching(dest, sha256):
            rebuilt.unlink()
            self.ledger.keep(dest)
            self._report.kept.append(dest.name)
            return
        rebuilt.replace(dest)
        await asyncio.to_thread(self.ledger.update, dest)
        self._report.fetched.append(dest.name)

    async def save_image(self, image: str) -> None:
        """Pull and save an image unless an identical archive is already held."""
        dest = encode(image, self.archive_dir)
        if dest.exists() and await asyncio.to_thread(self.ledger.verify, dest):
            logger.info("Image already saved", extra={"image": image, "path": str(dest)})
            self.ledger.keep(dest)
            self._report.kept.append(image)
            return

        auth = await asyncio.to_thread(self._auth_resolver, image)
        await self._runtime.pull(image, auth)
        partial = dest.with_name(dest.name + PARTIAL_SUFFIX)
        try:
            await self._runtime.save(image, partial)
            partial.replace(dest)
        finally:
            partial.unlink(missing_ok=True)
        await asyncio.to_thread(self.ledger.update, dest)
        self._report.fetched.append(image)

    async def save_web_file(self, spec: WebFileSpec) -> None:
        """Download a web file unless the held copy matches its declared hash."""
        dest = self.archive_dir / spec.file_name
        if self.ledger.is_matching(dest, spec.sha256):
            logger.info("Web file already saved", extra={"path": str(dest)})
            self.ledger.keep(dest)
            if spec.executable:
                await asyncio.to_thread(self.binmark, dest)
            self._report.kept.append(spec.file_name)
            return

        if self.ledger.is_cached(dest):
            logger.warning(
                "Cached file does not match declared checksum, downloading again",
                extra={"path": str(dest), "expected": spec.sha256},
            )
            dest.unlink()

        await self._transfer.fetch(spec.url, dest)
        if spec.executable:
            await asyncio.to_thread(self.binmark, dest)
        sha256 = await asyncio.to_thread(self.ledger.update, dest)
        self._report.fetched.append(spec.file_name)
        if sha256 != spec.sha256:
            raise ChecksumMismatchError(dest, spec.sha256, sha256)


async def save(
    settings: ArtefactorSettings,
    *,
    runtime: ContainerRuntime,
    vcs: VersionControl,
    transfer: TransferClient,
    home_dir: Path | None = None,
    env: Mapping[str, str] | None = None,
    self_binary: Path | None = None,
    auth_resolver: Callable[[str], str] | None = None,
) -> SaveReport:
    """Run a save with the given collaborators."""
    orchestrator = SaveOrchestrator(
        settings,
        runtime=runtime,
        vcs=vcs,
        transfer=transfer,
        home_dir=home_dir,
        env=env,
        self_binary=self_binary,
        auth_resolver=auth_resolver,
    )
    return await orchestrator.run()
