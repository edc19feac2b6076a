"""Collaborator interfaces and their adapters.

The sync layer only depends on the Protocols below; the adapters in this
package implement them on top of the Docker Engine API, GitPython and
aiohttp.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from pathlib import Path


class ContainerRuntime(Protocol):
    """Image operations of a container runtime."""

    async def pull(self, ref: str, auth: str = "") -> None: ...

    async def save(self, ref: str, dest_path: Path) -> Path: ...

    async def load(self, archive_path: Path) -> list[str]: ...

    async def tag(self, source: str, repo: str, tag: str) -> None: ...

    async def push(self, repo: str, tag: str, auth: str = "") -> str | None: ...

    async def inspect_digests(self, image_id: str) -> list[str]: ...


class VersionControl(Protocol):
    """Read-only view of local working trees."""

    def is_clean(self, path: Path | str) -> bool: ...

    def head_tree_files(self, path: Path | str) -> list[str]: ...

    def metadata_files(self, path: Path | str) -> list[str]: ...

    def ignored_paths(self, path: Path | str) -> list[str]: ...

    def repo_name(self, path: Path | str) -> str: ...


class TransferClient(Protocol):
    """Downloads a URL to a local file, replacing it."""

    async def fetch(self, url: str, dest_path: Path) -> Path: ...


__all__ = ["ContainerRuntime", "TransferClient", "VersionControl"]
