"""Tests for publishing saved images to a registry."""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING

import orjson
import pytest

from artefactor.cache.ledger import ChecksumLedger
from artefactor.errors import (
    AmbiguousDigestSetError,
    ArtefactorError,
    ChecksumMismatchError,
    RuntimeClientError,
)
from artefactor.sync.publish import image_var_exports, publish

if TYPE_CHECKING:
    from pathlib import Path

    from conftest import FakeRuntime

REGISTRY = "registry.local:5000"
PINNED_HEX = "ab" * 32
PINNED_DIGEST = f"sha256:{PINNED_HEX}"
PINNED_FILE = f"busybox~~~sha256~{PINNED_HEX}.docker.tar"
IMAGE_ID = "sha256:" + "cd" * 32
SHORT_ID = "cd" * 6


def _archive_dir(tmp_path: Path, *names: str) -> Path:
    archive = tmp_path / "downloads"
    archive.mkdir()
    ledger = ChecksumLedger.open(archive)
    for name in names:
        (archive / name).write_bytes(name.encode())
        ledger.update(archive / name)
    return archive


def _no_auth(image: str) -> str:
    return ""


class TestPublish:
    """Tests for publish."""

    @pytest.mark.asyncio
    async def test_tagged_image(self, tmp_path: Path, runtime: FakeRuntime) -> None:
        """Images saved by tag are retagged under the registry with the same tag."""
        archive = _archive_dir(tmp_path, "quay.io~org~alpine~~3.docker.tar")

        report = await publish(archive, REGISTRY, runtime=runtime, auth_resolver=_no_auth)

        assert [image.target for image in report.published] == [f"{REGISTRY}/alpine:3"]
        assert runtime.tags == [("quay.io/org/alpine:3", f"{REGISTRY}/alpine", "3")]
        assert runtime.pushes == [(f"{REGISTRY}/alpine:3", "")]

    @pytest.mark.asyncio
    async def test_untagged_image_uses_latest(self, tmp_path: Path, runtime: FakeRuntime) -> None:
        """An image without a tag is published as latest."""
        archive = _archive_dir(tmp_path, "alpine.docker.tar")

        await publish(archive, REGISTRY, runtime=runtime, auth_resolver=_no_auth)

        assert runtime.tags == [("alpine:latest", f"{REGISTRY}/alpine", "latest")]

    @pytest.mark.asyncio
    async def test_pinned_image_verified_by_push_digest(
        self, tmp_path: Path, runtime: FakeRuntime
    ) -> None:
        """Digest-pinned images are tagged by short id and their digest checked."""
        archive = _archive_dir(tmp_path, PINNED_FILE)
        runtime.load_ids[PINNED_FILE] = [IMAGE_ID]
        runtime.push_digests[f"{REGISTRY}/busybox:{SHORT_ID}"] = PINNED_DIGEST

        report = await publish(archive, REGISTRY, runtime=runtime, auth_resolver=_no_auth)

        assert runtime.tags == [(IMAGE_ID, f"{REGISTRY}/busybox", SHORT_ID)]
        assert report.published[0].digest == PINNED_DIGEST

    @pytest.mark.asyncio
    async def test_pinned_image_verified_by_inspect(
        self, tmp_path: Path, runtime: FakeRuntime
    ) -> None:
        """Without a digest from the push, the image's repo digests are used."""
        archive = _archive_dir(tmp_path, PINNED_FILE)
        runtime.load_ids[PINNED_FILE] = [IMAGE_ID]
        runtime.repo_digests[IMAGE_ID] = [
            "busybox@sha256:" + "ee" * 32,
            f"{REGISTRY}/busybox@{PINNED_DIGEST}",
        ]

        report = await publish(archive, REGISTRY, runtime=runtime, auth_resolver=_no_auth)

        assert len(report.published) == 1

    @pytest.mark.asyncio
    async def test_pinned_image_digest_mismatch(
        self, tmp_path: Path, runtime: FakeRuntime
    ) -> None:
        """A different pushed digest means the wrong image was published."""
        archive = _archive_dir(tmp_path, PINNED_FILE)
        runtime.load_ids[PINNED_FILE] = [IMAGE_ID]
        runtime.push_digests[f"{REGISTRY}/busybox:{SHORT_ID}"] = "sha256:" + "00" * 32

        with pytest.raises(ChecksumMismatchError):
            await publish(archive, REGISTRY, runtime=runtime, auth_resolver=_no_auth)

    @pytest.mark.asyncio
    async def test_pinned_image_without_id(self, tmp_path: Path, runtime: FakeRuntime) -> None:
        """A pinned archive must report the loaded image id."""
        archive = _archive_dir(tmp_path, PINNED_FILE)

        with pytest.raises(RuntimeClientError, match="did not report an image id"):
            await publish(archive, REGISTRY, runtime=runtime, auth_resolver=_no_auth)
        assert runtime.pushes == []

    @pytest.mark.asyncio
    async def test_several_ids_are_ambiguous(self, tmp_path: Path, runtime: FakeRuntime) -> None:
        """Loading one archive must not report several images."""
        archive = _archive_dir(tmp_path, PINNED_FILE)
        runtime.load_ids[PINNED_FILE] = [IMAGE_ID, "sha256:" + "ef" * 32]

        with pytest.raises(AmbiguousDigestSetError):
            await publish(archive, REGISTRY, runtime=runtime, auth_resolver=_no_auth)
        assert runtime.tags == []

    @pytest.mark.asyncio
    async def test_only_recorded_archives_published(
        self, tmp_path: Path, runtime: FakeRuntime
    ) -> None:
        """Image files without a ledger entry are ignored."""
        archive = _archive_dir(tmp_path, "alpine~~3.docker.tar", "notes.txt")
        (archive / "stray~~1.docker.tar").write_bytes(b"stray")

        await publish(archive, REGISTRY, runtime=runtime, auth_resolver=_no_auth)

        assert runtime.loads == ["alpine~~3.docker.tar"]

    @pytest.mark.asyncio
    async def test_explicit_credentials(self, tmp_path: Path, runtime: FakeRuntime) -> None:
        """Username and password are passed to the runtime for the target registry."""
        archive = _archive_dir(tmp_path, "alpine~~3.docker.tar")

        await publish(archive, REGISTRY, runtime=runtime, username="bob", password="pw")

        auth = orjson.loads(base64.urlsafe_b64decode(runtime.pushes[0][1]))
        assert auth == {"username": "bob", "password": "pw", "serveraddress": REGISTRY}

    @pytest.mark.asyncio
    async def test_registry_required_when_images_exist(
        self, tmp_path: Path, runtime: FakeRuntime
    ) -> None:
        """Publishing images needs a registry."""
        archive = _archive_dir(tmp_path, "alpine~~3.docker.tar")
        with pytest.raises(ArtefactorError, match="must specify registry"):
            await publish(archive, "", runtime=runtime, auth_resolver=_no_auth)

    @pytest.mark.asyncio
    async def test_nothing_to_publish(self, tmp_path: Path, runtime: FakeRuntime) -> None:
        """Without image archives nothing happens, even without a registry."""
        archive = _archive_dir(tmp_path, "tool.sh")
        report = await publish(archive, "", runtime=runtime, auth_resolver=_no_auth)
        assert report.published == []
        assert runtime.loads == []

    @pytest.mark.asyncio
    async def test_missing_archive_dir(self, tmp_path: Path, runtime: FakeRuntime) -> None:
        """The archive dir must exist."""
        with pytest.raises(ArtefactorError, match="missing archive"):
            await publish(tmp_path / "nope", REGISTRY, runtime=runtime, auth_resolver=_no_auth)


class TestImageVarExports:
    """Tests for image_var_exports."""

    def test_exports_point_at_registry(self) -> None:
        """Each set variable is exported under the registry; unset ones are skipped."""
        env = {"APP_IMAGE": "quay.io/org/app:v1", "DB_IMAGE": "postgres:16"}
        lines = image_var_exports(["APP_IMAGE", "DB_IMAGE", "UNSET"], "registry.local", env)
        assert lines == [
            "export APP_IMAGE=registry.local/app:v1",
            "export DB_IMAGE=registry.local/postgres:16",
        ]

    def test_registry_required(self) -> None:
        """A registry must be given."""
        with pytest.raises(ArtefactorError, match="must specify registry"):
            image_var_exports(["APP_IMAGE"], "", {})
