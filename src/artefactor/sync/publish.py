"""
Publish saved images to a private registry.

Each image archive recorded in the ledger is loaded into the local runtime,
retagged as <registry>/<basename> and pushed. Images that were saved by
digest are checked after the push: the registry must report the very same
digest, otherwise the published image is not the one that was saved.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING

from artefactor.cache.codec import IMAGE_EXT, decode, retarget, split_reference
from artefactor.cache.ledger import ChecksumLedger
from artefactor.connectors.auth import resolve_auth
from artefactor.errors import (
    AmbiguousDigestSetError,
    ArtefactorError,
    ChecksumMismatchError,
    RuntimeClientError,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from artefactor.connectors import ContainerRuntime

logger = logging.getLogger(__name__)

SHORT_ID_SLICE = slice(7, 19)


@dataclass(frozen=True)
class PublishedImage:
    """One image pushed to the registry."""

    archive: Path
    source: str
    target: str
    digest: str | None


@dataclass
class PublishReport:
    """Images published in order."""

    registry: str
    published: list[PublishedImage] = field(default_factory=list)


def image_archives(archive_dir: Path) -> list[Path]:
    """Image archives recorded in the ledger of archive_dir."""
    ledger = ChecksumLedger.open(archive_dir)
    return [path for path in ledger.files() if path.name.endswith(IMAGE_EXT)]


async def publish_image(
    archive: Path,
    registry: str,
    *,
    runtime: ContainerRuntime,
    auth_resolver: Callable[[str], str],
) -> PublishedImage:
    """
    Load, retag and push one image archive.

    Raises:
        AmbiguousDigestSetError: If loading reports more than one image id.
        ChecksumMismatchError: If a digest-pinned image is pushed under a
            different digest.
    """
    reference = split_reference(decode(archive))
    new_name = retarget(reference.name, registry)

    ids = await runtime.load(archive)
    if len(ids) > 1:
        raise AmbiguousDigestSetError(f"Loading {archive} reported more than one image", ids)

    if reference.digest:
        if not ids:
            msg = f"loading {archive} did not report an image id"
            raise RuntimeClientError(msg)
        source = ids[0]
        tag = reference.tag or ids[0][SHORT_ID_SLICE]
    else:
        tag = reference.tag or "latest"
        source = f"{reference.name}:{tag}"
    target = f"{new_name}:{tag}"

    await runtime.tag(source, new_name, tag)
    digest = await runtime.push(new_name, tag, auth_resolver(target))
    logger.info("Pushed image", extra={"image": target, "digest": digest or ""})

    if reference.digest:
        pushed = digest
        if pushed is None:
            for repo_digest in await runtime.inspect_digests(source):
                name, _, value = repo_digest.partition("@")
                if name == new_name:
                    pushed = value
        if pushed != reference.digest:
            raise ChecksumMismatchError(target, reference.digest, pushed or "<none>")
        logger.info("Verified published digest", extra={"image": target, "digest": pushed})

    return PublishedImage(archive=archive, source=source, target=target, digest=digest)


async def publish(
    archive_dir: Path | str,
    registry: str,
    *,
    runtime: ContainerRuntime,
    username: str = "",
    password: str = "",
    auth_resolver: Callable[[str], str] | None = None,
) -> PublishReport:
    """
    Publish every saved image in archive_dir to registry.

    Raises:
        ArtefactorError: If archive_dir is missing, or images exist but no
            registry was given.
    """
    archive_dir = Path(os.path.abspath(archive_dir))
    if not archive_dir.is_dir():
        msg = f"missing archive {archive_dir}"
        raise ArtefactorError(msg)

    archives = image_archives(archive_dir)
    report = PublishReport(registry=registry)
    if not archives:
        logger.info("No images to publish", extra={"archive_dir": str(archive_dir)})
        return report
    if not registry:
        msg = "must specify registry for publish"
        raise ArtefactorError(msg)

    resolver = auth_resolver or partial(resolve_auth, username=username, password=password)
    for archive in archives:
        published = await publish_image(
            archive, registry, runtime=runtime, auth_resolver=resolver
        )
        report.published.append(published)
    return report


def image_var_exports(
    image_vars: Sequence[str],
    registry: str,
    env: Mapping[str, str] | None = None,
) -> list[str]:
    """
    Shell export lines pointing image variables at the published images.

    Raises:
        ArtefactorError: If no registry was given.
    """
    if not registry:
        msg = "must specify registry for update-image-vars"
        raise ArtefactorError(msg)
    env = os.environ if env is None else env
    lines = []
    for var in image_vars:
        image = env.get(var, "")
        if not image:
            logger.warning("Image variable is not set", extra={"var": var})
            continue
        lines.append(f"export {var}={retarget(image, registry)}")
    return lines
