"""Reversible mapping between image references and archive file names.

Image references contain characters that are awkward or unsafe in a flat
file name. Each structural character is replaced by a run of tildes whose
length identifies it:

    /            ->  ~      (path separator)
    :            ->  ~~     (tag separator)
    @alg:hex     ->  ~~~alg~hex   (content digest marker)

    alpine:latest                      ->  alpine~~latest.docker.tar
    dns.registry/alpine:latest         ->  dns.registry~alpine~~latest.docker.tar
    busybox@sha256:9f10...             ->  busybox~~~sha256~9f10....docker.tar

Decoding splits off the digest marker first, then reads the remaining tilde
runs by length, so a tag separator is never mistaken for two path
separators. Tildes are not legal in image references, which keeps the
mapping lossless.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path, PurePath, PurePosixPath

from artefactor.errors import CodecDecodeError

IMAGE_EXT = ".docker.tar"
GIT_EXT = ".git.tar"
GIT_HOME_EXT = ".git.home.tar"
BINMARK_EXT = ".binmark.meta"

_PATH_SEP = "~"
_TAG_SEP = "~~"
_DIGEST_MARK = "~~~"

_TILDE_RUN = re.compile(r"~+")


def encode(reference: str, target_dir: Path | str | None = None, ext: str = IMAGE_EXT) -> Path:
    """Encode an image reference as an archive file path.

    Args:
        reference: Image reference, e.g. ``registry/name:tag`` or
            ``name@sha256:<hex>``.
        target_dir: Directory to place the file in (optional).
        ext: File extension to append.

    Raises:
        ValueError: If the reference is empty, contains a tilde, or has a
            digest without an algorithm.
    """
    if not reference or "~" in reference:
        msg = f"Invalid image reference: {reference!r}"
        raise ValueError(msg)

    name, marker, digest = reference.partition("@")
    flat = name.replace("/", _PATH_SEP).replace(":", _TAG_SEP)
    if marker:
        algorithm, colon, hex_digest = digest.partition(":")
        if not colon or not algorithm or not hex_digest or "@" in digest:
            msg = f"Invalid digest in image reference: {reference!r}"
            raise ValueError(msg)
        flat = f"{flat}{_DIGEST_MARK}{algorithm}{_PATH_SEP}{hex_digest}"

    file_name = flat + ext
    if target_dir is None or str(target_dir) == "":
        return Path(file_name)
    return Path(target_dir) / file_name


def decode(file_name: Path | str, ext: str = IMAGE_EXT) -> str:
    """Decode an archive file name back to its image reference.

    Only the base name is considered, so the directory the file lives in
    does not matter.

    Raises:
        CodecDecodeError: If the name does not follow the encoding grammar.
    """
    base = PurePath(file_name).name
    if not base.endswith(ext) or len(base) == len(ext):
        raise CodecDecodeError(base, f"expected a non-empty name ending in {ext}")
    encoded = base[: -len(ext)]

    name_enc, marker, digest_enc = encoded.partition(_DIGEST_MARK)
    reference = _decode_name(base, name_enc)
    if marker:
        reference = f"{reference}@{_decode_digest(base, digest_enc)}"
    return reference


def _decode_name(base: str, name_enc: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        run = match.group(0)
        if run == _PATH_SEP:
            return "/"
        if run == _TAG_SEP:
            return ":"
        raise CodecDecodeError(base, f"unexpected separator run {run!r}")

    if not name_enc or name_enc.startswith("~") or name_enc.endswith("~"):
        raise CodecDecodeError(base, "empty name component")
    return _TILDE_RUN.sub(_replace, name_enc)


def _decode_digest(base: str, digest_enc: str) -> str:
    algorithm, sep, hex_digest = digest_enc.partition(_PATH_SEP)
    if not sep or not algorithm or not hex_digest or "~" in hex_digest:
        raise CodecDecodeError(base, "digest must be <algorithm>~<hex>")
    return f"{algorithm}:{hex_digest}"


@dataclass(frozen=True)
class ImageReference:
    """Image reference split into its parts.

    Attributes:
        name: Repository including any registry host, without tag or digest.
        tag: Tag, or empty string.
        digest: Full digest (``sha256:<hex>``), or empty string.
    """

    name: str
    tag: str = ""
    digest: str = ""

    @property
    def digest_hex(self) -> str:
        """Digest without the algorithm prefix."""
        return self.digest.partition(":")[2]

    def __str__(self) -> str:
        ref = self.name
        if self.tag:
            ref = f"{ref}:{self.tag}"
        if self.digest:
            ref = f"{ref}@{self.digest}"
        return ref


def split_reference(reference: str) -> ImageReference:
    """Split an image reference into name, tag and digest.

    Colons may appear in a registry host (``localhost:5000/app``), so the tag
    is only looked for in the last path segment.
    """
    name_part, _, digest = reference.partition("@")
    head, slash, last = name_part.rpartition("/")
    tag = ""
    if ":" in last:
        last, _, tag = last.partition(":")
    return ImageReference(name=f"{head}{slash}{last}", tag=tag, digest=digest)


def retarget(name: str, registry: str) -> str:
    """Return the repository name an image is published under in registry."""
    if not registry:
        return name
    return f"{registry.rstrip('/')}/{PurePosixPath(name).name}"
