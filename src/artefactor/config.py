"""
Settings for artefactor commands.

Every setting can come from four places, highest precedence first:
1. command line flag
2. ARTEFACTOR_<NAME> environment variable (e.g. ARTEFACTOR_DOCKER_IMAGES)
3. optional YAML file passed with --config
4. built-in default

List settings accept either a YAML list or a whitespace separated string,
which is how they arrive from flags and environment variables.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from artefactor.archive.staging import is_tree_subpath
from artefactor.cache.ledger import LEDGER_FILE_NAME

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

ENV_PREFIX = "ARTEFACTOR_"
DEFAULT_ARCHIVE_DIR = "downloads"
DEFAULT_TARGET_PLATFORM = "linux_amd64"

_SHA256_RE = re.compile(r"[0-9a-fA-F]{64}")


class WebFileSpec(BaseModel):
    """A file to download: url,filename,sha256[,true|false]."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(min_length=1, description="Where to download the file from")
    file_name: str = Field(min_length=1, description="Name inside the archive directory")
    sha256: str = Field(description="Expected SHA-256 of the file")
    executable: bool = Field(default=False, description="Mark the file executable on restore")

    @field_validator("file_name")
    @classmethod
    def validate_file_name(cls, v: str) -> str:
        if "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError(f"file name must be a plain name, got {v!r}")
        if v == LEDGER_FILE_NAME:
            raise ValueError(f"{LEDGER_FILE_NAME} is reserved for the checksum file")
        return v

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, v: str) -> str:
        if not _SHA256_RE.fullmatch(v):
            raise ValueError(f"sha256 must be 64 hex characters, got {v!r}")
        return v.lower()

    @classmethod
    def parse(cls, csv: str) -> WebFileSpec:
        """Parse the url,filename,sha256[,true|false] form."""
        parts = csv.strip().split(",")
        if len(parts) not in (3, 4):
            raise ValueError(
                f"expecting a web file CSV with url,filename,sha256[,true|false], got {csv!r}"
            )
        executable = len(parts) == 4 and parts[3].strip().lower() == "true"
        return cls(url=parts[0], file_name=parts[1], sha256=parts[2], executable=executable)


class DockerCredentials(BaseModel):
    """Registry credentials passed through to the container runtime."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    username: str = ""
    password: str = Field(default="", repr=False)

    @property
    def is_set(self) -> bool:
        return bool(self.username)


def _split_words(v: object) -> object:
    if isinstance(v, str):
        return tuple(v.split())
    return v


class ArtefactorSettings(BaseModel):
    """Resolved settings for one artefactor invocation (frozen)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    archive_dir: str = Field(
        default=DEFAULT_ARCHIVE_DIR,
        min_length=1,
        description="Directory artifacts are saved to and published from",
    )
    docker_images: tuple[str, ...] = Field(default=(), description="Images to save")
    image_vars: tuple[str, ...] = Field(
        default=(),
        description="Environment variables naming further images to save",
    )
    git_repos: tuple[str, ...] = Field(default=(), description="Local git repos to archive")
    web_files: tuple[WebFileSpec, ...] = Field(default=(), description="Files to download")
    target_platform: str = Field(
        default=DEFAULT_TARGET_PLATFORM,
        description="Platform of the artefactor binary saved alongside, <os>_<arch>",
    )
    docker_registry: str = Field(default="", description="Registry to publish images to")
    docker_username: str = ""
    docker_password: str = Field(default="", repr=False)
    source_dir: str = Field(default=".", description="Restore: directory holding the artifacts")
    dest_dir: str = Field(default=".", description="Restore: directory to restore under")
    max_concurrency: int = Field(default=4, ge=1, description="Artifacts fetched in parallel")
    docker_host: str | None = Field(default=None, description="Docker Engine address")
    download_retries: int = Field(default=5, ge=0, description="Retries per web download")

    @field_validator("archive_dir")
    @classmethod
    def validate_archive_dir(cls, v: str) -> str:
        if not is_tree_subpath(v):
            raise ValueError(f"archive dir must be a subdirectory of the working tree, got {v!r}")
        return v

    @field_validator("docker_images", "image_vars", "git_repos", mode="before")
    @classmethod
    def split_lists(cls, v: object) -> object:
        return _split_words(v)

    @field_validator("web_files", mode="before")
    @classmethod
    def parse_web_files(cls, v: object) -> object:
        v = _split_words(v)
        if isinstance(v, (list, tuple)):
            return tuple(WebFileSpec.parse(item) if isinstance(item, str) else item for item in v)
        return v

    @field_validator("target_platform")
    @classmethod
    def validate_platform(cls, v: str) -> str:
        if "_" not in v:
            raise ValueError(f"target platform must look like <os>_<arch>, got {v!r}")
        return v

    @property
    def credentials(self) -> DockerCredentials:
        return DockerCredentials(username=self.docker_username, password=self.docker_password)


def env_name(field: str) -> str:
    """Environment variable name for a setting, e.g. ARTEFACTOR_ARCHIVE_DIR."""
    return ENV_PREFIX + field.upper().replace("-", "_")


def load_config_file(path: Path | str) -> dict[str, Any]:
    """Load settings from a YAML file; keys may use dashes or underscores."""
    path = Path(path)
    with path.open(encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"cannot parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} must contain a mapping, got {type(data).__name__}")
    return {str(key).replace("-", "_"): value for key, value in data.items()}


def settings_from_sources(
    env: Mapping[str, str] | None = None,
    file: Path | str | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> ArtefactorSettings:
    """
    Merge settings from defaults, a YAML file, the environment and flags.

    Args:
        env: Environment (default: os.environ).
        file: Optional YAML config file.
        overrides: Values from command line flags; None means "not given".

    Returns:
        Validated settings.

    Raises:
        pydantic.ValidationError: If a merged value is invalid.
    """
    env = os.environ if env is None else env
    data: dict[str, Any] = {}

    if file is not None:
        data.update(load_config_file(file))
        logger.debug("Loaded config file", extra={"path": str(file)})

    for field in ArtefactorSettings.model_fields:
        value = env.get(env_name(field))
        if value:
            data[field] = value

    for field, value in (overrides or {}).items():
        if value is not None:
            data[field] = value

    return ArtefactorSettings.model_validate(data)


def resolve_images(settings: ArtefactorSettings, env: Mapping[str, str] | None = None) -> list[str]:
    """Images to save: docker_images plus those named by image_vars, deduplicated."""
    env = os.environ if env is None else env
    images = list(dict.fromkeys(settings.docker_images))
    for var in settings.image_vars:
        image = env.get(var, "")
        if not image:
            logger.warning("Image variable is not set", extra={"var": var})
            continue
        if image not in images:
            logger.debug("Adding image from variable", extra={"var": var, "image": image})
            images.append(image)
    return images
