"""Tests for settings loading and validation."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from pydantic import ValidationError

from artefactor.config import (
    DEFAULT_ARCHIVE_DIR,
    DEFAULT_TARGET_PLATFORM,
    ArtefactorSettings,
    WebFileSpec,
    env_name,
    load_config_file,
    resolve_images,
    settings_from_sources,
)

if TYPE_CHECKING:
    from pathlib import Path

SHA = "AB" * 32


class TestWebFileSpec:
    """Tests for WebFileSpec."""

    def test_parse_three_fields(self) -> None:
        """url,filename,sha256 parses with executable off and the hash lowercased."""
        spec = WebFileSpec.parse(f"https://example.com/x.tgz,x.tgz,{SHA}")
        assert spec.url == "https://example.com/x.tgz"
        assert spec.file_name == "x.tgz"
        assert spec.sha256 == SHA.lower()
        assert not spec.executable

    @pytest.mark.parametrize(("flag", "expected"), [("true", True), ("TRUE", True), ("no", False)])
    def test_parse_executable_flag(self, flag: str, expected: bool) -> None:
        """The optional fourth field marks the file executable."""
        spec = WebFileSpec.parse(f"https://example.com/kubectl,kubectl,{SHA},{flag}")
        assert spec.executable is expected

    @pytest.mark.parametrize(
        "csv",
        [
            "https://example.com/x,x",
            f"https://example.com/x,x,{SHA},true,extra",
            "https://example.com/x,x,not-a-hash",
            f"https://example.com/x,dir/x,{SHA}",
            f"https://example.com/x,checksums.txt,{SHA}",
        ],
    )
    def test_parse_invalid(self, csv: str) -> None:
        """Malformed specs are rejected."""
        with pytest.raises(ValueError):
            WebFileSpec.parse(csv)


class TestArtefactorSettings:
    """Tests for ArtefactorSettings."""

    def test_defaults(self) -> None:
        """Defaults match the documented values."""
        settings = ArtefactorSettings()
        assert settings.archive_dir == DEFAULT_ARCHIVE_DIR == "downloads"
        assert settings.target_platform == DEFAULT_TARGET_PLATFORM == "linux_amd64"
        assert settings.docker_images == ()
        assert settings.max_concurrency == 4

    def test_whitespace_lists_split(self) -> None:
        """List settings accept whitespace separated strings."""
        settings = ArtefactorSettings.model_validate(
            {"docker_images": "alpine:3\nbusybox:1  nginx", "git_repos": ". ../other"}
        )
        assert settings.docker_images == ("alpine:3", "busybox:1", "nginx")
        assert settings.git_repos == (".", "../other")

    def test_web_files_from_string(self) -> None:
        """Web files parse from whitespace separated CSVs."""
        settings = ArtefactorSettings.model_validate(
            {"web_files": f"https://a/x,x,{SHA} https://a/y,y,{SHA},true"}
        )
        assert [spec.file_name for spec in settings.web_files] == ["x", "y"]
        assert settings.web_files[1].executable

    def test_invalid_platform(self) -> None:
        """Platforms must look like <os>_<arch>."""
        with pytest.raises(ValidationError):
            ArtefactorSettings(target_platform="linux")

    @pytest.mark.parametrize("archive_dir", ["../shared", "/srv/artifacts", ".", "a/../.."])
    def test_archive_dir_must_stay_inside_tree(self, archive_dir: str) -> None:
        """The archive dir is a subdirectory of the working tree."""
        with pytest.raises(ValidationError, match="subdirectory"):
            ArtefactorSettings(archive_dir=archive_dir)

    def test_nested_archive_dir_accepted(self) -> None:
        """Nested relative archive dirs are fine."""
        assert ArtefactorSettings(archive_dir="build/artifacts").archive_dir == "build/artifacts"

    def test_unknown_field_rejected(self) -> None:
        """Typos in settings are errors."""
        with pytest.raises(ValidationError):
            ArtefactorSettings.model_validate({"docker_image": "alpine"})

    def test_password_hidden_from_repr(self) -> None:
        """The registry password never appears in repr."""
        settings = ArtefactorSettings(docker_username="bob", docker_password="hunter2")
        assert "hunter2" not in repr(settings)
        assert settings.credentials.is_set


class TestSettingsFromSources:
    """Tests for settings_from_sources precedence."""

    def test_env_name(self) -> None:
        """Environment names use the ARTEFACTOR_ prefix."""
        assert env_name("archive_dir") == "ARTEFACTOR_ARCHIVE_DIR"
        assert env_name("docker-images") == "ARTEFACTOR_DOCKER_IMAGES"

    def test_precedence(self, tmp_path: Path) -> None:
        """Flags beat the environment, which beats the config file."""
        config = tmp_path / "artefactor.yaml"
        config.write_text(
            "archive-dir: from-file\ndocker_images:\n  - alpine:3\ntarget_platform: darwin_arm64\n"
        )
        env = {
            "ARTEFACTOR_ARCHIVE_DIR": "from-env",
            "ARTEFACTOR_TARGET_PLATFORM": "windows_amd64",
        }
        settings = settings_from_sources(
            env=env, file=config, overrides={"archive_dir": "from-flag", "target_platform": None}
        )
        assert settings.archive_dir == "from-flag"
        assert settings.target_platform == "windows_amd64"
        assert settings.docker_images == ("alpine:3",)

    def test_empty_env_values_ignored(self) -> None:
        """Empty environment variables fall back to defaults."""
        settings = settings_from_sources(env={"ARTEFACTOR_ARCHIVE_DIR": ""})
        assert settings.archive_dir == DEFAULT_ARCHIVE_DIR

    def test_config_file_must_be_mapping(self, tmp_path: Path) -> None:
        """A YAML list is not a valid config file."""
        config = tmp_path / "bad.yaml"
        config.write_text("- alpine\n")
        with pytest.raises(ValueError, match="must contain a mapping"):
            load_config_file(config)

    def test_config_file_syntax_error(self, tmp_path: Path) -> None:
        """YAML syntax errors become ValueError."""
        config = tmp_path / "bad.yaml"
        config.write_text("archive_dir: [unclosed\n")
        with pytest.raises(ValueError, match="cannot parse config file"):
            load_config_file(config)


class TestResolveImages:
    """Tests for resolve_images."""

    def test_images_from_variables(self) -> None:
        """Variables add images, duplicates and unset variables are skipped."""
        settings = ArtefactorSettings.model_validate(
            {"docker_images": "alpine:3 alpine:3", "image_vars": "APP_IMAGE DUP UNSET"}
        )
        env = {"APP_IMAGE": "registry.local/app:1", "DUP": "alpine:3"}
        assert resolve_images(settings, env) == ["alpine:3", "registry.local/app:1"]
