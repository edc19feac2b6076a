"""
Command line interface for artefactor.

Usage:
    artefactor save --docker-images "alpine:3.19 busybox@sha256:..." --git-repos .
    artefactor restore --source-dir /media/usb/downloads --dest-dir ~/src
    artefactor publish --docker-registry registry.local:5000
    artefactor clean
    artefactor update-image-vars --image-vars "APP_IMAGE DB_IMAGE" --docker-registry registry.local
    artefactor version

Every option can also be set with an ARTEFACTOR_<OPTION> environment
variable (e.g. ARTEFACTOR_ARCHIVE_DIR) or in a YAML file given with --config.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiohttp

from artefactor.config import ArtefactorSettings, env_name, settings_from_sources
from artefactor.connectors.backoff import BackoffConfig
from artefactor.connectors.docker import DockerEngineClient
from artefactor.connectors.git import GitRepository
from artefactor.connectors.web import HttpTransferClient
from artefactor.errors import ArtefactorError
from artefactor.logging_config import setup_logging
from artefactor.sync import clean, image_var_exports, publish, restore, save
from artefactor.version import get_version

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2


def _add_option(parser: argparse.ArgumentParser, name: str, help_text: str, **kwargs: Any) -> None:
    field = name.replace("-", "_")
    parser.add_argument(
        f"--{name}",
        dest=field,
        default=None,
        help=f"{help_text} (${env_name(field)})",
        **kwargs,
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--logs", action="store_true", default=argparse.SUPPRESS, help="Enable debug logs"
    )
    common.add_argument(
        "--json-logs", action="store_true", default=argparse.SUPPRESS, help="JSON log lines"
    )
    common.add_argument(
        "--config", type=Path, default=argparse.SUPPRESS, help="YAML file of option values"
    )

    parser = argparse.ArgumentParser(
        prog="artefactor",
        description="Saves docker images, git repos and web files to files, and restores them",
        parents=[common],
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    save_parser = sub.add_parser("save", parents=[common], help="save artefact(s)")
    _add_option(save_parser, "archive-dir", "a location to save artefacts to and publish from")
    _add_option(save_parser, "docker-images", "a whitespace separated list of docker images")
    _add_option(save_parser, "image-vars", "variables naming further images to save")
    _add_option(save_parser, "git-repos", "a whitespace separated list of local git repos")
    _add_option(save_parser, "web-files", "whitespace separated CSVs: url,filename,sha256[,true]")
    _add_option(save_parser, "target-platform", "the target platform in format [os]_[arch]")
    _add_option(save_parser, "docker-username", "registry username override")
    _add_option(save_parser, "docker-password", "registry password override")
    _add_option(save_parser, "docker-host", "docker engine address")
    _add_option(save_parser, "max-concurrency", "artefacts fetched in parallel", type=int)
    _add_option(save_parser, "download-retries", "retries per web download", type=int)

    restore_parser = sub.add_parser("restore", parents=[common], help="restore artefact(s)")
    _add_option(restore_parser, "source-dir", "a directory with all artefacts")
    _add_option(restore_parser, "dest-dir", "a directory to start the restore process from")

    publish_parser = sub.add_parser("publish", parents=[common], help="publish artefact(s)")
    _add_option(publish_parser, "archive-dir", "a directory where artefacts exist to publish from")
    _add_option(publish_parser, "docker-registry", "registry to publish to, e.g. registry.local")
    _add_option(publish_parser, "docker-username", "registry username override")
    _add_option(publish_parser, "docker-password", "registry password override")
    _add_option(publish_parser, "docker-host", "docker engine address")

    clean_parser = sub.add_parser("clean", parents=[common], help="remove unrecorded files")
    _add_option(clean_parser, "archive-dir", "a directory where artefacts exist")

    vars_parser = sub.add_parser(
        "update-image-vars", parents=[common], help="print image variables pointing at the registry"
    )
    _add_option(vars_parser, "image-vars", "variables specifying original image names")
    _add_option(vars_parser, "docker-registry", "where images have been published")

    sub.add_parser("version", parents=[common], help="print the version")
    return parser


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    fields = ArtefactorSettings.model_fields
    return {key: value for key, value in vars(args).items() if key in fields}


async def _run_save(settings: ArtefactorSettings) -> int:
    runtime = DockerEngineClient(settings.docker_host)
    transfer = HttpTransferClient(BackoffConfig(max_retries=settings.download_retries))
    try:
        report = await save(settings, runtime=runtime, vcs=GitRepository(), transfer=transfer)
    finally:
        await runtime.close()
        await transfer.close()
    for item in report.fetched:
        print(f"saved {item}")
    for item in report.kept:
        print(f"unchanged {item}")
    for path in report.removed:
        print(f"removed {path}")
    print("all artefacts correct and present")
    return EXIT_OK


async def _run_publish(settings: ArtefactorSettings) -> int:
    runtime = DockerEngineClient(settings.docker_host)
    try:
        report = await publish(
            settings.archive_dir,
            settings.docker_registry,
            runtime=runtime,
            username=settings.docker_username,
            password=settings.docker_password,
        )
    finally:
        await runtime.close()
    if not report.published:
        print("No images to publish")
    for image in report.published:
        print(f"Pushed image {image.target} successfully.")
    return EXIT_OK


def _run_restore(settings: ArtefactorSettings) -> int:
    report = restore(settings.source_dir, settings.dest_dir, vcs=GitRepository())
    if report is None:
        print(f"no git home repo archive found in {settings.source_dir}")
        return EXIT_OK
    for path in report.moved:
        print(f"restored {path}")
    print("All artefacts restored and checked")
    return EXIT_OK


def _dispatch(command: str, settings: ArtefactorSettings) -> int:
    if command == "save":
        return asyncio.run(_run_save(settings))
    if command == "publish":
        return asyncio.run(_run_publish(settings))
    if command == "restore":
        return _run_restore(settings)
    if command == "clean":
        for path in clean(settings.archive_dir):
            print(f"removing file {path}")
        return EXIT_OK
    if command == "update-image-vars":
        for line in image_var_exports(settings.image_vars, settings.docker_registry):
            print(line)
        return EXIT_OK
    msg = f"unknown command {command}"
    raise ValueError(msg)


def main(argv: Sequence[str] | None = None) -> int:
    """Run artefactor; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(
        level=logging.DEBUG if getattr(args, "logs", False) else logging.WARNING,
        json_format=getattr(args, "json_logs", False),
    )

    if args.command == "version":
        print(get_version())
        return EXIT_OK

    try:
        settings = settings_from_sources(
            file=getattr(args, "config", None), overrides=_overrides(args)
        )
    except (OSError, ValueError) as e:
        print(f"ERROR: invalid configuration: {e}", file=sys.stderr)
        return EXIT_USAGE

    try:
        return _dispatch(args.command, settings)
    except ArtefactorError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR
    except aiohttp.ClientError as e:
        print(f"ERROR: cannot reach service: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
