"""Tar packing/unpacking and the refresh-safe restore protocol."""

from artefactor.archive.staging import (
    STAGING_SUFFIX,
    is_tree_subpath,
    restore_tree,
    staging_dir_for,
)
from artefactor.archive.tarball import archive_prefix, build_archive, extract_archive

__all__ = [
    "STAGING_SUFFIX",
    "archive_prefix",
    "build_archive",
    "extract_archive",
    "is_tree_subpath",
    "restore_tree",
    "staging_dir_for",
]
