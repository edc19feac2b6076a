"""Artifact cache: checksum ledger and artifact file naming.

- ChecksumLedger: persisted checksums.txt for one archive directory
- encode/decode: reversible image reference <-> file name codec
"""

from artefactor.cache.codec import (
    BINMARK_EXT,
    GIT_EXT,
    GIT_HOME_EXT,
    IMAGE_EXT,
    ImageReference,
    decode,
    encode,
    retarget,
    split_reference,
)
from artefactor.cache.ledger import (
    LEDGER_FILE_NAME,
    ChecksumLedger,
    LedgerEntry,
    compute_file_sha256,
    generate_checksums_txt,
    parse_checksums_txt,
)

__all__ = [
    "BINMARK_EXT",
    "GIT_EXT",
    "GIT_HOME_EXT",
    "IMAGE_EXT",
    "LEDGER_FILE_NAME",
    "ChecksumLedger",
    "ImageReference",
    "LedgerEntry",
    "compute_file_sha256",
    "decode",
    "encode",
    "generate_checksums_txt",
    "parse_checksums_txt",
    "retarget",
    "split_reference",
]
