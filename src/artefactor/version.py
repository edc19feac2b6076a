"""Package version."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

__version__ = "0.1.0"


def get_version() -> str:
    """Installed distribution version, or the source tree version."""
    try:
        return version("artefactor")
    except PackageNotFoundError:
        return __version__
