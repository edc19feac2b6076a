"""Registry authentication for the container runtime.

Credentials are only passed through: explicit username/password when given,
otherwise whatever the local docker configuration provides for the image's
registry (an ``auths`` entry or the configured credential helper).
"""

from __future__ import annotations

import base64
import logging
import os
import subprocess
from pathlib import Path
from typing import Any

import orjson

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "https://index.docker.io/v1/"


def registry_for(image: str) -> str:
    """Return the registry host an image reference points at.

    The first path segment is a registry only when it looks like a host
    (contains a dot or a port, or is localhost); otherwise the image lives on
    Docker Hub.
    """
    first, slash, _ = image.partition("/")
    if slash and ("." in first or ":" in first or first == "localhost"):
        return first
    return DEFAULT_REGISTRY


def encode_auth(username: str, password: str, server_address: str) -> str:
    """Encode credentials as an X-Registry-Auth header value."""
    payload = orjson.dumps(
        {"username": username, "password": password, "serveraddress": server_address}
    )
    return base64.urlsafe_b64encode(payload).decode("ascii")


def docker_config_path() -> Path:
    """Location of the docker client configuration file."""
    config_dir = os.environ.get("DOCKER_CONFIG")
    if config_dir:
        return Path(config_dir) / "config.json"
    return Path.home() / ".docker" / "config.json"


def _load_docker_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = orjson.loads(path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        logger.warning("Cannot read docker config", extra={"path": str(path), "error": str(e)})
        return {}
    return data if isinstance(data, dict) else {}


def _from_auths(config: dict[str, Any], registry: str) -> tuple[str, str] | None:
    for key, value in (config.get("auths") or {}).items():
        host = key.removeprefix("https://").removeprefix("http://").split("/")[0]
        if key != registry and host != registry:
            continue
        encoded = value.get("auth") if isinstance(value, dict) else None
        if not encoded:
            continue
        decoded = base64.b64decode(encoded).decode("utf-8")
        username, _, password = decoded.partition(":")
        logger.debug("Found auth for registry", extra={"registry": registry})
        return username, password
    return None


def _from_helper(helper: str, registry: str) -> tuple[str, str] | None:
    program = f"docker-credential-{helper}"
    try:
        result = subprocess.run(
            [program, "get"],
            input=registry,
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        logger.warning(
            "Credential helper lookup failed",
            extra={"helper": program, "registry": registry, "error": str(e)},
        )
        return None
    data = orjson.loads(result.stdout)
    return data.get("Username", ""), data.get("Secret", "")


def resolve_auth(
    image: str,
    username: str = "",
    password: str = "",
    *,
    config_path: Path | None = None,
) -> str:
    """Build the X-Registry-Auth value for an image.

    Args:
        image: Image reference being pulled or pushed.
        username: Explicit registry username (overrides docker config).
        password: Explicit registry password.
        config_path: Docker config file (default: ~/.docker/config.json).

    Returns:
        Encoded auth header value, or an empty string for anonymous access.
    """
    registry = registry_for(image)
    if username:
        return encode_auth(username, password, registry)

    config = _load_docker_config(config_path or docker_config_path())
    creds = _from_auths(config, registry)
    if creds is None:
        helper = (config.get("credHelpers") or {}).get(registry) or config.get("credsStore")
        if helper:
            creds = _from_helper(helper, registry)
    if creds is None:
        return ""
    return encode_auth(creds[0], creds[1], registry)
