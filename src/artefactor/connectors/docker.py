"""
Docker Engine API client.

Talks to the local engine over its HTTP API (unix socket by default,
DOCKER_HOST when set). Only the handful of image endpoints the save and
publish flows need are implemented:
- POST /images/create      pull
- GET  /images/get         save to a tar file
- POST /images/load        load from a tar file
- POST /images/{name}/tag  retag
- POST /images/{name}/push push
- GET  /images/{name}/json inspect repo digests
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any
from urllib.parse import quote, urlsplit

import aiohttp
import orjson

from artefactor.cache.codec import split_reference
from artefactor.connectors.auth import encode_auth
from artefactor.errors import RuntimeClientError

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"

_IMAGE_ID_RE = re.compile(r"sha256:[0-9a-f]{64}")
_ANONYMOUS_AUTH = encode_auth("", "", "")
_CHUNK_SIZE = 1024 * 1024


def _image_path(name: str) -> str:
    return quote(name, safe="/:@")


class DockerEngineClient:
    """Async client for the Docker Engine image API."""

    def __init__(
        self,
        docker_host: str | None = None,
        request_timeout_s: float | None = None,
    ) -> None:
        """
        Initialize the engine client.

        Args:
            docker_host: Engine address (unix://, tcp:// or http(s)://).
                Defaults to DOCKER_HOST, then the local unix socket.
            request_timeout_s: Total timeout per request; None waits forever
                (image transfers can be very large).
        """
        self._docker_host = docker_host or os.environ.get("DOCKER_HOST") or DEFAULT_DOCKER_HOST
        self._request_timeout_s = request_timeout_s
        self._session: aiohttp.ClientSession | None = None
        self._base_url, self._socket_path = self._parse_host(self._docker_host)

    @staticmethod
    def _parse_host(docker_host: str) -> tuple[str, str | None]:
        parts = urlsplit(docker_host)
        if parts.scheme == "unix":
            return "http://localhost", parts.path
        if parts.scheme == "tcp":
            return f"http://{parts.netloc}", None
        if parts.scheme in ("http", "https"):
            return f"{parts.scheme}://{parts.netloc}", None
        msg = f"Unsupported docker host: {docker_host}"
        raise ValueError(msg)

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._request_timeout_s)
            connector = (
                aiohttp.UnixConnector(path=self._socket_path) if self._socket_path else None
            )
            self._session = aiohttp.ClientSession(timeout=timeout, connector=connector)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> DockerEngineClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def _raise_for_status(self, response: aiohttp.ClientResponse, action: str) -> None:
        if response.status < 400:
            return
        body = await response.text()
        message = body
        try:
            message = orjson.loads(body).get("message", body)
        except (orjson.JSONDecodeError, AttributeError):
            pass
        msg = f"{action} failed (HTTP {response.status}): {message}"
        raise RuntimeClientError(msg)

    async def _read_messages(
        self, response: aiohttp.ClientResponse, action: str
    ) -> list[dict[str, Any]]:
        """Read a JSON message stream, raising on the first error message."""
        messages: list[dict[str, Any]] = []
        last_status = ""
        async for raw in response.content:
            line = raw.strip()
            if not line:
                continue
            message = orjson.loads(line)
            error = message.get("error") or (message.get("errorDetail") or {}).get("message")
            if error:
                msg = f"{action} failed: {error}"
                raise RuntimeClientError(msg)
            status = message.get("status", "")
            if status and status != last_status:
                logger.debug(
                    "Engine progress",
                    extra={"action": action, "status": status, "id": message.get("id", "")},
                )
                last_status = status
            messages.append(message)
        return messages

    async def pull(self, ref: str, auth: str = "") -> None:
        """Pull an image reference (tag or digest) from its registry."""
        parsed = split_reference(ref)
        params = {"fromImage": parsed.name, "tag": parsed.digest or parsed.tag or "latest"}
        headers = {"X-Registry-Auth": auth or _ANONYMOUS_AUTH}

        logger.info("Pulling image", extra={"image": ref})
        session = await self._get_session()
        async with session.request(
            "POST", f"{self._base_url}/images/create", params=params, headers=headers
        ) as response:
            await self._raise_for_status(response, f"pull {ref}")
            await self._read_messages(response, f"pull {ref}")

    async def save(self, ref: str, dest_path: Path) -> Path:
        """Export an image as a tar archive at dest_path."""
        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Saving image", extra={"image": ref, "path": str(dest_path)})
        session = await self._get_session()
        async with session.request(
            "GET", f"{self._base_url}/images/get", params={"names": ref}
        ) as response:
            await self._raise_for_status(response, f"save {ref}")
            with dest_path.open("wb") as out:
                async for chunk in response.content.iter_chunked(_CHUNK_SIZE):
                    out.write(chunk)
        return dest_path

    async def load(self, archive_path: Path) -> list[str]:
        """
        Load an image archive.

        Returns:
            Every image id (``sha256:<hex>``) the engine reported, in order,
            without duplicates. Images saved by tag are usually reported by
            name only, so the list may be empty.
        """
        archive_path = Path(archive_path)
        if not archive_path.exists():
            msg = f"image archive {archive_path} does not exist"
            raise RuntimeClientError(msg)

        logger.info("Loading image", extra={"path": str(archive_path)})
        session = await self._get_session()
        with archive_path.open("rb") as payload:
            async with session.request(
                "POST",
                f"{self._base_url}/images/load",
                params={"quiet": "1"},
                headers={"Content-Type": "application/x-tar"},
                data=payload,
            ) as response:
                await self._raise_for_status(response, f"load {archive_path}")
                messages = await self._read_messages(response, f"load {archive_path}")

        ids: list[str] = []
        for message in messages:
            for image_id in _IMAGE_ID_RE.findall(message.get("stream", "")):
                if image_id not in ids:
                    ids.append(image_id)
        return ids

    async def tag(self, source: str, repo: str, tag: str) -> None:
        """Tag source (name or image id) as repo:tag."""
        logger.info("Tagging image", extra={"source": source, "target": f"{repo}:{tag}"})
        session = await self._get_session()
        async with session.request(
            "POST",
            f"{self._base_url}/images/{_image_path(source)}/tag",
            params={"repo": repo, "tag": tag},
        ) as response:
            await self._raise_for_status(response, f"tag {source} as {repo}:{tag}")

    async def push(self, repo: str, tag: str, auth: str = "") -> str | None:
        """
        Push repo:tag to its registry.

        Returns:
            The manifest digest reported by the registry, if any.
        """
        headers = {"X-Registry-Auth": auth or _ANONYMOUS_AUTH}
        logger.info("Pushing image", extra={"image": f"{repo}:{tag}"})
        session = await self._get_session()
        async with session.request(
            "POST",
            f"{self._base_url}/images/{_image_path(repo)}/push",
            params={"tag": tag},
            headers=headers,
        ) as response:
            await self._raise_for_status(response, f"push {repo}:{tag}")
            messages = await self._read_messages(response, f"push {repo}:{tag}")

        digest = None
        for message in messages:
            aux = message.get("aux") or {}
            if aux.get("Digest"):
                digest = aux["Digest"]
        return digest

    async def inspect_digests(self, image_id: str) -> list[str]:
        """Return the RepoDigests recorded for an image."""
        session = await self._get_session()
        async with session.request(
            "GET", f"{self._base_url}/images/{_image_path(image_id)}/json"
        ) as response:
            await self._raise_for_status(response, f"inspect {image_id}")
            data = orjson.loads(await response.read())
        return list(data.get("RepoDigests") or [])
