"""
Docker Engine API client.

A thin asynchronous wrapper over the engine's HTTP API using httpx. The engine
listens on a unix socket by default, which httpx reaches through a UDS
transport. Only the endpoints the harness needs are exposed.

Failures are translated at this boundary:

- HTTP 404 -> NotFoundError
- HTTP 409 -> ConflictError
- request timeouts -> HarnessTimeoutError
- connection and transport errors -> RuntimeUnavailableError
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any

import httpx

from interchain_harness import config
from interchain_harness.errors import (
    ConflictError,
    HarnessError,
    HarnessTimeoutError,
    NotFoundError,
    RuntimeUnavailableError,
)

from .stream import FrameDecoder, StreamFrame, demultiplex

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0
"""Per-request timeout in seconds. Image pulls stream for a long time."""

COMPONENT = "broker"


def _base_url(docker_host: str, api_version: str) -> tuple[str, httpx.AsyncBaseTransport | None]:
    """Derive the base URL and transport for a DOCKER_HOST value."""
    if docker_host.startswith("unix://"):
        socket_path = docker_host.removeprefix("unix://")
        return f"http://docker/{api_version}", httpx.AsyncHTTPTransport(uds=socket_path)

    host = docker_host.removeprefix("tcp://").removeprefix("http://")
    return f"http://{host}/{api_version}", None


class DockerClient:
    """
    Asynchronous Docker Engine API client.

    The underlying HTTP client is created on first use, so constructing a
    DockerClient never touches the runtime.
    """

    def __init__(
        self,
        docker_host: str = config.DOCKER_HOST,
        api_version: str = config.DOCKER_API_VERSION,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            docker_host: Engine endpoint (unix:// or tcp://).
            api_version: API version prefix, e.g. "v1.43".
            timeout: Default request timeout in seconds.
            transport: Explicit transport, mainly for tests.
        """
        base_url, default_transport = _base_url(docker_host, api_version)
        self._base_url = base_url
        self._transport = transport or default_transport
        self._timeout = timeout
        self._http: httpx.AsyncClient | None = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self._base_url,
                transport=self._transport,
                timeout=self._timeout,
            )
        return self._http

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # -------------------------------------------------------------------------
    # Request plumbing
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
        content: bytes | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: Any = httpx.USE_CLIENT_DEFAULT,
        ok_statuses: tuple[int, ...] = (),
    ) -> httpx.Response:
        """
        Send a request and map failures to harness errors.

        Args:
            timeout: Seconds, or None for no limit. Defaults to the client's
                per-request timeout.
            ok_statuses: Non-2xx statuses the caller treats as success
                (e.g. 304 "already started").
        """
        try:
            response = await self._client().request(
                method,
                path,
                params=params,
                json=json_body,
                content=content,
                headers=headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise HarnessTimeoutError(
                f"{method} {path} timed out", component=COMPONENT
            ) from exc
        except httpx.TransportError as exc:
            raise RuntimeUnavailableError(
                f"Container runtime unreachable at {self._base_url}: {exc}", component=COMPONENT
            ) from exc

        if response.is_success or response.status_code in ok_statuses:
            return response

        raise self._status_error(method, path, response)

    @staticmethod
    def _status_error(method: str, path: str, response: httpx.Response) -> HarnessError:
        """Build the harness error matching an engine error response."""
        try:
            message = response.json().get("message", response.text)
        except (json.JSONDecodeError, AttributeError):
            message = response.text

        detail = f"{method} {path} -> {response.status_code}: {message}"
        if response.status_code == 404:
            return NotFoundError(detail, component=COMPONENT)
        if response.status_code == 409:
            return ConflictError(detail, component=COMPONENT)
        return HarnessError(detail, component=COMPONENT)

    # -------------------------------------------------------------------------
    # System
    # -------------------------------------------------------------------------

    async def ping(self) -> bool:
        """Check that the engine answers. Raises RuntimeUnavailableError otherwise."""
        response = await self._request("GET", "/_ping")
        return response.text.strip() == "OK"

    async def list_labelled(self, kind: str, label: str) -> list[str]:
        """
        Names of the containers, networks or volumes carrying `label`.

        Args:
            kind: "containers", "networks" or "volumes".
            label: A `key` or `key=value` label filter.
        """
        path = {"containers": "/containers/json", "networks": "/networks", "volumes": "/volumes"}
        if kind not in path:
            raise ValueError(f"cannot list {kind}")
        params: dict[str, str] = {"filters": json.dumps({"label": [label]})}
        if kind == "containers":
            params["all"] = "true"
        body = (await self._request("GET", path[kind], params=params)).json()

        if kind == "volumes":
            return sorted(volume["Name"] for volume in body.get("Volumes") or [])
        if kind == "containers":
            return sorted(container["Names"][0].lstrip("/") for container in body)
        return sorted(network["Name"] for network in body)

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    async def image_exists(self, reference: str) -> bool:
        """Whether the image is present locally."""
        try:
            await self._request("GET", f"/images/{reference}/json")
        except NotFoundError:
            return False
        return True

    async def pull_image(self, repository: str, tag: str) -> None:
        """
        Pull an image and wait for the pull to finish.

        The engine streams JSON progress objects; a pull failure is reported
        as an "error" object inside a 200 response.
        """
        response = await self._request(
            "POST",
            "/images/create",
            params={"fromImage": repository, "tag": tag},
            timeout=None,
        )
        for line in response.text.splitlines():
            if not line.strip():
                continue
            progress = json.loads(line)
            if "error" in progress:
                raise NotFoundError(
                    f"pull {repository}:{tag} failed: {progress['error']}", component=COMPONENT
                )

    # -------------------------------------------------------------------------
    # Networks and volumes
    # -------------------------------------------------------------------------

    async def create_network(self, name: str, labels: Mapping[str, str]) -> str:
        """Create a user-defined bridge network and return its id."""
        response = await self._request(
            "POST",
            "/networks/create",
            json_body={
                "Name": name,
                "Driver": "bridge",
                "CheckDuplicate": True,
                "Labels": dict(labels),
            },
        )
        return response.json()["Id"]

    async def remove_network(self, network_id: str) -> None:
        """Remove a network."""
        await self._request("DELETE", f"/networks/{network_id}")

    async def create_volume(self, name: str, labels: Mapping[str, str]) -> str:
        """Create a named volume and return its name."""
        response = await self._request(
            "POST",
            "/volumes/create",
            json_body={"Name": name, "Labels": dict(labels)},
        )
        return response.json()["Name"]

    async def remove_volume(self, name: str) -> None:
        """Remove a volume."""
        await self._request("DELETE", f"/volumes/{name}", params={"force": "true"})

    # -------------------------------------------------------------------------
    # Containers
    # -------------------------------------------------------------------------

    async def create_container(self, name: str, spec: Mapping[str, Any]) -> str:
        """Create a container from an engine container spec and return its id."""
        response = await self._request(
            "POST", "/containers/create", params={"name": name}, json_body=dict(spec)
        )
        for warning in response.json().get("Warnings") or []:
            logger.warning("Container %s: %s", name, warning)
        return response.json()["Id"]

    async def start_container(self, container_id: str) -> None:
        """Start a container. Starting a running container succeeds."""
        await self._request("POST", f"/containers/{container_id}/start", ok_statuses=(304,))

    async def stop_container(self, container_id: str, grace_seconds: int) -> None:
        """Stop a container, killing it after the grace period."""
        await self._request(
            "POST",
            f"/containers/{container_id}/stop",
            params={"t": grace_seconds},
            timeout=grace_seconds + self._timeout,
            ok_statuses=(304,),
        )

    async def wait_container(self, container_id: str, timeout: float | None = None) -> int:
        """
        Block until the container exits and return its exit code.

        With no `timeout` the call waits as long as the container runs.
        """
        response = await self._request(
            "POST", f"/containers/{container_id}/wait", timeout=timeout
        )
        return int(response.json()["StatusCode"])

    async def remove_container(self, container_id: str) -> None:
        """Force-remove a container and its anonymous volumes."""
        await self._request(
            "DELETE",
            f"/containers/{container_id}",
            params={"force": "true", "v": "true"},
        )

    async def inspect_container(self, container_id: str) -> dict[str, Any]:
        """Return the engine's inspection document for a container."""
        response = await self._request("GET", f"/containers/{container_id}/json")
        return response.json()

    async def logs(self, container_id: str, tail: int | str = "all") -> tuple[bytes, bytes]:
        """Return (stdout, stderr) collected so far."""
        response = await self._request(
            "GET",
            f"/containers/{container_id}/logs",
            params={"stdout": "1", "stderr": "1", "tail": str(tail)},
        )
        return demultiplex(response.content)

    async def follow_logs(self, container_id: str) -> AsyncIterator[StreamFrame]:
        """Yield log frames as the container produces them until it exits."""
        decoder = FrameDecoder()
        try:
            async with self._client().stream(
                "GET",
                f"/containers/{container_id}/logs",
                params={"stdout": "1", "stderr": "1", "follow": "1"},
                timeout=None,
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise self._status_error("GET", "logs", response)
                async for chunk in response.aiter_bytes():
                    for frame in decoder.feed(chunk):
                        yield frame
        except httpx.TransportError as exc:
            raise RuntimeUnavailableError(
                f"Log stream for {container_id[:12]} interrupted: {exc}", component=COMPONENT
            ) from exc

    # -------------------------------------------------------------------------
    # Exec
    # -------------------------------------------------------------------------

    async def exec_create(
        self,
        container_id: str,
        argv: list[str],
        env: list[str] | None = None,
        workdir: str | None = None,
        user: str | None = None,
    ) -> str:
        """Create an exec instance and return its id."""
        body: dict[str, Any] = {
            "AttachStdout": True,
            "AttachStderr": True,
            "Cmd": argv,
        }
        if env:
            body["Env"] = env
        if workdir:
            body["WorkingDir"] = workdir
        if user:
            body["User"] = user
        response = await self._request(
            "POST", f"/containers/{container_id}/exec", json_body=body
        )
        return response.json()["Id"]

    async def exec_start(
        self, exec_id: str, timeout: Any = httpx.USE_CLIENT_DEFAULT
    ) -> tuple[bytes, bytes]:
        """Run an exec instance to completion and return (stdout, stderr)."""
        response = await self._request(
            "POST",
            f"/exec/{exec_id}/start",
            json_body={"Detach": False, "Tty": False},
            timeout=timeout,
        )
        return demultiplex(response.content)

    async def exec_inspect(self, exec_id: str) -> dict[str, Any]:
        """Return the exec instance document, including ExitCode."""
        response = await self._request("GET", f"/exec/{exec_id}/json")
        return response.json()

    # -------------------------------------------------------------------------
    # Archive
    # -------------------------------------------------------------------------

    async def put_archive(self, container_id: str, directory: str, archive: bytes) -> None:
        """Extract a tar archive into a directory of the container filesystem."""
        await self._request(
            "PUT",
            f"/containers/{container_id}/archive",
            params={"path": directory},
            content=archive,
            headers={"Content-Type": "application/x-tar"},
        )

    async def get_archive(self, container_id: str, path: str) -> bytes:
        """Fetch a path from the container filesystem as a tar archive."""
        response = await self._request(
            "GET", f"/containers/{container_id}/archive", params={"path": path}
        )
        return response.content
