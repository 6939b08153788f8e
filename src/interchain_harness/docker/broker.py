"""
Container broker.

The only component that talks to the container runtime. Every network,
volume and container it creates is registered with the supervisor before the
handle is returned, so a failure at any later point still leaves nothing
behind once the supervisor closes.

Resources carry the label `interchain-harness.test=<test name>` so orphans
from a crashed run can be found with `docker ps --filter label=...`.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import re
import shlex
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import urlparse

from interchain_harness import config
from interchain_harness.errors import (
    ConfigInvalidError,
    HarnessError,
    ImageUnavailableError,
    NotFoundError,
)
from interchain_harness.lifecycle import Supervisor
from interchain_harness.metrics import registry as metrics

from .archive import pack_file, unpack_file
from .client import DockerClient
from .stream import StreamType

logger = logging.getLogger(__name__)

TEST_LABEL = "interchain-harness.test"
"""Label key attached to every resource, valued with the test name."""

STDIN_PATH = "/tmp"
"""Directory inside containers that receives stdin payloads."""


@dataclass(slots=True)
class _RunCounter:
    """
    Process-wide monotonic counter for network names.

    Two interchains built by the same test in one process still get distinct
    networks.
    """

    _value: int = field(default=0)
    """Last value handed out."""

    _lock: threading.Lock = field(default_factory=threading.Lock)
    """Guards concurrent access from tests running in threads."""

    def next(self) -> int:
        with self._lock:
            self._value += 1
            return self._value


_RUN_COUNTER = _RunCounter()


def slugify(name: str, max_length: int = 40) -> str:
    """Lowercase a test name and reduce it to characters valid in resource names."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "test"


def split_reference(reference: str) -> tuple[str, str]:
    """
    Split an image reference into repository and tag.

    A colon before the last slash belongs to a registry port, not a tag.

    Raises:
        ImageUnavailableError: If the reference is empty or carries no tag.
    """
    repository, sep, tag = reference.rpartition(":")
    if not reference or not sep or "/" in tag or not repository:
        raise ImageUnavailableError(
            f"Invalid image reference '{reference}': expected repository:tag",
            component="broker",
        )
    return repository, tag


@dataclass(frozen=True, slots=True)
class Mount:
    """A named volume mounted into a container."""

    volume: str
    """Volume name."""

    target: str
    """Absolute path inside the container."""

    read_only: bool = False

    def bind(self) -> str:
        mode = "ro" if self.read_only else "rw"
        return f"{self.volume}:{self.target}:{mode}"


@dataclass(slots=True)
class ContainerHandle:
    """Reference to a container created by the broker."""

    id: str
    """Engine container id."""

    name: str
    """Engine container name (unique across runs)."""

    hostname: str
    """Hostname on the interchain network. Other containers resolve it."""

    image: str
    """Image reference the container was created from."""

    removed: bool = False
    """Set once the container is gone."""

    @property
    def short_id(self) -> str:
        return self.id[:12]


@dataclass(frozen=True, slots=True)
class ExecResult:
    """Outcome of a command run inside a container."""

    stdout: bytes
    stderr: bytes
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def text(self) -> str:
        """Stdout decoded as UTF-8."""
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def error_text(self) -> str:
        """Stderr decoded as UTF-8."""
        return self.stderr.decode("utf-8", errors="replace")


class LineSink(Protocol):
    """Destination for streamed container output."""

    def write(self, text: str) -> None: ...


def stdin_wrapper(argv: Sequence[str], stdin_file: str) -> list[str]:
    """
    Wrap argv so the process reads its stdin from a file.

    The file is unlinked once opened, so payloads do not pile up in
    long-lived containers.
    """
    path = shlex.quote(stdin_file)
    script = f'{{ rm -f {path} 2>/dev/null; exec "$@"; }} < {path}'
    return ["sh", "-c", script, "sh", *argv]


@dataclass(slots=True)
class ContainerBroker:
    """
    Creates and drives containers for one interchain.

    One broker serves one test. All of its resources live on a single bridge
    network named after the test.
    """

    client: DockerClient
    """Engine API client."""

    supervisor: Supervisor
    """Owner of every resource the broker creates."""

    test_name: str
    """Test name used in labels and resource names."""

    network_id: str | None = None
    """Network id. Supplied externally or set by ensure_network()."""

    network_name: str = ""
    """Network name; also the prefix of every container and volume name."""

    _owns_network: bool = field(default=False, repr=False)
    """Whether the broker created the network (and must remove it)."""

    _network_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    """Serializes ensure_network()."""

    _pull_locks: dict[str, asyncio.Lock] = field(default_factory=dict, repr=False)
    """One lock per image reference so concurrent chains pull once."""

    _stdin_counter: itertools.count = field(default_factory=itertools.count, repr=False)

    def __post_init__(self) -> None:
        if not self.test_name:
            raise ConfigInvalidError("test name must be non-empty", component="broker")
        if not self.network_name:
            self.network_name = f"ih-{slugify(self.test_name)}-{_RUN_COUNTER.next()}"

    @property
    def labels(self) -> dict[str, str]:
        return {TEST_LABEL: self.test_name}

    @property
    def host_address(self) -> str:
        """Address at which host-published ports are reachable."""
        if config.DOCKER_HOST.startswith("unix://"):
            return "127.0.0.1"
        return urlparse(config.DOCKER_HOST).hostname or "127.0.0.1"

    # -------------------------------------------------------------------------
    # Network and volumes
    # -------------------------------------------------------------------------

    async def ensure_network(self) -> str:
        """
        Create the interchain network once.

        An externally supplied network id is reused and never removed.
        """
        async with self._network_lock:
            if self.network_id is not None:
                return self.network_id

            network_id = await self.client.create_network(self.network_name, self.labels)
            self.network_id = network_id
            self._owns_network = True
            self.supervisor.register(
                f"network {self.network_name}", lambda: self._remove_network(network_id)
            )
            logger.info("Created network %s", self.network_name)
            return network_id

    async def _remove_network(self, network_id: str) -> None:
        try:
            await self.client.remove_network(network_id)
        except NotFoundError:
            return

    async def create_volume(self, name: str) -> str:
        """Create a named volume scoped to this interchain."""
        volume = await self.client.create_volume(f"{self.network_name}-{name}", self.labels)
        self.supervisor.register(f"volume {volume}", lambda: self._remove_volume(volume))
        return volume

    async def _remove_volume(self, volume: str) -> None:
        if config.KEEP_CONTAINERS:
            return
        try:
            await self.client.remove_volume(volume)
        except NotFoundError:
            return

    async def set_volume_owner(self, volume: str, image: str, uid_gid: str) -> None:
        """
        Hand a fresh volume to the user a node image runs as.

        Volumes are created root-owned; images usually run unprivileged.
        """
        if not uid_gid or uid_gid in {"0", "0:0"}:
            return
        result = await self.run(
            image,
            ["chown", "-R", uid_gid, "/mnt/volume"],
            mounts=[Mount(volume, "/mnt/volume")],
            entrypoint=[],
            user="0",
            name="chown",
        )
        if not result.ok:
            raise HarnessError(
                f"chown of volume {volume} failed: {result.error_text.strip()}",
                component="broker",
            )

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    async def pull(self, reference: str) -> None:
        """
        Make an image available locally.

        Raises:
            ImageUnavailableError: If the registry does not have the image.
        """
        repository, tag = split_reference(reference)
        lock = self._pull_locks.setdefault(reference, asyncio.Lock())
        async with lock:
            if await self.client.image_exists(reference):
                return
            logger.info("Pulling image %s", reference)
            try:
                await self.client.pull_image(repository, tag)
            except NotFoundError as exc:
                raise ImageUnavailableError(
                    f"Image {reference} is not available: {exc.message}", component="broker"
                ) from exc

    # -------------------------------------------------------------------------
    # Containers
    # -------------------------------------------------------------------------

    async def create(
        self,
        image: str,
        cmd: Sequence[str] | None = None,
        *,
        hostname: str,
        env: Mapping[str, str] | None = None,
        mounts: Sequence[Mount] = (),
        entrypoint: Sequence[str] | None = None,
        ports: Sequence[str] = (),
        user: str | None = None,
    ) -> ContainerHandle:
        """
        Create (but do not start) a container on the interchain network.

        Args:
            image: Image reference.
            cmd: Command, appended to the entrypoint.
            hostname: Name other containers use to reach this one.
            env: Environment variables.
            mounts: Volumes to mount.
            entrypoint: Override for the image entrypoint. An empty list clears it.
            ports: Container ports such as "26657/tcp" to publish on random host ports.
            user: User to run as ("uid:gid").
        """
        await self.ensure_network()
        name = f"{self.network_name}-{hostname}"
        spec: dict[str, object] = {
            "Image": image,
            "Hostname": hostname,
            "Env": [f"{key}={value}" for key, value in (env or {}).items()],
            "Labels": self.labels,
            "ExposedPorts": {port: {} for port in ports},
            "HostConfig": {
                "Binds": [mount.bind() for mount in mounts],
                "NetworkMode": self.network_name,
                "PortBindings": {
                    port: [{"HostIp": "0.0.0.0", "HostPort": ""}] for port in ports
                },
            },
            "NetworkingConfig": {
                "EndpointsConfig": {self.network_name: {"Aliases": [hostname]}},
            },
        }
        if cmd is not None:
            spec["Cmd"] = list(cmd)
        if entrypoint is not None:
            spec["Entrypoint"] = list(entrypoint)
        if user:
            spec["User"] = user

        container_id = await self.client.create_container(name, spec)
        handle = ContainerHandle(id=container_id, name=name, hostname=hostname, image=image)
        self.supervisor.register(f"container {name}", lambda: self.remove(handle))
        metrics.containers_created.inc()
        logger.debug("Created container %s (%s)", name, handle.short_id)
        return handle

    async def start(self, handle: ContainerHandle) -> None:
        await self.client.start_container(handle.id)

    async def stop(self, handle: ContainerHandle, grace: int = config.STOP_GRACE_PERIOD) -> None:
        """Stop a container. Stopping a removed container is a no-op."""
        if handle.removed:
            return
        try:
            await self.client.stop_container(handle.id, grace)
        except NotFoundError:
            handle.removed = True

    async def remove(self, handle: ContainerHandle) -> None:
        """
        Remove a container. Idempotent.

        With HARNESS_KEEP_CONTAINERS set, containers are only stopped.
        """
        if handle.removed:
            return
        if config.KEEP_CONTAINERS:
            await self.stop(handle)
            return
        try:
            await self.client.remove_container(handle.id)
        except NotFoundError:
            pass
        handle.removed = True
        metrics.containers_removed.inc()

    async def host_port(self, handle: ContainerHandle, port: str) -> int:
        """
        Host port a container port is published on.

        Raises:
            NotFoundError: If the port is not published.
        """
        details = await self.client.inspect_container(handle.id)
        bindings = (details.get("NetworkSettings", {}).get("Ports") or {}).get(port)
        if not bindings:
            raise NotFoundError(
                f"Port {port} is not published by {handle.name}", component="broker"
            )
        return int(bindings[0]["HostPort"])

    async def is_running(self, handle: ContainerHandle) -> bool:
        details = await self.client.inspect_container(handle.id)
        return bool(details.get("State", {}).get("Running"))

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def exec(
        self,
        handle: ContainerHandle,
        argv: Sequence[str],
        *,
        stdin: bytes | None = None,
        env: Mapping[str, str] | None = None,
        workdir: str | None = None,
        user: str | None = None,
    ) -> ExecResult:
        """
        Run a command in a running container and wait for it.

        A non-zero exit code is returned, not raised; callers decide what a
        failure means for their operation.
        """
        command = list(argv)
        if stdin is not None:
            stdin_file = f"{STDIN_PATH}/.ih-stdin-{next(self._stdin_counter)}"
            await self.put_file(handle, stdin_file, stdin, mode=0o600)
            command = stdin_wrapper(command, stdin_file)

        started = time.monotonic()
        exec_id = await self.client.exec_create(
            handle.id,
            command,
            env=[f"{key}={value}" for key, value in (env or {}).items()],
            workdir=workdir,
            user=user,
        )
        stdout, stderr = await self.client.exec_start(exec_id)
        details = await self.client.exec_inspect(exec_id)
        metrics.exec_duration.observe(time.monotonic() - started)

        exit_code = details.get("ExitCode")
        result = ExecResult(
            stdout=stdout, stderr=stderr, exit_code=-1 if exit_code is None else int(exit_code)
        )
        logger.debug(
            "exec %s on %s -> %d", shlex.join(argv[:3]), handle.name, result.exit_code
        )
        return result

    async def run(
        self,
        image: str,
        argv: Sequence[str],
        *,
        mounts: Sequence[Mount] = (),
        env: Mapping[str, str] | None = None,
        stdin: bytes | None = None,
        entrypoint: Sequence[str] | None = None,
        user: str | None = None,
        name: str = "job",
    ) -> ExecResult:
        """
        Run a one-shot job container to completion and remove it.

        Used for commands that must not run inside a node, such as relayer CLI
        invocations against the relayer's home volume.
        """
        hostname = f"{name}-{next(self._stdin_counter)}"
        command = list(argv)
        job_entrypoint = None if entrypoint is None else list(entrypoint)
        if stdin is not None:
            stdin_file = f"{STDIN_PATH}/.ih-stdin"
            command = stdin_wrapper([*(job_entrypoint or []), *command], stdin_file)
            job_entrypoint = []

        handle = await self.create(
            image,
            command,
            hostname=hostname,
            env=env,
            mounts=mounts,
            entrypoint=job_entrypoint,
            user=user,
        )
        try:
            if stdin is not None:
                await self.put_file(handle, stdin_file, stdin, mode=0o644)
            started = time.monotonic()
            await self.start(handle)
            exit_code = await self.client.wait_container(handle.id)
            stdout, stderr = await self.client.logs(handle.id)
            metrics.exec_duration.observe(time.monotonic() - started)
        finally:
            await self.remove(handle)

        return ExecResult(stdout=stdout, stderr=stderr, exit_code=exit_code)

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    async def put_file(
        self, handle: ContainerHandle, path: str, data: bytes, mode: int = 0o644
    ) -> None:
        """Write a file into a container (running or not)."""
        directory, _, filename = path.rpartition("/")
        await self.client.put_archive(handle.id, directory or "/", pack_file(filename, data, mode))

    async def get_file(self, handle: ContainerHandle, path: str) -> bytes:
        """Read a file from a container."""
        archive = await self.client.get_archive(handle.id, path)
        return unpack_file(archive, path)

    # -------------------------------------------------------------------------
    # Logs
    # -------------------------------------------------------------------------

    async def log_tail(self, handle: ContainerHandle, lines: int = 100) -> list[str]:
        """
        Last lines of a container's combined output.

        Returns an empty list if the logs cannot be read; the tail is only
        ever attached to another error.
        """
        try:
            stdout, stderr = await self.client.logs(handle.id, tail=lines)
        except HarnessError as exc:
            logger.debug("No log tail for %s: %s", handle.name, exc)
            return []
        text = (stdout + stderr).decode("utf-8", errors="replace")
        return text.splitlines()[-lines:]

    def stream_logs(self, handle: ContainerHandle, sink: LineSink) -> asyncio.Task[None]:
        """
        Follow a container's output into a sink in the background.

        The task is cancelled by the supervisor.
        """

        async def follow() -> None:
            try:
                async for frame in self.client.follow_logs(handle.id):
                    prefix = "ERR " if frame.stream == StreamType.STDERR else ""
                    for line in frame.data.decode("utf-8", errors="replace").splitlines():
                        sink.write(f"[{handle.hostname}] {prefix}{line}")
            except HarnessError as exc:
                logger.debug("Log stream for %s ended: %s", handle.name, exc)

        task = asyncio.create_task(follow(), name=f"logs-{handle.name}")

        async def cancel() -> None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        self.supervisor.register(f"log stream {handle.name}", cancel)
        return task
