"""
Relayer driver base class.

A relayer owns a home volume holding its configuration and keys. Every CLI
command runs as a one-shot job container on that volume; the packet-relay
loop runs in one long-lived container started by start_relaying().

Path transitions go through `_transition`, which makes them idempotent and
records the first failure on the path. A failed path is never retried.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Any, ClassVar

from interchain_harness import config
from interchain_harness.chain import Chain, DockerImage
from interchain_harness.docker import ContainerBroker, ContainerHandle, ExecResult, LineSink, Mount
from interchain_harness.errors import ConfigInvalidError, HarnessError, RelayerStuckError
from interchain_harness.scenario.reporter import RelayerExecReporter

from .path import (
    ChannelInfo,
    CreateChannelOptions,
    CreateClientOptions,
    PathState,
    PendingPackets,
    RelayerPath,
)

logger = logging.getLogger(__name__)


def parse_json_lines(text: str) -> list[Any]:
    """Every line of `text` that parses as JSON, in order."""
    documents = []
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith(("{", "[")):
            continue
        try:
            documents.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return documents


class Relayer(ABC):
    """An IBC relayer driven through its CLI."""

    default_image: ClassVar[DockerImage]
    bin: ClassVar[str]
    home_dir: ClassVar[str]

    def __init__(
        self,
        name: str = "relayer",
        image: DockerImage | None = None,
        reporter: RelayerExecReporter | None = None,
    ) -> None:
        self.name = name
        self.image = image or self.default_image
        self.reporter = reporter

        self.chains: dict[str, Chain] = {}
        """Configured chains by chain id."""

        self.key_names: dict[str, str] = {}
        """Signing key used on each chain id."""

        self.paths: dict[str, RelayerPath] = {}

        self._broker: ContainerBroker | None = None
        self._volume = ""
        self._container: ContainerHandle | None = None
        self._log_sink: LineSink | None = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"

    @property
    def broker(self) -> ContainerBroker:
        if self._broker is None:
            raise RuntimeError(f"Relayer {self.name} is not initialized")
        return self._broker

    @property
    def mounts(self) -> list[Mount]:
        return [Mount(self._volume, self.home_dir)]

    def path(self, path_name: str) -> RelayerPath:
        try:
            return self.paths[path_name]
        except KeyError:
            raise ConfigInvalidError(
                f"relayer {self.name} has no path {path_name}", component="relayer"
            ) from None

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def initialize(self, broker: ContainerBroker, log_sink: LineSink | None = None) -> None:
        """Pull the image, create the home volume and run `init_home`."""
        self._broker = broker
        self._log_sink = log_sink
        await broker.pull(self.image.reference)
        self._volume = await broker.create_volume(self.name)
        await broker.set_volume_owner(self._volume, self.image.reference, self.image.uid_gid)
        await self.init_home()

    async def init_home(self) -> None:
        """Prepare an empty home volume."""

    async def exec(self, argv: Sequence[str], *, stdin: bytes | None = None) -> ExecResult:
        """Run a command in a one-shot container on the home volume."""
        started_at = datetime.now(UTC)
        error: BaseException | None = None
        result: ExecResult | None = None
        try:
            result = await self.broker.run(
                self.image.reference,
                argv,
                mounts=self.mounts,
                stdin=stdin,
                entrypoint=[],
                user=self.image.uid_gid or None,
                name=f"{self.name}-exec",
            )
            return result
        except HarnessError as exc:
            error = exc
            raise
        finally:
            if self.reporter is not None:
                self.reporter.track_relayer_exec(
                    f"{self.broker.network_name}-{self.name}",
                    argv,
                    stdout="" if result is None else result.text,
                    stderr="" if result is None else result.error_text,
                    exit_code=None if result is None else result.exit_code,
                    started_at=started_at,
                    finished_at=datetime.now(UTC),
                    error=error,
                )

    async def exec_ok(self, argv: Sequence[str], *, stdin: bytes | None = None) -> ExecResult:
        """
        Run a command and require a zero exit code.

        Raises:
            HarnessError: With the command's output if it failed.
        """
        result = await self.exec(argv, stdin=stdin)
        if not result.ok:
            raise HarnessError(
                f"`{' '.join(argv[:3])}` exited {result.exit_code}: "
                f"{(result.error_text or result.text).strip()[-500:]}",
                component="relayer",
                subject=self.name,
            )
        return result

    async def write_home_file(self, relative_path: str, data: bytes) -> str:
        """Write a file under the relayer home and return its absolute path."""
        path = f"{self.home_dir}/{relative_path}"
        await self.exec_ok(
            ["sh", "-c", 'mkdir -p "$(dirname "$1")" && cat > "$1"', "sh", path], stdin=data
        )
        return path

    # -------------------------------------------------------------------------
    # Chains and keys
    # -------------------------------------------------------------------------

    async def add_chain_configuration(self, chain: Chain, key_name: str) -> None:
        """Make a chain known to the relayer, signing with `key_name`."""
        if not chain.supports_ibc:
            raise ConfigInvalidError(
                f"{chain.name} cannot be a relayer endpoint", component="relayer", subject=self.name
            )
        self.chains[chain.chain_id] = chain
        self.key_names[chain.chain_id] = key_name
        await self.write_chain_config(chain, key_name)
        logger.debug("Relayer %s configured for %s", self.name, chain.chain_id)

    @abstractmethod
    async def write_chain_config(self, chain: Chain, key_name: str) -> None:
        """Persist the relayer's configuration for one chain."""

    @abstractmethod
    async def restore_key(self, chain: Chain, key_name: str, mnemonic: str) -> str:
        """Import a signing key for a chain. Returns the relayer's address for it."""

    # -------------------------------------------------------------------------
    # Path state machine
    # -------------------------------------------------------------------------

    async def _transition(
        self,
        path: RelayerPath,
        target: PathState,
        action: Callable[[], Awaitable[None]],
        timeout: float = config.RELAYER_PATH_TIMEOUT,
    ) -> None:
        """
        Move `path` into `target` by running `action`.

        Raises:
            RelayerStuckError: If the path failed before, cannot move to
                `target` from its current state, or `action` failed.
        """
        if path.state.has_reached(target) and not path.failed:
            return
        self._check_transition(path, target)

        try:
            async with asyncio.timeout(timeout):
                await action()
        except (HarnessError, TimeoutError) as exc:
            error = RelayerStuckError(
                f"path {path.name} failed moving to {target.name}: {exc}",
                component="relayer",
                subject=path.name,
                log_tail=getattr(exc, "log_tail", ()),
            )
            path.error = error
            raise error from exc

        logger.info(
            "Relayer %s path %s: %s -> %s", self.name, path.name, path.state.name, target.name
        )
        path.state = target

    def _check_transition(self, path: RelayerPath, target: PathState) -> None:
        """
        Refuse a transition the path cannot take.

        Raises:
            RelayerStuckError: If the path failed before or `target` is not
                its next state.
        """
        if path.failed:
            raise RelayerStuckError(
                f"path {path.name} failed earlier: {path.error}",
                component="relayer",
                subject=path.name,
            )
        if not path.state.can_transition_to(target):
            raise RelayerStuckError(
                f"path {path.name} cannot go from {path.state.name} to {target.name}",
                component="relayer",
                subject=path.name,
            )

    async def generate_path(self, chain1_id: str, chain2_id: str, path_name: str) -> RelayerPath:
        """Declare a path between two configured chains."""
        for chain_id in (chain1_id, chain2_id):
            if chain_id not in self.chains:
                raise ConfigInvalidError(
                    f"relayer {self.name} has no configuration for {chain_id}",
                    component="relayer",
                    subject=path_name,
                )
        path = self.paths.get(path_name)
        if path is None:
            path = RelayerPath(name=path_name, chain1_id=chain1_id, chain2_id=chain2_id)
            self.paths[path_name] = path
        elif path.chain_ids() != (chain1_id, chain2_id):
            raise ConfigInvalidError(
                f"path {path_name} already links {path.chain1_id} and {path.chain2_id}",
                component="relayer",
                subject=path_name,
            )
        await self._transition(path, PathState.ADDED, lambda: self._generate_path(path))
        return path

    async def create_clients(
        self, path_name: str, options: CreateClientOptions | None = None
    ) -> None:
        path = self.path(path_name)
        opts = options or CreateClientOptions()
        await self._transition(path, PathState.CLIENTS, lambda: self._create_clients(path, opts))

    async def use_existing_clients(self, path_name: str, client1_id: str, client2_id: str) -> None:
        """Adopt clients created outside the relayer, like the CCV clients of a consumer."""
        path = self.path(path_name)
        await self._transition(
            path,
            PathState.CLIENTS,
            lambda: self._use_existing_clients(path, client1_id, client2_id),
        )

    async def create_connections(self, path_name: str) -> None:
        path = self.path(path_name)
        await self._transition(path, PathState.CONNECTED, lambda: self._create_connections(path))

    async def create_channel(
        self, path_name: str, options: CreateChannelOptions | None = None
    ) -> None:
        path = self.path(path_name)
        opts = options or CreateChannelOptions()

        async def open_channel() -> None:
            await self._create_channel(path, opts)
            path.channels = await self.get_channels(path.chain1_id)

        await self._transition(path, PathState.OPENED, open_channel)

    async def link_path(
        self,
        path_name: str,
        channel_options: CreateChannelOptions | None = None,
        client_options: CreateClientOptions | None = None,
    ) -> None:
        """Drive a path to OPENED: clients, connection, channel."""
        await self.create_clients(path_name, client_options)
        await self.create_connections(path_name)
        await self.create_channel(path_name, channel_options)

    async def start_relaying(self, *path_names: str) -> None:
        """
        Start the packet-relay loop for the given paths.

        Every path must be OPENED, STOPPED or already RELAYING. The loop is one
        container serving all of the relayer's relaying paths. A path that
        cannot relay leaves the running loop untouched; if the restarted loop
        fails to come up, the paths it served before become STOPPED.
        """
        paths = [self.path(name) for name in path_names]
        pending = [path for path in paths if path.state is not PathState.RELAYING]
        if not pending:
            return
        for path in pending:
            self._check_transition(path, PathState.RELAYING)

        relaying = [p for p in self.paths.values() if p.state is PathState.RELAYING]
        served = [p.name for p in relaying] + [p.name for p in pending]
        # The loop is restarted to pick up the new paths.
        await self._stop_container()

        async def start_loop() -> None:
            if self._container is None:
                await self._start_container(served)

        try:
            for path in pending:
                await self._transition(path, PathState.RELAYING, start_loop)
        except RelayerStuckError:
            if self._container is None:
                for path in relaying:
                    logger.warning("Relayer %s path %s: loop is down", self.name, path.name)
                    path.state = PathState.STOPPED
            raise

    async def stop_relaying(self) -> None:
        """Stop the packet-relay loop; every relaying path becomes STOPPED."""
        for path in [p for p in self.paths.values() if p.state is PathState.RELAYING]:
            await self._transition(path, PathState.STOPPED, self._stop_container)

    async def _start_container(self, path_names: Sequence[str]) -> None:
        handle = await self.broker.create(
            self.image.reference,
            self.start_command(path_names),
            hostname=f"{self.name}-relay",
            mounts=self.mounts,
            entrypoint=[],
            user=self.image.uid_gid or None,
        )
        self._container = handle
        await self.broker.start(handle)
        if self._log_sink is not None:
            self.broker.stream_logs(handle, self._log_sink)
        logger.info("Relayer %s relaying %s", self.name, ", ".join(path_names))

    async def _stop_container(self) -> None:
        if self._container is None:
            return
        handle, self._container = self._container, None
        await self.broker.stop(handle)
        await self.broker.remove(handle)

    async def log_tail(self, lines: int = 100) -> list[str]:
        if self._container is None:
            return []
        return await self.broker.log_tail(self._container, lines)

    # -------------------------------------------------------------------------
    # Implementation hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _generate_path(self, path: RelayerPath) -> None: ...

    @abstractmethod
    async def _create_clients(self, path: RelayerPath, options: CreateClientOptions) -> None: ...

    @abstractmethod
    async def _use_existing_clients(
        self, path: RelayerPath, client1_id: str, client2_id: str
    ) -> None: ...

    @abstractmethod
    async def _create_connections(self, path: RelayerPath) -> None: ...

    @abstractmethod
    async def _create_channel(self, path: RelayerPath, options: CreateChannelOptions) -> None: ...

    @abstractmethod
    def start_command(self, path_names: Sequence[str]) -> list[str]:
        """Command line of the packet-relay loop."""

    @abstractmethod
    async def get_channels(self, chain_id: str) -> list[ChannelInfo]:
        """Channels on a chain as the relayer sees them."""

    @abstractmethod
    async def query_packets(self, path_name: str, channel_id: str) -> PendingPackets:
        """Packets sent on a channel of the path that are not relayed yet."""


