"""Tests for the container broker."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from interchain_harness.docker import TEST_LABEL, ContainerBroker, Mount, slugify, split_reference
from interchain_harness.docker.broker import stdin_wrapper
from interchain_harness.errors import ConfigInvalidError, ImageUnavailableError
from interchain_harness.lifecycle import Supervisor
from tests.interchain_harness.helpers import FakeEngine, make_broker


class TestStdinWrapper:
    """Tests for feeding a file to a command as its stdin."""

    async def _run(self, argv: list[str], payload: Path) -> tuple[bytes, int]:
        process = await asyncio.create_subprocess_exec(
            *stdin_wrapper(argv, str(payload)), stdout=asyncio.subprocess.PIPE
        )
        stdout, _ = await process.communicate()
        return stdout, process.returncode or 0

    async def test_command_reads_the_file_which_is_then_gone(self, tmp_path: Path) -> None:
        payload = tmp_path / "stdin"
        payload.write_bytes(b"secret\n")

        stdout, code = await self._run(["cat"], payload)

        assert (stdout, code) == (b"secret\n", 0)
        assert not payload.exists()

    async def test_command_exit_code_is_kept(self, tmp_path: Path) -> None:
        payload = tmp_path / "stdin"
        payload.write_bytes(b"")

        _, code = await self._run(["sh", "-c", "exit 3"], payload)

        assert code == 3
        assert not payload.exists()


class TestNames:
    """Tests for resource naming helpers."""

    @pytest.mark.parametrize(
        ("name", "slug"),
        [
            ("TestIBCTransfer", "testibctransfer"),
            ("test ibc / transfer", "test-ibc-transfer"),
            ("---", "test"),
        ],
    )
    def test_slugify(self, name: str, slug: str) -> None:
        """Names reduce to lowercase alphanumerics and dashes."""
        assert slugify(name) == slug

    def test_slugify_truncates(self) -> None:
        """Long names are cut without leaving a trailing dash."""
        slug = slugify("a" * 39 + " b" * 10)

        assert len(slug) <= 40
        assert not slug.endswith("-")

    @pytest.mark.parametrize(
        ("reference", "expected"),
        [
            ("ghcr.io/cosmos/gaia:v15.0.0", ("ghcr.io/cosmos/gaia", "v15.0.0")),
            ("localhost:5000/gaia:v1", ("localhost:5000/gaia", "v1")),
            ("bitcoin:25", ("bitcoin", "25")),
        ],
    )
    def test_split_reference(self, reference: str, expected: tuple[str, str]) -> None:
        """The tag is whatever follows the last colon after the last slash."""
        assert split_reference(reference) == expected

    @pytest.mark.parametrize("reference", ["", "gaia", "localhost:5000/gaia", ":v1"])
    def test_split_reference_requires_tag(self, reference: str) -> None:
        """Untagged references are refused."""
        with pytest.raises(ImageUnavailableError):
            split_reference(reference)

    def test_mount_bind(self) -> None:
        assert Mount("vol", "/home", read_only=True).bind() == "vol:/home:ro"


class TestContainerBroker:
    """Tests for resource creation and teardown through a fake engine."""

    def test_empty_test_name_is_rejected(self) -> None:
        """Every resource is labeled with the test name."""
        with pytest.raises(ConfigInvalidError):
            ContainerBroker(client=FakeEngine().client(), supervisor=Supervisor(), test_name="")

    def test_network_names_are_unique_per_broker(self) -> None:
        """Two interchains of the same test get distinct networks."""
        engine = FakeEngine()
        first = make_broker(engine, "Test Transfer")
        second = make_broker(engine, "Test Transfer")

        assert first.network_name.startswith("ih-test-transfer-")
        assert first.network_name != second.network_name

    async def test_ensure_network_creates_once(self) -> None:
        """Concurrent and repeated calls share one network."""
        engine = FakeEngine()
        broker = make_broker(engine)

        first = await broker.ensure_network()
        second = await broker.ensure_network()

        assert first == second
        assert list(engine.networks) == [first]

        await broker.supervisor.close()
        assert engine.networks == {}

    async def test_external_network_is_never_removed(self) -> None:
        """A caller-supplied network outlives the interchain."""
        engine = FakeEngine()
        engine.networks["external"] = "shared"
        broker = ContainerBroker(
            client=engine.client(),
            supervisor=Supervisor(),
            test_name="unit",
            network_id="external",
        )

        assert await broker.ensure_network() == "external"
        await broker.supervisor.close()

        assert engine.networks == {"external": "shared"}

    async def test_create_labels_and_attaches_to_network(self) -> None:
        """Containers are labeled, named after the network, and reachable by hostname."""
        engine = FakeEngine()
        broker = make_broker(engine, "labels")

        handle = await broker.create(
            "example.com/node:v1",
            ["start"],
            hostname="gaia-val-0",
            env={"HOME": "/home/gaia"},
            ports=["26657/tcp"],
            entrypoint=[],
        )

        spec = engine.containers[handle.id].spec
        assert handle.name == f"{broker.network_name}-gaia-val-0"
        assert spec["Labels"] == {TEST_LABEL: "labels"}
        assert spec["Env"] == ["HOME=/home/gaia"]
        assert spec["Entrypoint"] == []
        assert spec["HostConfig"]["NetworkMode"] == broker.network_name
        assert spec["NetworkingConfig"]["EndpointsConfig"][broker.network_name] == {
            "Aliases": ["gaia-val-0"]
        }
        assert "26657/tcp" in spec["ExposedPorts"]

    async def test_supervisor_removes_containers_before_network(self) -> None:
        """Teardown releases resources in reverse creation order."""
        engine = FakeEngine()
        broker = make_broker(engine)
        volume = await broker.create_volume("home")
        handle = await broker.create("example.com/node:v1", ["start"], hostname="node")

        await broker.supervisor.close()

        assert engine.removed == [handle.name]
        assert volume not in engine.volumes
        assert engine.networks == {}
        assert handle.removed

    async def test_remove_is_idempotent(self) -> None:
        """Removing twice makes one engine call."""
        engine = FakeEngine()
        broker = make_broker(engine)
        handle = await broker.create("example.com/node:v1", hostname="node")

        await broker.remove(handle)
        await broker.remove(handle)

        assert engine.removed == [handle.name]
        assert sum(1 for method, _ in engine.requests if method == "DELETE") == 1

    async def test_run_removes_its_job_container(self) -> None:
        """One-shot jobs leave nothing behind and report their output."""
        engine = FakeEngine(responder=lambda argv: (b" ".join(a.encode() for a in argv), b"", 3))
        broker = make_broker(engine)

        result = await broker.run("example.com/node:v1", ["echo", "hi"], entrypoint=[])

        assert result.exit_code == 3
        assert not result.ok
        assert result.text == "echo hi"
        assert engine.containers == {}
        assert len(engine.removed) == 1

    async def test_run_with_stdin_reads_from_file(self) -> None:
        """Stdin is copied into the job and redirected into the command."""
        commands: list[list[str]] = []

        def responder(argv: list[str]) -> tuple[bytes, bytes, int]:
            commands.append(argv)
            return b"", b"", 0

        engine = FakeEngine(responder=responder)
        broker = make_broker(engine)
        await broker.run("example.com/node:v1", ["keys", "add"], stdin=b"secret\n", entrypoint=[])

        (argv,) = commands
        assert argv[:2] == ["sh", "-c"]
        assert "/tmp/.ih-stdin" in argv[2]
        assert argv[-2:] == ["keys", "add"]
        assert engine.uploads == ["/tmp/.ih-stdin"]

    async def test_exec_with_stdin(self) -> None:
        """Exec in a running container wraps the command the same way."""
        commands: list[list[str]] = []

        def responder(argv: list[str]) -> tuple[bytes, bytes, int]:
            commands.append(argv)
            return b"ok", b"", 0

        engine = FakeEngine(responder=responder)
        broker = make_broker(engine)
        handle = await broker.create("example.com/node:v1", ["start"], hostname="node")
        await broker.start(handle)

        result = await broker.exec(handle, ["tx", "send"], stdin=b"y\n")

        assert result.ok
        assert result.text == "ok"
        assert commands[-1][-2:] == ["tx", "send"]
        container = engine.containers[handle.id]
        assert any(path.startswith("/tmp/.ih-stdin-") for path in container.files)

    async def test_exec_stdin_file_is_removed_by_the_command(self) -> None:
        """The payload copied in for an exec is unlinked by the wrapper that reads it."""
        commands: list[list[str]] = []

        def responder(argv: list[str]) -> tuple[bytes, bytes, int]:
            commands.append(argv)
            return b"", b"", 0

        engine = FakeEngine(responder=responder)
        broker = make_broker(engine)
        handle = await broker.create("example.com/node:v1", ["start"], hostname="node")
        await broker.start(handle)

        await broker.exec(handle, ["keys", "add"], stdin=b"secret\n")

        (uploaded,) = [p for p in engine.containers[handle.id].files if ".ih-stdin-" in p]
        assert commands[-1][:4] == [
            "sh",
            "-c",
            f'{{ rm -f {uploaded} 2>/dev/null; exec "$@"; }} < {uploaded}',
            "sh",
        ]

    async def test_pull_missing_image(self) -> None:
        """A registry miss surfaces as ImageUnavailable."""
        engine = FakeEngine(missing_images={"example.com/nope:v1"})
        broker = make_broker(engine)

        with pytest.raises(ImageUnavailableError, match="example.com/nope:v1"):
            await broker.pull("example.com/nope:v1")

    async def test_pull_skips_present_images(self) -> None:
        """Images already present are not pulled again."""
        engine = FakeEngine(images={"example.com/node:v1"})
        broker = make_broker(engine)

        await broker.pull("example.com/node:v1")

        assert ("POST", "/images/create") not in engine.requests

    async def test_files_round_trip_through_archives(self) -> None:
        """Files written into a container can be read back."""
        engine = FakeEngine()
        broker = make_broker(engine)
        handle = await broker.create("example.com/node:v1", hostname="node")

        await broker.put_file(handle, "/home/node/config/genesis.json", b'{"chain_id":"x"}')

        contents = await broker.get_file(handle, "/home/node/config/genesis.json")
        assert contents == b'{"chain_id":"x"}'

    async def test_host_port_and_log_tail(self) -> None:
        """Published ports and log tails come from inspection and logs."""
        engine = FakeEngine(responder=lambda argv: (b"a\nb\nc\n", b"", 0))
        broker = make_broker(engine)
        handle = await broker.create("example.com/node:v1", hostname="node", ports=["8545/tcp"])

        assert await broker.host_port(handle, "8545/tcp") == 30000
        await broker.client.wait_container(handle.id)
        assert await broker.log_tail(handle, lines=2) == ["b", "c"]
