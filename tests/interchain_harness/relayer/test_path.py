"""Tests for the relayer path state machine."""

from __future__ import annotations

import pytest

from interchain_harness.relayer import PathState, PendingPackets, RelayerPath

FORWARD = [
    PathState.NONE,
    PathState.ADDED,
    PathState.CLIENTS,
    PathState.CONNECTED,
    PathState.OPENED,
    PathState.RELAYING,
    PathState.STOPPED,
]


class TestPathState:
    """Tests for allowed transitions."""

    @pytest.mark.parametrize(("current", "target"), list(zip(FORWARD, FORWARD[1:], strict=False)))
    def test_forward_transitions(self, current: PathState, target: PathState) -> None:
        """Each state leads to the next one."""
        assert current.can_transition_to(target)

    def test_restart_after_stop(self) -> None:
        """A stopped relayer may relay again."""
        assert PathState.STOPPED.can_transition_to(PathState.RELAYING)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (PathState.NONE, PathState.CLIENTS),
            (PathState.ADDED, PathState.OPENED),
            (PathState.CONNECTED, PathState.RELAYING),
            (PathState.OPENED, PathState.STOPPED),
            (PathState.STOPPED, PathState.OPENED),
            (PathState.RELAYING, PathState.OPENED),
        ],
    )
    def test_skipping_or_going_back_is_refused(self, current: PathState, target: PathState) -> None:
        assert not current.can_transition_to(target)

    def test_has_reached_is_monotonic_before_relaying(self) -> None:
        """A connected path has also taken the ADDED and CLIENTS transitions."""
        assert PathState.CONNECTED.has_reached(PathState.ADDED)
        assert PathState.CONNECTED.has_reached(PathState.CLIENTS)
        assert not PathState.CONNECTED.has_reached(PathState.OPENED)

    def test_relaying_and_stopped_are_exclusive(self) -> None:
        """A stopped path is no longer relaying and vice versa."""
        assert not PathState.STOPPED.has_reached(PathState.RELAYING)
        assert not PathState.RELAYING.has_reached(PathState.STOPPED)
        assert PathState.STOPPED.has_reached(PathState.OPENED)


class TestRelayerPath:
    """Tests for the path record."""

    def test_new_path(self) -> None:
        path = RelayerPath(name="gaia-osmo", chain1_id="gaia-1", chain2_id="osmo-1")

        assert path.state is PathState.NONE
        assert not path.failed
        assert path.chain_ids() == ("gaia-1", "osmo-1")

    def test_pending_packets_empty(self) -> None:
        assert PendingPackets().empty
        assert not PendingPackets(source=[1]).empty
