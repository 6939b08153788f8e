"""
Interchain harness CLI entry point.

Bring up the topology described in a YAML file, optionally run a smoke
scenario against it, and tear everything down.

Usage::

    python -m interchain_harness validate topology.yaml
    python -m interchain_harness up topology.yaml --blocks 5
    python -m interchain_harness up topology.yaml --smoke --hold

Exit codes:
    0  Success
    1  Scenario assertion failure
    2  Engine or infrastructure failure
    3  Cleanup failure after an otherwise successful run
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from interchain_harness import config
from interchain_harness.errors import CleanupPartialError, HarnessError
from interchain_harness.interchain import Interchain
from interchain_harness.metrics import generate_metrics
from interchain_harness.scenario import Reporter, get_and_fund_test_users, wait_for_blocks
from interchain_harness.topology import Topology

EXIT_OK = 0
EXIT_ASSERTION = 1
EXIT_ENGINE = 2
EXIT_CLEANUP = 3

SMOKE_AMOUNT = 10_000_000
"""Amount funded to the smoke-test user on each chain."""

logger = logging.getLogger(__name__)


class HarnessFormatter(logging.Formatter):
    """
    Console formatter naming the harness component each record came from.

    Records from `interchain_harness.chain.cosmos` show as `chain.cosmos`,
    tinted per component so chain, relayer and engine traffic stand apart
    when several chains log at once. Third-party loggers keep their names.
    """

    PREFIX = "interchain_harness."
    DATEFMT = "%H:%M:%S"

    RESET = "\x1b[0m"
    DIM = "\x1b[2m"
    LEVEL_COLORS = {
        logging.DEBUG: "\x1b[90m",
        logging.INFO: "\x1b[32m",
        logging.WARNING: "\x1b[33m",
        logging.ERROR: "\x1b[31m",
        logging.CRITICAL: "\x1b[31;1m",
    }
    COMPONENT_COLORS = {
        "chain": "\x1b[36m",
        "relayer": "\x1b[35m",
        "docker": "\x1b[34m",
        "interchain": "\x1b[1m",
    }

    def __init__(self, color: bool = True) -> None:
        super().__init__(datefmt=self.DATEFMT)
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        name = record.name.removeprefix(self.PREFIX)
        timestamp = self.formatTime(record, self.datefmt)
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        if not self.color:
            return f"{timestamp} {record.levelname:<7} {name}: {message}"

        level_color = self.LEVEL_COLORS.get(record.levelno, "")
        name_color = self.COMPONENT_COLORS.get(name.split(".", 1)[0], self.DIM)
        return (
            f"{self.DIM}{timestamp}{self.RESET} "
            f"{level_color}{record.levelname:<7}{self.RESET} "
            f"{name_color}{name}{self.RESET}: {message}"
        )


def setup_logging(verbose: bool = False, no_color: bool = False) -> None:
    """Log to stderr at HARNESS_LOG_LEVEL, or DEBUG when verbose."""
    level = logging.DEBUG if verbose else logging.getLevelName(config.LOG_LEVEL)

    handler = logging.StreamHandler()
    handler.setFormatter(HarnessFormatter(color=not no_color and sys.stderr.isatty()))

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)

    # httpx logs every engine request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def smoke(interchain: Interchain, test_name: str, blocks: int) -> None:
    """
    Fund one user per chain and watch every chain advance.

    Raises:
        AssertionError: If a funded balance or a chain height is not what it should be.
    """
    chains = list(interchain.chains.values())
    heights_before = {chain.name: await chain.height() for chain in chains}

    users = await get_and_fund_test_users(test_name, SMOKE_AMOUNT, *chains)
    for chain, user in zip(chains, users, strict=True):
        balance = await chain.get_balance(user.formatted_address, chain.denom)
        assert balance == SMOKE_AMOUNT, f"{chain.name}: {user.key_name} holds {balance}"

    heights = await wait_for_blocks(blocks, *chains)
    for name, height in heights.items():
        assert height >= heights_before[name] + blocks, f"{name} stuck at {height}"
    logger.info("Smoke scenario passed on %d chain(s)", len(chains))


async def run_up(
    topology: Topology,
    *,
    blocks: int,
    run_smoke: bool,
    hold: bool,
    report: Path | None,
) -> int:
    """Build the topology, run the requested scenario, and clean up. Returns an exit code."""
    reporter = Reporter(report)
    interchain = topology.interchain(reporter)
    status = EXIT_OK
    error: BaseException | None = None

    reporter.test_started(topology.test_name)
    try:
        await interchain.build(topology.build_options(), reporter)
        if run_smoke:
            await smoke(interchain, topology.test_name, blocks)
        elif blocks:
            await wait_for_blocks(blocks, *interchain.chains.values())

        if hold:
            logger.info("Interchain %s is up; press Ctrl+C to tear it down", topology.test_name)
            await asyncio.Event().wait()
    except AssertionError as exc:
        logger.error("Scenario failed: %s", exc)
        error, status = exc, EXIT_ASSERTION
    except HarnessError as exc:
        logger.error("%s", exc)
        error, status = exc, EXIT_ENGINE
    except ExceptionGroup as group:
        # Several chains failed at once; only an all-assertion group is a scenario failure.
        for exc in group.exceptions:
            logger.error("%s", exc)
        _, rest = group.split(AssertionError)
        error, status = group, EXIT_ASSERTION if rest is None else EXIT_ENGINE
    except asyncio.CancelledError:
        logger.info("Interrupted; tearing down")
    finally:
        try:
            await interchain.close()
        except CleanupPartialError as exc:
            logger.error("%s", exc)
            if status == EXIT_OK:
                status = EXIT_CLEANUP
        reporter.test_finished(topology.test_name, error)
        reporter.close()
    return status


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="interchain-harness",
        description="Interchain integration test harness",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--no-color", action="store_true", help="Disable colored logging output")
    parser.add_argument(
        "--metrics",
        action="store_true",
        help="Print harness metrics in Prometheus text format on exit",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    validate = commands.add_parser(
        "validate", help="Resolve a topology without creating containers"
    )
    validate.add_argument("topology", type=Path, help="Path to the topology YAML file")

    up = commands.add_parser("up", help="Build a topology, run a scenario, tear it down")
    up.add_argument("topology", type=Path, help="Path to the topology YAML file")
    up.add_argument(
        "--blocks", type=int, default=2, help="Blocks every chain must produce (default: 2)"
    )
    up.add_argument(
        "--smoke", action="store_true", help="Fund a user on every chain before waiting"
    )
    up.add_argument("--hold", action="store_true", help="Keep the interchain up until interrupted")
    up.add_argument("--report", type=Path, default=None, help="Write a JSON-lines test report here")

    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.no_color)

    try:
        topology = Topology.from_yaml_file(args.topology)
        if args.command == "validate":
            interchain = topology.interchain()
            interchain.validate()
            logger.info(
                "Topology %s is valid: %d chain(s), %d relayer(s), %d link(s)",
                topology.test_name,
                len(interchain.chains),
                len(interchain.relayers),
                len(interchain.links) + len(interchain.provider_consumer_links),
            )
            status = EXIT_OK
        else:
            status = asyncio.run(
                run_up(
                    topology,
                    blocks=args.blocks,
                    run_smoke=args.smoke,
                    hold=args.hold,
                    report=args.report,
                )
            )
    except HarnessError as exc:
        logger.error("%s", exc)
        status = EXIT_ENGINE
    except KeyboardInterrupt:
        logger.info("Interrupted")
        status = EXIT_OK

    if args.metrics:
        sys.stdout.write(generate_metrics().decode())
    return status


if __name__ == "__main__":
    sys.exit(main())
