"""
Scenario surface.

Helpers tests call against a built interchain: funding users, block
barriers, balance polls, log files, reports and background loops.
"""

from .background import BackgroundLoop, BackgroundTasks
from .logfile import LogSink, create_log_file
from .reporter import RelayerExecReporter, Reporter
from .users import get_and_fund_test_users
from .wait import poll_for_balance_change, wait_for_blocks

__all__ = [
    "BackgroundLoop",
    "BackgroundTasks",
    "LogSink",
    "RelayerExecReporter",
    "Reporter",
    "create_log_file",
    "get_and_fund_test_users",
    "poll_for_balance_change",
    "wait_for_blocks",
]
