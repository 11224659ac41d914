"""
Logging utilities for the allocation checker.

Every message goes to stderr, so stdout carries only the verdict and the
output of the `scan` and `describe-fixture` commands.
"""

#  SPDX-License-Identifier: MIT OR Apache-2.0
#  Copyright (c) 2026 gwz

import sys
import time
from typing import Optional

from ia_context import CheckContext, LogLevel

_LEVEL_TAGS = {
    LogLevel.ERROR: "ERROR",
    LogLevel.WARNING: "WARNING",
    LogLevel.INFO: "INFO",
    LogLevel.DEBUG: "DEBUG",
}


def format_message(context: CheckContext, log_level: LogLevel, message: str) -> str:
    """Prefix `message` with a timestamp and level tag when rich format is on."""
    if not context.log_rich_format:
        return message
    timestamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
    return f"{timestamp} [{_LEVEL_TAGS[log_level]}] {message}"


def log(context: CheckContext, log_level: LogLevel, message: str) -> None:
    if log_level <= context.log_level:
        print(format_message(context, log_level, message), file=sys.stderr)


def log_error(context: CheckContext, message: str) -> None:
    log(context, LogLevel.ERROR, message)


def log_warning(context: CheckContext, message: str) -> None:
    log(context, LogLevel.WARNING, message)


def log_info(context: CheckContext, message: str) -> None:
    log(context, LogLevel.INFO, message)


def log_debug(context: CheckContext, message: str) -> None:
    log(context, LogLevel.DEBUG, message)


def log_stage(context: CheckContext, stage: str, mode: Optional[str] = None) -> None:
    """
    Log the start of a check stage.

    Args:
        context: The check context containing logging flags.
        stage: The name of the stage (e.g., "Starting worker", "Scanning report").
        mode: Optional workload mode token the stage applies to.
    """
    if mode:
        log_info(context, f"{stage} in '{mode}' mode")
    else:
        log_info(context, f"{stage}...")
