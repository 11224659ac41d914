"""
Check context for cross-cutting options.

This module defines the CheckContext dataclass which holds options that
affect several stages of an allocation check (logging, where reports are
written, how long a run may take).
"""

#  SPDX-License-Identifier: MIT OR Apache-2.0
#  Copyright (c) 2026 gwz

from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Optional


class LogLevel(IntEnum):
    """Hierarchical logging levels for the allocation checker."""
    SILENT = 0      # No logging
    ERROR = 3       # Error messages only
    WARNING = 6     # Warning messages (default)
    INFO = 10       # Per-run progress and counts (-v)
    DEBUG = 30      # Commands, paths, scan statistics (-vvv)


DEFAULT_REPORT_PREFIX = "InflaterAllocWorker"


@dataclass
class CheckContext:
    """
    Holds cross-cutting options for one allocation check.

    Attributes:
        work_dir:           Directory receiving the memcheck reports and workload output files.
        report_prefix:      File name prefix; reports are `<prefix>.<mode>.memcheck.xml`,
                            workload output is appended to `<prefix>.<mode>.out`.
        timeout:            Seconds to wait for one instrumented run, None waits forever.
        keep_reports:       If False, report files are removed once they have been scanned.
        log_rich_format:    If True, emit logs in rich format: may include log level, timestamps, etc.
        log_level:          Current logging level.
    """
    work_dir: Path = field(default_factory=Path.cwd)
    report_prefix: str = DEFAULT_REPORT_PREFIX
    timeout: Optional[float] = None
    keep_reports: bool = True
    log_rich_format: bool = False
    log_level: LogLevel = LogLevel.WARNING

    def report_path(self, token: str) -> Path:
        return self.work_dir / f"{self.report_prefix}.{token}.memcheck.xml"

    def output_path(self, token: str) -> Path:
        return self.work_dir / f"{self.report_prefix}.{token}.out"

    @staticmethod
    def default() -> 'CheckContext':
        """Create a CheckContext with default settings."""
        return CheckContext(log_level=LogLevel.WARNING)
