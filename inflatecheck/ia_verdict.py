#  SPDX-License-Identifier: MIT OR Apache-2.0
#  Copyright (c) 2026 gwz

"""
Three-run comparison protocol.

  1. 'smallbuf' (canary): inflating through an 8 KiB buffer allocates zlib's
     window on any zlib, so the signature must be found at least once. Zero
     hits means the scanner or the signature is wrong, not the code under test.
  2. 'noinflate' (baseline): no decompression at all; whatever the signature
     count is here comes from the runtime, not from inflate.
  3. 'inflate' (tested): a single pass into a buffer big enough for the whole
     output. It must not add any window allocation over the baseline.

The check passes iff tested count == baseline count.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

from ia_context import CheckContext
from ia_errors import VerdictFailure
from ia_logger import log_debug, log_info, log_stage, log_warning
from ia_scanner import scan_report
from ia_signature import Signature
from ia_workload import Mode

RUN_ORDER: Tuple[Mode, ...] = (Mode.FORCED_MULTIPASS, Mode.NOOP, Mode.SINGLE_PASS)

PASSED_MESSAGE = "Test passed"


class VerdictStatus(Enum):
    PASSED = "passed"
    FAILED = "failed"
    CANARY_FAILED = "canary-failed"


@dataclass(frozen=True)
class RunResult:
    mode: Mode
    report_path: Path
    leak_count: int
    process_exit_code: int


@dataclass(frozen=True)
class Verdict:
    status: VerdictStatus
    reason: str
    forced: RunResult
    baseline: Optional[RunResult] = None
    tested: Optional[RunResult] = None

    @property
    def passed(self) -> bool:
        return self.status is VerdictStatus.PASSED

    @property
    def delta(self) -> Optional[int]:
        if self.baseline is None or self.tested is None:
            return None
        return self.tested.leak_count - self.baseline.leak_count

    def raise_for_failure(self) -> None:
        if self.status is VerdictStatus.CANARY_FAILED:
            raise VerdictFailure("VRD-0010", self.reason, self)
        if self.status is VerdictStatus.FAILED:
            raise VerdictFailure("VRD-0020", self.reason, self)


def _expect_mode(result: RunResult, mode: Mode, role: str) -> None:
    if result.mode is not mode:
        raise ValueError(f"{role} run must be '{mode.token}', got '{result.mode.token}'")


def check_canary(forced: RunResult) -> Optional[Verdict]:
    """Return a CANARY_FAILED verdict if the forced run found nothing, else None."""
    _expect_mode(forced, Mode.FORCED_MULTIPASS, "forced")
    if forced.leak_count > 0:
        return None
    return Verdict(
        status=VerdictStatus.CANARY_FAILED,
        reason=(
            f"canary did not fire, '{forced.mode.token}' mode leaks were not detected,"
            f" check: [{forced.report_path}]"
        ),
        forced=forced,
    )


def decide(forced: RunResult, baseline: RunResult, tested: RunResult) -> Verdict:
    canary = check_canary(forced)
    if canary is not None:
        return canary
    _expect_mode(baseline, Mode.NOOP, "baseline")
    _expect_mode(tested, Mode.SINGLE_PASS, "tested")

    delta = tested.leak_count - baseline.leak_count
    if delta == 0:
        return Verdict(VerdictStatus.PASSED, PASSED_MESSAGE, forced, baseline, tested)
    return Verdict(
        status=VerdictStatus.FAILED,
        reason=(
            f"Test failed, '{baseline.mode.token}' mode leaks count: [{baseline.leak_count}],"
            f" '{tested.mode.token}' mode leaks count: [{tested.leak_count}]"
        ),
        forced=forced,
        baseline=baseline,
        tested=tested,
    )


class VerdictOrchestrator:
    """
    Drives the runner through RUN_ORDER, scans every report and decides.

    Runner and scanner failures propagate unchanged: a run that did not
    complete never reaches the comparison.
    """

    def __init__(self, runner, signature: Signature, context: CheckContext | None = None):
        self.runner = runner
        self.signature = signature
        self.context = context or CheckContext.default()

    def run_mode(self, mode: Mode) -> RunResult:
        outcome = self.runner.run(mode)
        log_stage(self.context, "Scanning report", mode.token)
        scan = scan_report(outcome.report_path, self.signature, mode=mode.token)
        log_debug(self.context, f"'{mode.token}' report stats: {scan.format()}")
        log_info(self.context, f"'{mode.token}' leaks count: [{scan.matches}]")
        # a silent canary report is named in the verdict, so it stays
        canary_silent = mode is Mode.FORCED_MULTIPASS and scan.matches == 0
        if not self.context.keep_reports and not canary_silent:
            outcome.report_path.unlink(missing_ok=True)
        return RunResult(
            mode=mode,
            report_path=outcome.report_path,
            leak_count=scan.matches,
            process_exit_code=outcome.exit_code,
        )

    def run(self) -> Verdict:
        log_debug(self.context, f"Signature: {self.signature.format()}")
        forced = self.run_mode(Mode.FORCED_MULTIPASS)
        canary = check_canary(forced)
        if canary is not None:
            return canary
        baseline = self.run_mode(Mode.NOOP)
        if baseline.leak_count > 0:
            log_warning(
                self.context,
                f"'{baseline.mode.token}' mode leaks count is [{baseline.leak_count}],"
                " the runtime matches the signature without inflating",
            )
        tested = self.run_mode(Mode.SINGLE_PASS)
        return decide(forced, baseline, tested)
