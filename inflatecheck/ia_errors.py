#  SPDX-License-Identifier: MIT OR Apache-2.0
#  Copyright (c) 2026 gwz

# ia_errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ia_verdict import Verdict


ERROR_CODE_FAMILIES = {
    "CFG": [
        "CFG-0010",  # valgrind executable not found
        "CFG-0020",  # runtime executable not found
        "CFG-0021",  # runtime home is not a directory
        "CFG-0030",  # input fixture not found
        "CFG-0031",  # input fixture unreadable or too short
        "CFG-0040",  # invalid signature
        "CFG-0050",  # invalid option value
        "CFG-0060",  # instrumentation tool could not be started
    ],
    "EXE": [
        "EXE-0010",  # subprocess returned non-zero
        "EXE-0020",  # subprocess timed out
        "EXE-0030",  # report missing or unreadable
    ],
    "RPT": [
        "RPT-0010",  # report is not well-formed XML
        "RPT-0020",  # root element is not <valgrindoutput>
        "RPT-0030",  # <stack> nested in <stack>
        "RPT-0031",  # <frame> outside <stack>
        "RPT-0032",  # <fn> outside <frame>
        "RPT-0033",  # more than one <fn> in a <frame>
        "RPT-0034",  # element nested in <fn>
    ],
    "WRK": [
        "WRK-0010",  # wrong workload argument count
        "WRK-0020",  # decompression failed or produced the wrong length
        "WRK-0030",  # zlib shared library not found
    ],
    "VRD": [
        "VRD-0010",  # canary did not fire
        "VRD-0020",  # tested count differs from baseline
    ],
}


def _known_code(code: str) -> bool:
    family = code.split("-", 1)[0]
    return code in ERROR_CODE_FAMILIES.get(family, [])


class CheckError(RuntimeError):
    """
    Base class of every failure raised by the allocation checker.

    Each error carries a stable `[FAMILY-NNNN]` code from ERROR_CODE_FAMILIES.
    """

    def __init__(self, code: str, message: str):
        if not _known_code(code):
            raise ValueError(f"unknown error code {code!r}")
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message

    def format(self) -> str:
        return f"error: [{self.code}] {self.message}"


class ConfigurationError(CheckError):
    """Tool, runtime, fixture or option problem detected before any run."""
    pass


class ExecutionError(CheckError):
    """An instrumented run did not complete procedurally."""

    def __init__(self, code: str, message: str, *, mode: Optional[str] = None, exit_code: Optional[int] = None):
        super().__init__(code, message)
        self.mode = mode
        self.exit_code = exit_code


@dataclass(frozen=True)
class ReportLocation:
    filename: Optional[str]
    line: Optional[int] = None
    column: Optional[int] = None


class ReportStructureError(CheckError):
    """
    The memcheck report is malformed or truncated.

    Never converted to a zero count: a corrupt report says nothing about leaks.
    """

    def __init__(self, code: str, message: str, loc: ReportLocation | None = None):
        super().__init__(code, message)
        self.loc = loc

    def format(self) -> str:
        if self.loc and self.loc.filename:
            if self.loc.line is not None:
                return f"{self.loc.filename}:{self.loc.line}:{self.loc.column or 0}: error: [{self.code}] {self.message}"
            return f"{self.loc.filename}: error: [{self.code}] {self.message}"
        return super().format()


class WorkloadError(CheckError):
    """Failure inside the workload process itself."""
    pass


class VerdictFailure(CheckError):
    """Raised by Verdict.raise_for_failure(); the check itself ran fine."""

    def __init__(self, code: str, message: str, verdict: "Verdict"):
        super().__init__(code, message)
        self.verdict = verdict
