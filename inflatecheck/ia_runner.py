#  SPDX-License-Identifier: MIT OR Apache-2.0
#  Copyright (c) 2026 gwz

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ia_context import CheckContext
from ia_errors import ConfigurationError, ExecutionError
from ia_logger import log_debug, log_info, log_stage
from ia_payload import DEFAULT_PAYLOAD, PayloadSpec
from ia_workload import PAYLOAD_SPEC_ENV, WORKLOAD_SCRIPT, Mode, format_payload_spec

MEMCHECK_OPTIONS = (
    "--tool=memcheck",
    "--leak-check=yes",
    "--show-reachable=yes",
    "--xml=yes",
)


@dataclass(frozen=True)
class RunOutcome:
    mode: Mode
    report_path: Path
    output_path: Path
    exit_code: int


class WorkloadRunner:
    """
    Runs the workload under memcheck, one mode at a time.

    Command:
        <valgrind> --tool=memcheck --leak-check=yes --show-reachable=yes \\
            --xml=yes --xml-file=<report> \\
            <runtime> <workload args...> <input> <mode token>

    The tool's and the workload's stdout/stderr are appended to the mode's
    output file; the report is written to the mode's report file.
    """

    def __init__(
        self,
        valgrind: Path,
        runtime: Path,
        input_path: Path,
        *,
        workload_args: Optional[Sequence[str]] = None,
        payload: PayloadSpec = DEFAULT_PAYLOAD,
        context: CheckContext | None = None,
        extra_env: Optional[Dict[str, str]] = None,
    ):
        self.valgrind = Path(valgrind)
        self.runtime = Path(runtime)
        self.input_path = Path(input_path)
        self.workload_args = list(workload_args) if workload_args else [str(WORKLOAD_SCRIPT)]
        self.payload = payload
        self.context = context or CheckContext.default()
        self.extra_env = dict(extra_env or {})

        if not self.input_path.is_file():
            raise ConfigurationError("CFG-0030", f"Input ZIP file not found: [{self.input_path.absolute()}]")

    def build_command(self, mode: Mode, report_path: Path) -> List[str]:
        return [
            str(self.valgrind.absolute()),
            *MEMCHECK_OPTIONS,
            f"--xml-file={report_path.absolute()}",
            str(self.runtime),
            *self.workload_args,
            str(self.input_path.absolute()),
            mode.token,
        ]

    def build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        # route CPython object allocations through malloc so memcheck sees them
        env["PYTHONMALLOC"] = "malloc"
        if self.payload != DEFAULT_PAYLOAD:
            env[PAYLOAD_SPEC_ENV] = format_payload_spec(self.payload)
        env.update(self.extra_env)
        return env

    def run(self, mode: Mode) -> RunOutcome:
        """
        Run one mode to completion.

        Raises:
            ConfigurationError: the tool could not be started.
            ExecutionError:     non-zero exit status or timeout.
        """
        token = mode.token
        report_path = self.context.report_path(token)
        output_path = self.context.output_path(token)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        # a report left by an earlier run must never be scanned for this one
        report_path.unlink(missing_ok=True)

        cmd = self.build_command(mode, report_path)
        log_stage(self.context, "Starting worker", token)
        log_debug(self.context, f"Running: {' '.join(cmd)}")
        log_debug(self.context, f"Worker output: {output_path}")

        try:
            with output_path.open("ab") as out:
                proc = subprocess.run(
                    cmd,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    env=self.build_env(),
                    timeout=self.context.timeout,
                    check=False,
                )
        except subprocess.TimeoutExpired as e:
            raise ExecutionError(
                "EXE-0020",
                f"[{token}] subprocess did not finish within [{self.context.timeout}] seconds",
                mode=token,
            ) from e
        except OSError as e:
            raise ConfigurationError("CFG-0060", f"cannot start [{cmd[0]}]: {e}") from e

        if proc.returncode != 0:
            raise ExecutionError(
                "EXE-0010",
                f"[{token}] subprocess returned code: [{proc.returncode}], check: [{output_path}]",
                mode=token,
                exit_code=proc.returncode,
            )

        log_info(self.context, f"Worker in '{token}' mode finished, report: {report_path}")
        return RunOutcome(mode=mode, report_path=report_path, output_path=output_path, exit_code=proc.returncode)
