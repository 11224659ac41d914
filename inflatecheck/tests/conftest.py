#  SPDX-License-Identifier: MIT OR Apache-2.0
#  Copyright (c) 2026 gwz

from __future__ import annotations

import stat
import sys
from pathlib import Path
from textwrap import dedent
from typing import Dict, List, Optional, Sequence
from xml.sax.saxutils import escape

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from ia_context import CheckContext, LogLevel
from ia_errors import WorkloadError
from ia_inflater import load_zlib
from ia_payload import default_fixture_path
from ia_signature import Signature

SIG = Signature(("malloc", "updatewindow", "inflate", "ffi_call_unix64"))
S0, S1, S2, S3 = SIG.frames

# the canary stack as memcheck reports it for inflate() called through ctypes
WINDOW_STACK = [
    S0,
    S1,
    S2,
    S3,
    "ffi_call_int",
    "_call_function_pointer",
    "_ctypes_callproc",
    "PyCFuncPtr_call",
    "_PyObject_MakeTpCall",
]

# an allocation that has nothing to do with inflate
UNRELATED_STACK = ["malloc", "PyMem_RawMalloc", "_PyObject_Malloc", "PyType_GenericAlloc"]


def memcheck_xml(records: Sequence[Sequence[Optional[str]]]) -> str:
    """
    Render memcheck-shaped XML with one leak <error> per record.

    A None frame is rendered without <fn>, the way memcheck reports frames
    it has no symbol for.
    """
    parts = [
        '<?xml version="1.0"?>',
        "<valgrindoutput>",
        "<protocolversion>4</protocolversion>",
        "<protocoltool>memcheck</protocoltool>",
        "<tool>memcheck</tool>",
        "<status><state>RUNNING</state><time>00:00:00:00.095 </time></status>",
    ]
    for i, frames in enumerate(records):
        parts.append("<error>")
        parts.append(f"  <unique>0x{i:x}</unique>")
        parts.append("  <tid>1</tid>")
        parts.append("  <kind>Leak_StillReachable</kind>")
        parts.append(
            "  <xwhat><text>32,768 bytes in 1 blocks are still reachable in loss record"
            f" {i + 1} of {len(records)}</text><leakedbytes>32768</leakedbytes>"
            "<leakedblocks>1</leakedblocks></xwhat>"
        )
        parts.append("  <stack>")
        for j, fn in enumerate(frames):
            parts.append("    <frame>")
            parts.append(f"      <ip>0x{0x4C2DB8F + 16 * j:X}</ip>")
            parts.append("      <obj>/usr/lib/x86_64-linux-gnu/libz.so.1.2.13</obj>")
            if fn is not None:
                parts.append(f"      <fn>{escape(fn)}</fn>")
                parts.append("      <dir>/usr/src/zlib</dir>")
                parts.append(f"      <file>{escape(fn)}.c</file>")
                parts.append(f"      <line>{100 + j}</line>")
            parts.append("    </frame>")
        parts.append("  </stack>")
        parts.append("</error>")
    parts.append("<errorcounts>")
    parts.append("</errorcounts>")
    parts.append("</valgrindoutput>")
    return "\n".join(parts) + "\n"


@pytest.fixture
def write_report(tmp_path: Path):
    def _write(records: Sequence[Sequence[Optional[str]]], name: str = "report.memcheck.xml") -> Path:
        path = tmp_path / name
        path.write_text(memcheck_xml(records), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def write_xml(tmp_path: Path):
    """Write raw XML text, for malformed-report cases."""

    def _write(text: str, name: str = "raw.memcheck.xml") -> Path:
        path = tmp_path / name
        path.write_text(dedent(text), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def fixture_zip() -> Path:
    return default_fixture_path()


@pytest.fixture
def zlib_available():
    try:
        load_zlib()
    except WorkloadError as e:
        pytest.skip(e.message)


@pytest.fixture
def check_context(tmp_path: Path) -> CheckContext:
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    return CheckContext(work_dir=work_dir, log_level=LogLevel.DEBUG)


_FAKE_VALGRIND = '''\
#!{python}
import sys
import time

REPORTS = {reports!r}
EXIT_CODES = {exit_codes!r}
SLEEP = {sleep!r}
CALLS = {calls!r}

args = sys.argv[1:]
xml_file = next(a.split("=", 1)[1] for a in args if a.startswith("--xml-file="))
token = args[-1]
with open(CALLS, "a") as f:
    f.write(" ".join(args) + "\\n")
print("fake memcheck running " + token)
if SLEEP:
    time.sleep(SLEEP)
if token in REPORTS:
    with open(xml_file, "w") as f:
        f.write(REPORTS[token])
sys.exit(EXIT_CODES.get(token, 0))
'''


class FakeValgrind:
    def __init__(self, path: Path, calls: Path):
        self.path = path
        self.calls = calls

    def call_lines(self) -> List[str]:
        if not self.calls.exists():
            return []
        return self.calls.read_text(encoding="utf-8").splitlines()

    def modes_run(self) -> List[str]:
        return [line.split()[-1] for line in self.call_lines()]


@pytest.fixture
def fake_valgrind(tmp_path: Path):
    """
    Build an executable standing in for valgrind.

    It records its arguments, writes the prepared report for the mode token
    (last argument) to --xml-file and exits with the prepared code.

    Usage:
        def test_something(fake_valgrind):
            tool = fake_valgrind(
                reports={"smallbuf": [WINDOW_STACK], "noinflate": [], "inflate": []},
                exit_codes={"inflate": 137},
            )
    """

    def _make(
        reports: Dict[str, Sequence[Sequence[Optional[str]]]],
        exit_codes: Optional[Dict[str, int]] = None,
        sleep: float = 0,
        raw_reports: Optional[Dict[str, str]] = None,
    ) -> FakeValgrind:
        tool_dir = tmp_path / "tool"
        tool_dir.mkdir(exist_ok=True)
        path = tool_dir / "valgrind"
        calls = tool_dir / "calls.log"
        rendered = {token: memcheck_xml(records) for token, records in reports.items()}
        rendered.update(raw_reports or {})
        path.write_text(
            _FAKE_VALGRIND.format(
                python=sys.executable,
                reports=rendered,
                exit_codes=dict(exit_codes or {}),
                sleep=sleep,
                calls=str(calls),
            ),
            encoding="utf-8",
        )
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return FakeValgrind(path, calls)

    return _make
