#  SPDX-License-Identifier: MIT OR Apache-2.0
#  Copyright (c) 2026 gwz

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from ia_errors import ConfigurationError

VALGRIND_ENV = "IA_VALGRIND"
RUNTIME_ENV = "IA_RUNTIME"
RUNTIME_HOME_ENV = "IA_RUNTIME_HOME"

SYSTEM_VALGRIND_PATHS = ("/usr/bin/valgrind", "/usr/local/bin/valgrind")
RUNTIME_HOME_RELPATHS = ("bin/python3", "bin/python", "python.exe")


def _is_file(path: Path) -> bool:
    return path.exists() and path.is_file()


def _tried(paths: List[Path]) -> str:
    return ", ".join(f"[{p.absolute()}]" for p in paths) or "<none>"


@dataclass
class ToolSearchPaths:
    """
    Candidate locations for the memcheck tool and the workload runtime.

    Resolution rule: candidates are tried in insertion order and the first
    existing file wins. An empty runtime list falls back to the running
    interpreter.
    """
    valgrind_candidates: List[Path] = field(default_factory=list)
    runtime_candidates: List[Path] = field(default_factory=list)

    def add_valgrind_candidate(self, path: str | Path) -> None:
        self.valgrind_candidates.append(Path(path))

    def add_runtime_candidate(self, path: str | Path) -> None:
        self.runtime_candidates.append(Path(path))

    def add_runtime_home(self, home: str | Path) -> None:
        """Add the interpreter locations inside a runtime installation directory."""
        home = Path(home)
        if not home.is_dir():
            raise ConfigurationError("CFG-0021", f"Invalid runtime home: [{home.absolute()}]")
        for rel in RUNTIME_HOME_RELPATHS:
            self.add_runtime_candidate(home / rel)

    def resolve_valgrind(self) -> Path:
        for candidate in self.valgrind_candidates:
            if _is_file(candidate):
                return candidate
        raise ConfigurationError(
            "CFG-0010",
            f"Cannot find valgrind executable, tried paths: {_tried(self.valgrind_candidates)}",
        )

    def resolve_runtime(self) -> Path:
        if not self.runtime_candidates:
            return Path(sys.executable)
        for candidate in self.runtime_candidates:
            if _is_file(candidate):
                return candidate
        raise ConfigurationError(
            "CFG-0020",
            f"Cannot find runtime executable, tried paths: {_tried(self.runtime_candidates)}",
        )


def build_tool_paths(
    valgrind: Optional[str] = None,
    runtime: Optional[str] = None,
    runtime_home: Optional[str] = None,
) -> ToolSearchPaths:
    """
    Build search paths from explicit options, then environment, then defaults.

    valgrind:   explicit path, $IA_VALGRIND, /usr/bin/valgrind, /usr/local/bin/valgrind
    runtime:    explicit path, $IA_RUNTIME, <home>/bin/python3... for --runtime-home
                or $IA_RUNTIME_HOME, otherwise the running interpreter
    """
    paths = ToolSearchPaths()

    if valgrind:
        paths.add_valgrind_candidate(valgrind)
    elif os.getenv(VALGRIND_ENV):
        paths.add_valgrind_candidate(os.environ[VALGRIND_ENV])
    else:
        for candidate in SYSTEM_VALGRIND_PATHS:
            paths.add_valgrind_candidate(candidate)

    if runtime:
        paths.add_runtime_candidate(runtime)
    elif os.getenv(RUNTIME_ENV):
        paths.add_runtime_candidate(os.environ[RUNTIME_ENV])
    else:
        home = runtime_home or os.getenv(RUNTIME_HOME_ENV)
        if home:
            paths.add_runtime_home(home)

    return paths
