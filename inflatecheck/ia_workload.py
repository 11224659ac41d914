#  SPDX-License-Identifier: MIT OR Apache-2.0
#  Copyright (c) 2026 gwz

"""
Workload run under memcheck.

    python ia_workload.py path/to/payload.zip <inflate|smallbuf|noinflate>

Inflates the fixture payload differently depending on the mode:

  - 'inflate' inflates in a single pass into a buffer of exactly the
    uncompressed size,
  - 'smallbuf' inflates through an 8 KiB buffer so zlib has to return and
    be called again, which makes it allocate its sliding window,
  - 'noinflate' (or any other mode) reads the payload and opens the
    stream without inflating.

Both inflating modes call zlib's inflate() with Z_FINISH on one stream
that is never ended (see ia_inflater), so the buffer size is the only
difference between them.

Expected leaks have the trace (x86_64):
    malloc <- updatewindow <- inflate <- ffi_call_unix64
zlib's debuginfo must be installed.

The process ends with os._exit() right after the work so that no finalizer
frees or allocates anything that would show up in the report.
"""

import ctypes
import os
import sys
from enum import Enum
from pathlib import Path
from typing import List, Optional

from ia_errors import CheckError, ConfigurationError, WorkloadError
from ia_inflater import Inflater
from ia_payload import DEFAULT_PAYLOAD, PayloadSpec, default_fixture_path, read_payload

SMALL_BUFFER_LEN = 8192

# "<header_len>:<compressed_len>:<uncompressed_len>", set by the runner for non-default fixtures
PAYLOAD_SPEC_ENV = "IA_PAYLOAD_SPEC"

WORKLOAD_SCRIPT = Path(__file__).resolve()

_live: List[Inflater] = []


class Mode(Enum):
    SINGLE_PASS = "inflate"
    FORCED_MULTIPASS = "smallbuf"
    NOOP = "noinflate"

    @property
    def token(self) -> str:
        return self.value

    @classmethod
    def from_token(cls, token: str) -> "Mode":
        for mode in cls:
            if mode.value == token:
                return mode
        known = ", ".join(f"'{m.value}'" for m in cls)
        raise ConfigurationError("CFG-0050", f"unknown workload mode '{token}' (expected {known})")


def format_payload_spec(spec: PayloadSpec) -> str:
    return f"{spec.header_len}:{spec.compressed_len}:{spec.uncompressed_len}"


def parse_payload_spec(text: Optional[str]) -> PayloadSpec:
    if not text:
        return DEFAULT_PAYLOAD
    try:
        header_len, compressed_len, uncompressed_len = (int(p) for p in text.split(":"))
    except ValueError:
        raise ConfigurationError(
            "CFG-0050", f"invalid {PAYLOAD_SPEC_ENV} value '{text}', expected 'header:compressed:uncompressed'"
        ) from None
    return PayloadSpec(header_len, compressed_len, uncompressed_len).validate()


def inflate_payload(inflater: Inflater, comp: bytes, mode: Mode, spec: PayloadSpec = DEFAULT_PAYLOAD) -> int:
    """
    Inflate raw-deflate `comp` as `mode` dictates, returning the decompressed byte count.

    The inflater is left open: whatever zlib allocated stays live for the
    report. Raises WorkloadError if zlib fails or the output length differs
    from `spec`.
    """
    if mode is Mode.SINGLE_PASS:
        bufsize = spec.uncompressed_len
    elif mode is Mode.FORCED_MULTIPASS:
        bufsize = SMALL_BUFFER_LEN
    else:
        return 0

    out = ctypes.create_string_buffer(bufsize)
    inflater.set_input(comp)
    uncomp_count = 0
    while uncomp_count < spec.uncompressed_len:
        produced = inflater.inflate(out)
        if produced == 0:
            break
        uncomp_count += produced
    if uncomp_count != spec.uncompressed_len:
        raise WorkloadError(
            "WRK-0020",
            "inflate operation failed,"
            f" expected decompressed bytes: [{spec.uncompressed_len}],"
            f" actual decompressed bytes: [{uncomp_count}]",
        )
    print("INFO: inflate exited successfully")
    return uncomp_count


def run(argv: List[str]) -> int:
    if len(argv) != 2:
        raise WorkloadError(
            "WRK-0010",
            f"invalid number of arguments specified: [{len(argv)}],"
            f" expected first argument: 'path/to/{default_fixture_path().name}',"
            " expected second argument 'inflate', 'smallbuf' or 'noinflate'",
        )
    input_path, token = argv
    print(f"INFO: Running in mode: [{token}]")
    spec = parse_payload_spec(os.environ.get(PAYLOAD_SPEC_ENV))
    comp = read_payload(Path(input_path), spec)
    inflater = Inflater()
    try:
        mode = Mode.from_token(token)
    except ConfigurationError:
        mode = Mode.NOOP
    # referenced until os._exit(), so inflateEnd() never runs
    _live.append(inflater)
    inflate_payload(inflater, comp, mode, spec)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    try:
        return run(args)
    except CheckError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return 1


def terminate(rc: int) -> None:
    """Exit without interpreter shutdown: no atexit hooks, no finalizers."""
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(rc)


if __name__ == "__main__":
    terminate(main())
