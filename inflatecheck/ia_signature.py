#  SPDX-License-Identifier: MIT OR Apache-2.0
#  Copyright (c) 2026 gwz

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from ia_errors import ConfigurationError


SIGNATURE_LEN = 4


@dataclass(frozen=True)
class Signature:
    """
    Four consecutive stack frames, innermost first:

        allocator <- buffer-growth routine <- decompression entry <- native bridge

    A stack matches when these symbols appear next to each other in this order,
    anywhere in the stack.
    """
    frames: Tuple[str, str, str, str]

    def __post_init__(self) -> None:
        if len(self.frames) != SIGNATURE_LEN:
            raise ConfigurationError(
                "CFG-0040",
                f"signature must have exactly {SIGNATURE_LEN} frames, got {len(self.frames)}: {list(self.frames)}",
            )
        for name in self.frames:
            if not isinstance(name, str) or not name or name != name.strip():
                raise ConfigurationError("CFG-0040", f"invalid signature frame name: {name!r}")

    def __getitem__(self, index: int) -> str:
        return self.frames[index]

    def __len__(self) -> int:
        return SIGNATURE_LEN

    def format(self) -> str:
        return " <- ".join(self.frames)


# zlib's window allocation reached from the runtime's native inflate binding.
# The cpython presets name the libffi trampoline that ctypes calls inflate() through.
SIGNATURE_PRESETS: Dict[str, Signature] = {
    "cpython": Signature(("malloc", "updatewindow", "inflate", "ffi_call_unix64")),
    "cpython-aarch64": Signature(("malloc", "updatewindow", "inflate", "ffi_call_SYSV")),
    "jdk": Signature(("malloc", "updatewindow", "inflate", "Java_java_util_zip_Inflater_inflateBytes")),
}

DEFAULT_PRESET = "cpython"


def parse_signature(text: str) -> Signature:
    """Parse 'S0,S1,S2,S3' (innermost first)."""
    parts = [p.strip() for p in text.split(",")]
    if any(not p for p in parts):
        raise ConfigurationError("CFG-0040", f"empty frame name in signature {text!r}")
    return Signature(tuple(parts))  # type: ignore[arg-type]


def resolve_signature(preset: Optional[str] = None, text: Optional[str] = None) -> Signature:
    """An explicit signature wins over a preset; neither means DEFAULT_PRESET."""
    if text:
        return parse_signature(text)
    name = preset or DEFAULT_PRESET
    try:
        return SIGNATURE_PRESETS[name]
    except KeyError:
        known = ", ".join(sorted(SIGNATURE_PRESETS))
        raise ConfigurationError("CFG-0040", f"unknown signature preset '{name}' (known: {known})") from None
