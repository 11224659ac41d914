#  SPDX-License-Identifier: MIT OR Apache-2.0
#  Copyright (c) 2026 gwz

"""
Raw inflater bound to the system zlib through ctypes.

CPython's zlib module cannot stand in for it here: `zlib.decompress()` is
the only call that inflates with Z_FINISH, and it calls inflateEnd() before
returning, which frees the window. `Decompress.decompress()` keeps the
stream alive but inflates with Z_SYNC_FLUSH, which allocates the window even
when the output fits in one pass.

An Inflater never calls inflateEnd() on its own, so the window (if zlib
allocated one) stays live until the process exits.
"""

import ctypes
import ctypes.util
from typing import Optional

from ia_errors import WorkloadError

Z_OK = 0
Z_STREAM_END = 1
Z_BUF_ERROR = -5
Z_FINISH = 4

RAW_WBITS = -15
WINDOW_SIZE = 1 << 15

alloc_func = ctypes.CFUNCTYPE(ctypes.c_void_p, ctypes.c_void_p, ctypes.c_uint, ctypes.c_uint)
free_func = ctypes.CFUNCTYPE(None, ctypes.c_void_p, ctypes.c_void_p)


class ZStream(ctypes.Structure):
    # zlib.h z_stream
    _fields_ = [
        ("next_in", ctypes.c_void_p),
        ("avail_in", ctypes.c_uint),
        ("total_in", ctypes.c_ulong),
        ("next_out", ctypes.c_void_p),
        ("avail_out", ctypes.c_uint),
        ("total_out", ctypes.c_ulong),
        ("msg", ctypes.c_char_p),
        ("state", ctypes.c_void_p),
        ("zalloc", alloc_func),
        ("zfree", free_func),
        ("opaque", ctypes.c_void_p),
        ("data_type", ctypes.c_int),
        ("adler", ctypes.c_ulong),
        ("reserved", ctypes.c_ulong),
    ]


_libz: Optional[ctypes.CDLL] = None


def load_zlib() -> ctypes.CDLL:
    global _libz
    if _libz is None:
        name = ctypes.util.find_library("z")
        if name is None:
            raise WorkloadError("WRK-0030", "cannot find the zlib shared library")
        try:
            lib = ctypes.CDLL(name)
        except OSError as e:
            raise WorkloadError("WRK-0030", f"cannot load zlib [{name}]: {e}") from e
        lib.zlibVersion.restype = ctypes.c_char_p
        lib.zlibVersion.argtypes = []
        lib.inflateInit2_.restype = ctypes.c_int
        lib.inflateInit2_.argtypes = [ctypes.POINTER(ZStream), ctypes.c_int, ctypes.c_char_p, ctypes.c_int]
        lib.inflate.restype = ctypes.c_int
        lib.inflate.argtypes = [ctypes.POINTER(ZStream), ctypes.c_int]
        lib.inflateEnd.restype = ctypes.c_int
        lib.inflateEnd.argtypes = [ctypes.POINTER(ZStream)]
        _libz = lib
    return _libz


class Inflater:
    """
    One raw-deflate stream (no zlib header or trailer).

    Every inflate() call uses Z_FINISH; only the size of the output buffer
    decides whether zlib finishes in one call or has to keep a window.

    Args:
        zalloc, zfree: optional allocator callbacks; None uses zlib's own.
    """

    def __init__(self, zalloc: Optional[alloc_func] = None, zfree: Optional[free_func] = None):
        self._lib = load_zlib()
        self._stream = ZStream()
        if zalloc is not None:
            self._stream.zalloc = zalloc
        if zfree is not None:
            self._stream.zfree = zfree
        # the stream keeps raw pointers into these
        self._callbacks = (zalloc, zfree)
        self._input = None
        self._active = False
        self.finished = False

        version = self._lib.zlibVersion()
        err = self._lib.inflateInit2_(ctypes.byref(self._stream), RAW_WBITS, version, ctypes.sizeof(ZStream))
        if err != Z_OK:
            raise WorkloadError("WRK-0020", f"inflateInit2 failed with code [{err}]")
        self._active = True

    def set_input(self, data: bytes) -> None:
        self._input = ctypes.create_string_buffer(data, len(data))
        self._stream.next_in = ctypes.addressof(self._input)
        self._stream.avail_in = len(data)

    def inflate(self, out) -> int:
        """Inflate into the ctypes buffer `out`, returning the number of bytes written; 0 at end of stream."""
        if self.finished:
            return 0
        self._stream.next_out = ctypes.addressof(out)
        self._stream.avail_out = len(out)
        err = self._lib.inflate(ctypes.byref(self._stream), Z_FINISH)
        produced = len(out) - self._stream.avail_out
        if err == Z_STREAM_END:
            self.finished = True
        elif err not in (Z_OK, Z_BUF_ERROR):
            msg = self._stream.msg.decode("utf-8", "replace") if self._stream.msg else "no message"
            raise WorkloadError("WRK-0020", f"inflate operation failed with code [{err}]: {msg}")
        return produced

    def end(self) -> None:
        """Release zlib's state; the workload never does this."""
        if self._active:
            self._lib.inflateEnd(ctypes.byref(self._stream))
            self._active = False
