#  SPDX-License-Identifier: MIT OR Apache-2.0
#  Copyright (c) 2026 gwz

"""
Streaming signature scanner for memcheck XML reports.

The report is fed to an incremental SAX parser in fixed-size chunks. SAX
events are reduced to three token kinds (record start, frame, record end) by
an element-nesting state machine, and the tokens drive a second state machine
that looks for the four-frame signature inside each record. Only counters
survive a chunk, so report size does not bound memory use.

Memcheck XML shape (only the parts the scanner relies on):

    <valgrindoutput>
      <error>
        ...
        <stack>
          <frame><ip>..</ip><obj>..</obj><fn>malloc</fn>...</frame>
          <frame>...</frame>
        </stack>
      </error>
    </valgrindoutput>

Each <stack> is one allocation record; its frames are innermost first.
"""

from __future__ import annotations

import xml.sax
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, Optional
from xml.sax.handler import ContentHandler, feature_external_ges, feature_namespaces

from ia_errors import ExecutionError, ReportLocation, ReportStructureError
from ia_signature import Signature

CHUNK_SIZE = 64 * 1024

ROOT_ELEMENT = "valgrindoutput"
RECORD_ELEMENT = "stack"
FRAME_ELEMENT = "frame"
SYMBOL_ELEMENT = "fn"


# ==========================
# Report tokens
# ==========================

class TokenKind(Enum):
    RECORD_START = auto()  # <stack>
    FRAME = auto()  # </frame>, symbol is the <fn> text or None
    RECORD_END = auto()  # </stack>


@dataclass(frozen=True)
class ReportToken:
    kind: TokenKind
    symbol: Optional[str] = None

    def __repr__(self) -> str:
        if self.kind is TokenKind.FRAME:
            return f"FRAME({self.symbol!r})"
        return self.kind.name


RECORD_START = ReportToken(TokenKind.RECORD_START)
RECORD_END = ReportToken(TokenKind.RECORD_END)


# ==========================
# Element nesting
# ==========================

class ElementState(Enum):
    START = auto()  # before the root element
    ROOT = auto()  # inside the root, outside any record
    STACK = auto()  # inside <stack>
    FRAME = auto()  # inside <frame>
    FN = auto()  # inside <fn>, collecting text


class _ReportHandler(ContentHandler):
    """
    Turns SAX events into ReportTokens, rejecting nesting memcheck never emits.

    Tokens are queued on `pending`; the reader drains the queue after every
    chunk it feeds.
    """

    def __init__(self, filename: str) -> None:
        super().__init__()
        self.filename = filename
        self.state = ElementState.START
        self.pending: List[ReportToken] = []
        self._text: List[str] = []
        self._symbol: Optional[str] = None
        self._has_symbol = False
        self._locator = None

    def setDocumentLocator(self, locator) -> None:
        self._locator = locator

    def _error(self, code: str, message: str) -> ReportStructureError:
        line = column = None
        if self._locator is not None:
            line = self._locator.getLineNumber()
            column = self._locator.getColumnNumber()
        return ReportStructureError(code, message, ReportLocation(self.filename, line, column))

    def startElement(self, name, attrs) -> None:
        state = self.state
        if state is ElementState.START:
            if name != ROOT_ELEMENT:
                raise self._error("RPT-0020", f"expected <{ROOT_ELEMENT}> root element, got <{name}>")
            self.state = ElementState.ROOT
            return

        if state is ElementState.FN:
            raise self._error("RPT-0034", f"unexpected <{name}> inside <{SYMBOL_ELEMENT}>")

        if name == RECORD_ELEMENT:
            if state is not ElementState.ROOT:
                raise self._error("RPT-0030", f"<{RECORD_ELEMENT}> nested inside another <{RECORD_ELEMENT}>")
            self.state = ElementState.STACK
            self.pending.append(RECORD_START)
        elif name == FRAME_ELEMENT:
            if state is not ElementState.STACK:
                raise self._error("RPT-0031", f"<{FRAME_ELEMENT}> must be a direct child of <{RECORD_ELEMENT}>")
            self.state = ElementState.FRAME
            self._symbol = None
            self._has_symbol = False
        elif name == SYMBOL_ELEMENT:
            if state is not ElementState.FRAME:
                raise self._error("RPT-0032", f"<{SYMBOL_ELEMENT}> outside <{FRAME_ELEMENT}>")
            if self._has_symbol:
                raise self._error("RPT-0033", f"more than one <{SYMBOL_ELEMENT}> in a <{FRAME_ELEMENT}>")
            self.state = ElementState.FN
            self._text = []

    def characters(self, content) -> None:
        # expat may split one text node across several calls
        if self.state is ElementState.FN:
            self._text.append(content)

    def endElement(self, name) -> None:
        state = self.state
        if state is ElementState.FN and name == SYMBOL_ELEMENT:
            self._symbol = "".join(self._text).strip() or None
            self._has_symbol = True
            self._text = []
            self.state = ElementState.FRAME
        elif state is ElementState.FRAME and name == FRAME_ELEMENT:
            self.pending.append(ReportToken(TokenKind.FRAME, self._symbol))
            self.state = ElementState.STACK
        elif state is ElementState.STACK and name == RECORD_ELEMENT:
            self.pending.append(RECORD_END)
            self.state = ElementState.ROOT
        elif state is ElementState.ROOT and name == ROOT_ELEMENT:
            self.state = ElementState.START


def _make_parser(handler: ContentHandler):
    parser = xml.sax.make_parser()
    parser.setFeature(feature_namespaces, False)
    parser.setFeature(feature_external_ges, False)
    parser.setContentHandler(handler)
    return parser


def iter_report_tokens(
    stream: BinaryIO,
    filename: str = "<stream>",
    chunk_size: int = CHUNK_SIZE,
) -> Iterator[ReportToken]:
    """
    Yield the tokens of one memcheck XML report, reading `chunk_size` bytes at a time.

    Raises ReportStructureError if the document is malformed, truncated or nested
    in a way memcheck never produces. Tokens already yielded stay valid; callers
    must not treat a partial count as a result.
    """
    handler = _ReportHandler(filename)
    parser = _make_parser(handler)
    try:
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            parser.feed(chunk)
            if handler.pending:
                yield from handler.pending
                handler.pending.clear()
        parser.close()
    except xml.sax.SAXParseException as e:
        raise ReportStructureError(
            "RPT-0010",
            f"malformed memcheck XML: {e.getMessage()}",
            ReportLocation(filename, e.getLineNumber(), e.getColumnNumber()),
        ) from e
    yield from handler.pending
    handler.pending.clear()


# ==========================
# Signature matching
# ==========================

class MatchState(Enum):
    IDLE = auto()
    SAW_0 = auto()
    SAW_1 = auto()
    SAW_2 = auto()
    MATCHED = auto()  # record already counted; absorbing until the next record


_POSITION = {
    MatchState.IDLE: 0,
    MatchState.SAW_0: 1,
    MatchState.SAW_1: 2,
    MatchState.SAW_2: 3,
}

_ADVANCE = {
    MatchState.IDLE: MatchState.SAW_0,
    MatchState.SAW_0: MatchState.SAW_1,
    MatchState.SAW_1: MatchState.SAW_2,
    MatchState.SAW_2: MatchState.MATCHED,
}


def step(state: MatchState, signature: Signature, symbol: Optional[str]) -> MatchState:
    """
    Transition on one frame symbol.

    A mismatch in the middle of a window falls back to IDLE and re-tests the
    same frame, so a frame that opens a new window is never skipped.
    """
    if state is MatchState.MATCHED:
        return state
    if symbol is not None and symbol == signature[_POSITION[state]]:
        return _ADVANCE[state]
    if state is MatchState.IDLE:
        return state
    return step(MatchState.IDLE, signature, symbol)


class SignatureMatcher:
    """Counts records containing `signature`, one token at a time."""

    def __init__(self, signature: Signature) -> None:
        self.signature = signature
        self.state = MatchState.IDLE
        self.matches = 0
        self.records = 0
        self.frames = 0

    def feed(self, token: ReportToken) -> None:
        kind = token.kind
        if kind is TokenKind.RECORD_START:
            self.state = MatchState.IDLE
        elif kind is TokenKind.FRAME:
            self.frames += 1
            before = self.state
            self.state = step(before, self.signature, token.symbol)
            if self.state is MatchState.MATCHED and before is not MatchState.MATCHED:
                self.matches += 1
        elif kind is TokenKind.RECORD_END:
            self.records += 1
            self.state = MatchState.IDLE

    def result(self) -> "ScanResult":
        return ScanResult(matches=self.matches, records=self.records, frames=self.frames)


@dataclass(frozen=True)
class ScanResult:
    matches: int
    records: int
    frames: int

    def format(self) -> str:
        return f"records={self.records} frames={self.frames} matches={self.matches}"


def count_signature(tokens: Iterable[ReportToken], signature: Signature) -> ScanResult:
    matcher = SignatureMatcher(signature)
    for token in tokens:
        matcher.feed(token)
    return matcher.result()


def scan_stream(
    stream: BinaryIO,
    signature: Signature,
    filename: str = "<stream>",
    chunk_size: int = CHUNK_SIZE,
) -> ScanResult:
    return count_signature(iter_report_tokens(stream, filename, chunk_size), signature)


def scan_report(path: Path, signature: Signature, *, mode: Optional[str] = None) -> ScanResult:
    """
    Scan the memcheck XML report at `path`.

    Raises:
        ExecutionError:         the report is missing or cannot be read.
        ReportStructureError:   the report is malformed.
    """
    path = Path(path)
    try:
        with path.open("rb") as f:
            return scan_stream(f, signature, filename=str(path))
    except OSError as e:
        raise ExecutionError("EXE-0030", f"cannot read memcheck report [{path}]: {e}", mode=mode) from e
