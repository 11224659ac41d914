#  SPDX-License-Identifier: MIT OR Apache-2.0
#  Copyright (c) 2026 gwz

import io

import pytest

from conftest import S0, S1, S2, S3, SIG, UNRELATED_STACK, WINDOW_STACK, memcheck_xml
from ia_errors import ExecutionError, ReportStructureError
from ia_scanner import (
    RECORD_END,
    RECORD_START,
    MatchState,
    ReportToken,
    TokenKind,
    count_signature,
    iter_report_tokens,
    scan_report,
    scan_stream,
    step,
)


def _frame(symbol):
    return ReportToken(TokenKind.FRAME, symbol)


def _tokens(*records):
    for frames in records:
        yield RECORD_START
        for fn in frames:
            yield _frame(fn)
        yield RECORD_END


def _count(*records) -> int:
    return count_signature(_tokens(*records), SIG).matches


# ---------------------------------------------------------------------------
# Transition function
# ---------------------------------------------------------------------------


def test_step_advances_through_the_window():
    state = MatchState.IDLE
    for fn, expected in zip(SIG.frames, [MatchState.SAW_0, MatchState.SAW_1, MatchState.SAW_2, MatchState.MATCHED]):
        state = step(state, SIG, fn)
        assert state is expected


def test_step_mismatch_resets_to_idle():
    assert step(MatchState.SAW_1, SIG, "memcpy") is MatchState.IDLE
    assert step(MatchState.SAW_2, SIG, None) is MatchState.IDLE


def test_step_mismatch_retests_symbol_as_window_start():
    assert step(MatchState.SAW_0, SIG, S0) is MatchState.SAW_0
    assert step(MatchState.SAW_2, SIG, S0) is MatchState.SAW_0


def test_step_matched_is_absorbing():
    assert step(MatchState.MATCHED, SIG, S0) is MatchState.MATCHED
    assert step(MatchState.MATCHED, SIG, "anything") is MatchState.MATCHED


# ---------------------------------------------------------------------------
# Token-level counting
# ---------------------------------------------------------------------------


def test_no_records_counts_zero():
    result = count_signature([], SIG)
    assert (result.matches, result.records, result.frames) == (0, 0, 0)


def test_short_records_count_zero():
    assert _count([S0], [S0, S1], [S0, S1, S2], []) == 0


def test_exact_window_counts_once():
    assert _count([S0, S1, S2, S3]) == 1


def test_window_with_trailing_frames_counts_once():
    assert _count([S0, S1, S2, S3, "main", "__libc_start_main"]) == 1


def test_window_in_middle_of_stack():
    assert _count(["operator new", "PyMem_RawMalloc", *WINDOW_STACK]) == 1


def test_incomplete_window_at_record_end():
    assert _count(["malloc", S0, S1, S2]) == 0


def test_window_out_of_order_does_not_match():
    assert _count([S1, S0, S2, S3]) == 0
    assert _count([S0, S1, S3, S2]) == 0


def test_window_must_be_contiguous():
    assert _count([S0, S1, "memcpy", S2, S3]) == 0


def test_sliding_restart_on_repeated_first_frame():
    assert _count([S0, S0, S1, S2, S3]) == 1


def test_restart_after_partial_window():
    assert _count([S0, S1, S0, S1, S2, S3]) == 1


def test_frame_without_symbol_breaks_window():
    assert _count([S0, S1, None, S2, S3]) == 0
    assert _count([None, S0, S1, S2, S3]) == 1


def test_match_never_spans_records():
    assert _count([UNRELATED_STACK[0], S0, S1], [S2, S3, "main"]) == 0
    assert _count([S0, S1, S2], [S3]) == 0


def test_record_counted_once_even_with_two_windows():
    assert _count([S0, S1, S2, S3, S0, S1, S2, S3]) == 1


def test_each_matching_record_counts():
    result = count_signature(_tokens(WINDOW_STACK, UNRELATED_STACK, WINDOW_STACK), SIG)
    assert result.matches == 2
    assert result.records == 3
    assert result.frames == 2 * len(WINDOW_STACK) + len(UNRELATED_STACK)


def test_symbol_match_is_exact():
    assert _count([S0 + "_ex", S1, S2, S3]) == 0
    assert _count([S0, S1.upper(), S2, S3]) == 0


# ---------------------------------------------------------------------------
# XML streaming
# ---------------------------------------------------------------------------


def test_tokens_from_xml():
    data = memcheck_xml([[S0, None, "main"]]).encode()
    tokens = list(iter_report_tokens(io.BytesIO(data)))
    assert tokens == [RECORD_START, _frame(S0), _frame(None), _frame("main"), RECORD_END]


def test_report_without_records_counts_zero(write_report):
    result = scan_report(write_report([]), SIG)
    assert result.matches == 0
    assert result.records == 0


def test_report_with_only_short_records_counts_zero(write_report):
    result = scan_report(write_report([[S0, S1, S2], [S0], ["main"]]), SIG)
    assert result.matches == 0
    assert result.records == 3


def test_report_counts_matching_records(write_report):
    path = write_report([WINDOW_STACK, UNRELATED_STACK, [S0, S1, S2, S3], [S0, S1, S2]])
    assert scan_report(path, SIG).matches == 2


def test_report_cross_record_concatenation_does_not_match(write_report):
    path = write_report([["main", S0, S1], [S2, S3]])
    assert scan_report(path, SIG).matches == 0


def test_scan_is_idempotent(write_report):
    path = write_report([WINDOW_STACK, UNRELATED_STACK, WINDOW_STACK])
    first = scan_report(path, SIG)
    second = scan_report(path, SIG)
    assert first == second
    assert first.matches == 2


@pytest.mark.parametrize("chunk_size", [1, 7, 64, 4096])
def test_chunk_size_does_not_change_count(chunk_size):
    data = memcheck_xml([WINDOW_STACK, UNRELATED_STACK, [S0, S1, S2, S3]] * 5).encode()
    result = scan_stream(io.BytesIO(data), SIG, chunk_size=chunk_size)
    assert result.matches == 10
    assert result.records == 15


def test_symbol_text_split_across_chunks_is_joined():
    data = memcheck_xml([[S0, S1, S2, S3]]).encode()
    # one byte at a time splits every <fn> text node
    assert scan_stream(io.BytesIO(data), SIG, chunk_size=1).matches == 1


def test_large_report_streams(write_report):
    records = [UNRELATED_STACK] * 2000 + [WINDOW_STACK] + [UNRELATED_STACK] * 2000
    result = scan_report(write_report(records), SIG)
    assert result.matches == 1
    assert result.records == 4001


def test_stacks_outside_errors_are_records(write_xml):
    path = write_xml(
        f"""\
        <?xml version="1.0"?>
        <valgrindoutput>
          <error>
            <kind>InvalidRead</kind>
            <stack><frame><fn>main</fn></frame></stack>
            <auxwhat>Address is inside a block allocated at</auxwhat>
            <stack>
              <frame><fn>{S0}</fn></frame>
              <frame><fn>{S1}</fn></frame>
              <frame><fn>{S2}</fn></frame>
              <frame><fn>{S3}</fn></frame>
            </stack>
          </error>
        </valgrindoutput>
        """
    )
    result = scan_report(path, SIG)
    assert result.records == 2
    assert result.matches == 1


def test_symbol_whitespace_is_stripped(write_xml):
    path = write_xml(
        f"""\
        <valgrindoutput><stack>
          <frame><fn> {S0} </fn></frame>
          <frame><fn>{S1}</fn></frame>
          <frame><fn>
            {S2}
          </fn></frame>
          <frame><fn>{S3}</fn></frame>
        </stack></valgrindoutput>
        """
    )
    assert scan_report(path, SIG).matches == 1


def test_escaped_symbol_text(write_report):
    path = write_report([["operator new(unsigned long)", "std::vector<int>::push_back", S0, S1, S2, S3]])
    assert scan_report(path, SIG).matches == 1


# ---------------------------------------------------------------------------
# Structural errors
# ---------------------------------------------------------------------------


def _structure_error(path) -> ReportStructureError:
    with pytest.raises(ReportStructureError) as exc:
        scan_report(path, SIG)
    return exc.value


def test_empty_file_is_structural_error(tmp_path):
    path = tmp_path / "empty.xml"
    path.write_bytes(b"")
    assert _structure_error(path).code == "RPT-0010"


def test_truncated_report_is_structural_error(tmp_path):
    text = memcheck_xml([WINDOW_STACK, WINDOW_STACK])
    path = tmp_path / "truncated.xml"
    path.write_text(text[: len(text) // 2], encoding="utf-8")
    err = _structure_error(path)
    assert err.code == "RPT-0010"
    assert err.loc.filename == str(path)


def test_not_xml_is_structural_error(write_xml):
    err = _structure_error(write_xml("==1234== Memcheck, a memory error detector\n"))
    assert err.code == "RPT-0010"
    assert err.loc.line == 1


def test_unterminated_stack_is_structural_error(write_xml):
    err = _structure_error(write_xml("<valgrindoutput><stack><frame><fn>malloc</fn></frame></valgrindoutput>"))
    assert err.code == "RPT-0010"


def test_wrong_root_is_structural_error(write_xml):
    err = _structure_error(write_xml("<report><stack></stack></report>"))
    assert err.code == "RPT-0020"
    assert "<report>" in err.message


def test_nested_stack_is_structural_error(write_xml):
    err = _structure_error(write_xml("<valgrindoutput><stack><stack></stack></stack></valgrindoutput>"))
    assert err.code == "RPT-0030"


def test_frame_outside_stack_is_structural_error(write_xml):
    err = _structure_error(write_xml("<valgrindoutput><frame><fn>malloc</fn></frame></valgrindoutput>"))
    assert err.code == "RPT-0031"


def test_nested_frame_is_structural_error(write_xml):
    err = _structure_error(
        write_xml("<valgrindoutput><stack><frame><frame/></frame></stack></valgrindoutput>")
    )
    assert err.code == "RPT-0031"


def test_fn_outside_frame_is_structural_error(write_xml):
    err = _structure_error(write_xml("<valgrindoutput><stack><fn>malloc</fn></stack></valgrindoutput>"))
    assert err.code == "RPT-0032"


def test_two_fn_in_frame_is_structural_error(write_xml):
    err = _structure_error(
        write_xml("<valgrindoutput><stack><frame><fn>a</fn><fn>b</fn></frame></stack></valgrindoutput>")
    )
    assert err.code == "RPT-0033"


def test_element_inside_fn_is_structural_error(write_xml):
    err = _structure_error(
        write_xml("<valgrindoutput><stack><frame><fn><b>malloc</b></fn></frame></stack></valgrindoutput>")
    )
    assert err.code == "RPT-0034"


def test_structural_error_reports_location(write_xml):
    err = _structure_error(
        write_xml(
            """\
            <valgrindoutput>
              <stack>
                <stack/>
              </stack>
            </valgrindoutput>
            """
        )
    )
    assert err.loc.line == 3
    assert err.format().startswith(f"{err.loc.filename}:3:")


def test_missing_report_is_execution_error(tmp_path):
    with pytest.raises(ExecutionError) as exc:
        scan_report(tmp_path / "absent.xml", SIG, mode="inflate")
    assert exc.value.code == "EXE-0030"
    assert exc.value.mode == "inflate"
