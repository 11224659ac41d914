#  SPDX-License-Identifier: MIT OR Apache-2.0
#  Copyright (c) 2026 gwz

import argparse
from pathlib import Path

from ia_context import CheckContext, LogLevel
from ia_errors import CheckError, ConfigurationError
from ia_logger import log_error, log_info
from ia_paths import build_tool_paths
from ia_payload import DEFAULT_PAYLOAD, PayloadSpec, default_fixture_path, describe_zip_entry
from ia_runner import WorkloadRunner
from ia_scanner import scan_report
from ia_signature import SIGNATURE_PRESETS, Signature, resolve_signature
from ia_verdict import VerdictOrchestrator, VerdictStatus
from ia_workload import Mode

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANARY = 3
EXIT_ERROR = 4


def _exit_code_for(error: CheckError) -> int:
    if isinstance(error, ConfigurationError):
        return EXIT_USAGE
    # ExecutionError, ReportStructureError
    return EXIT_ERROR


def build_check_context(args: argparse.Namespace) -> CheckContext:
    """Build a CheckContext from command-line arguments."""
    verbosity = getattr(args, 'verbosity', 0)
    if verbosity >= 3:
        log_level = LogLevel.DEBUG
    elif verbosity >= 1:
        log_level = LogLevel.INFO
    else:
        log_level = LogLevel.ERROR

    timeout = getattr(args, 'timeout', None)
    if timeout is not None and timeout <= 0:
        raise ConfigurationError("CFG-0050", f"--timeout must be > 0, got [{timeout}]")

    context = CheckContext(
        timeout=timeout,
        keep_reports=not getattr(args, 'discard_reports', False),
        log_rich_format=getattr(args, 'log', False),
        log_level=log_level,
    )
    if getattr(args, 'work_dir', None):
        context.work_dir = Path(args.work_dir)
    if getattr(args, 'prefix', None):
        context.report_prefix = args.prefix
    return context


def build_signature(args: argparse.Namespace) -> Signature:
    return resolve_signature(preset=args.preset, text=args.signature)


def build_payload(args: argparse.Namespace) -> PayloadSpec:
    return PayloadSpec(
        header_len=DEFAULT_PAYLOAD.header_len if args.header_len is None else args.header_len,
        compressed_len=DEFAULT_PAYLOAD.compressed_len if args.compressed_len is None else args.compressed_len,
        uncompressed_len=DEFAULT_PAYLOAD.uncompressed_len if args.uncompressed_len is None else args.uncompressed_len,
    ).validate()


def build_runner(args: argparse.Namespace, context: CheckContext) -> WorkloadRunner:
    paths = build_tool_paths(
        valgrind=args.valgrind,
        runtime=args.runtime,
        runtime_home=args.runtime_home,
    )
    valgrind = paths.resolve_valgrind()
    runtime = paths.resolve_runtime()
    input_path = Path(args.input) if args.input else default_fixture_path()
    log_info(context, f"Valgrind: '{valgrind}'")
    log_info(context, f"Runtime: '{runtime}'")
    log_info(context, f"Input: '{input_path}'")
    return WorkloadRunner(
        valgrind,
        runtime,
        input_path,
        workload_args=args.workload,
        payload=build_payload(args),
        context=context,
    )


def cmd_run(args: argparse.Namespace) -> int:
    """Run the three-mode check and print the verdict."""
    context = build_check_context(args)
    try:
        signature = build_signature(args)
        runner = build_runner(args, context)
        verdict = VerdictOrchestrator(runner, signature, context).run()
    except CheckError as e:
        log_error(context, e.format())
        return _exit_code_for(e)

    if verdict.passed:
        print(verdict.reason)
        return EXIT_PASSED
    if verdict.status is VerdictStatus.CANARY_FAILED:
        log_error(context, f"error: [VRD-0010] {verdict.reason}")
        return EXIT_CANARY
    log_error(context, f"error: [VRD-0020] {verdict.reason}")
    return EXIT_FAILED


def cmd_worker(args: argparse.Namespace) -> int:
    """Run a single mode under memcheck and print its signature count."""
    context = build_check_context(args)
    try:
        mode = Mode.from_token(args.mode)
        signature = build_signature(args)
        runner = build_runner(args, context)
        result = VerdictOrchestrator(runner, signature, context).run_mode(mode)
    except CheckError as e:
        log_error(context, e.format())
        return _exit_code_for(e)

    print(f"'{result.mode.token}' leaks count: [{result.leak_count}]")
    return EXIT_PASSED


def cmd_scan(args: argparse.Namespace) -> int:
    """Count signature matches in existing memcheck XML reports."""
    context = build_check_context(args)
    try:
        signature = build_signature(args)
    except CheckError as e:
        log_error(context, e.format())
        return _exit_code_for(e)

    exit_code = EXIT_PASSED
    for report in args.reports:
        path = Path(report)
        try:
            result = scan_report(path, signature)
        except CheckError as e:
            log_error(context, e.format())
            exit_code = _exit_code_for(e)
            continue
        print(f"report: {path}")
        print(f"  records={result.records}")
        print(f"  frames={result.frames}")
        print(f"  matches={result.matches}")
    return exit_code


def cmd_describe_fixture(args: argparse.Namespace) -> int:
    """Print the payload constants of a zip entry."""
    context = build_check_context(args)
    try:
        spec = describe_zip_entry(Path(args.zip), args.entry)
    except CheckError as e:
        log_error(context, e.format())
        return _exit_code_for(e)

    print(f"header_len={spec.header_len}")
    print(f"compressed_len={spec.compressed_len}")
    print(f"uncompressed_len={spec.uncompressed_len}")
    print(
        f"options: --header-len {spec.header_len}"
        f" --compressed-len {spec.compressed_len}"
        f" --uncompressed-len {spec.uncompressed_len}"
    )
    return EXIT_PASSED


def _add_signature_args(parser: argparse.ArgumentParser) -> None:
    """Add the signature selection arguments."""
    parser.add_argument(
        "--preset",
        choices=sorted(SIGNATURE_PRESETS),
        help="Named signature (default: cpython)",
    )
    parser.add_argument(
        "--signature",
        metavar="S0,S1,S2,S3",
        help="Explicit signature, innermost frame first (overrides --preset)",
    )


def _add_tool_args(parser: argparse.ArgumentParser) -> None:
    """Add tool, runtime and workload location arguments."""
    parser.add_argument(
        "--valgrind",
        help="Path to valgrind (default: $IA_VALGRIND, /usr/bin/valgrind, /usr/local/bin/valgrind)",
    )
    parser.add_argument(
        "--runtime",
        help="Runtime executable running the workload (default: $IA_RUNTIME or this interpreter)",
    )
    parser.add_argument(
        "--runtime-home",
        help="Runtime installation directory searched for bin/python3 (default: $IA_RUNTIME_HOME)",
    )
    parser.add_argument(
        "--workload",
        action="append",
        default=[],
        metavar="ARG",
        help="Argument placed between the runtime and '<input> <mode>' (can be passed multiple times;"
             " default: the bundled ia_workload.py)",
    )


def _add_payload_args(parser: argparse.ArgumentParser) -> None:
    """Add input fixture arguments."""
    parser.add_argument("--input", "-i", help="Input zip fixture (default: bundled fixtures/payload.zip)")
    parser.add_argument("--header-len", type=int, help=f"Bytes skipped before the payload (default: {DEFAULT_PAYLOAD.header_len})")
    parser.add_argument("--compressed-len", type=int, help=f"Payload size (default: {DEFAULT_PAYLOAD.compressed_len})")
    parser.add_argument("--uncompressed-len", type=int, help=f"Inflated size (default: {DEFAULT_PAYLOAD.uncompressed_len})")


def _add_output_args(parser: argparse.ArgumentParser) -> None:
    """Add report placement and run control arguments."""
    parser.add_argument("--work-dir", "-w", help="Directory for reports and worker output (default: current directory)")
    parser.add_argument("--prefix", help="Report file name prefix (default: InflaterAllocWorker)")
    parser.add_argument("--timeout", type=float, help="Seconds allowed per instrumented run (default: no limit)")
    parser.add_argument("--discard-reports", action="store_true", help="Delete each report once it is scanned")


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(
        prog="iac",
        description="Detect zlib window allocations during single-pass inflate using memcheck",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    parser.add_argument("-v", "--verbose",
                        action='count',
                        default=0,
                        dest='verbosity',
                        help="Increase verbosity: -v=INFO, -vvv=DEBUG")
    parser.add_argument("-l", "--log",
                        action='store_true',
                        default=False,
                        help="Enable rich log formatting (timestamps, levels)")

    ###########################
    # run command
    ###########################
    p_run = subparsers.add_parser("run", help="Run the canary, baseline and tested modes and compare")
    _add_tool_args(p_run)
    _add_payload_args(p_run)
    _add_signature_args(p_run)
    _add_output_args(p_run)
    p_run.set_defaults(func=cmd_run)

    ###########################
    # worker command
    ###########################
    p_worker = subparsers.add_parser("worker", help="Run one mode under memcheck and count its leaks")
    _add_tool_args(p_worker)
    _add_payload_args(p_worker)
    _add_signature_args(p_worker)
    _add_output_args(p_worker)
    p_worker.add_argument("mode", choices=[m.token for m in Mode], help="Workload mode")
    p_worker.set_defaults(func=cmd_worker)

    ###########################
    # scan command
    ###########################
    p_scan = subparsers.add_parser("scan", help="Count signature matches in memcheck XML reports")
    _add_signature_args(p_scan)
    p_scan.add_argument("reports", nargs="+", help="memcheck XML report files")
    p_scan.set_defaults(func=cmd_scan)

    ###########################
    # describe-fixture command
    ###########################
    p_desc = subparsers.add_parser("describe-fixture", help="Print payload constants of a zip entry")
    p_desc.add_argument("zip", help="Zip file")
    p_desc.add_argument("entry", nargs="?", help="Entry name (default: first entry)")
    p_desc.set_defaults(func=cmd_describe_fixture)

    args = parser.parse_args(argv)

    try:
        rc = args.func(args)
    except ConfigurationError as e:
        log_error(CheckContext(log_level=LogLevel.ERROR), e.format())
        rc = EXIT_USAGE
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
