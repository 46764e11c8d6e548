import argparse
import shlex
import sys

from .client import RawKernel, error_text, execute_result, stream_text
from .connection import Connection, ConnectionInfo
from .correlator import Correlator
from .message import execute_request


def _print_turn(collected) -> None:
    out = stream_text(collected, "stdout")
    if out: print(out, end="" if out.endswith("\n") else "\n")
    err = stream_text(collected, "stderr")
    if err: print(err, end="" if err.endswith("\n") else "\n", file=sys.stderr)
    result = execute_result(collected)
    if result is not None: print(result)
    error = error_text(collected)
    if error is not None: print(error, file=sys.stderr)


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("code", nargs="+", help="Code cells, executed in order")
    parser.add_argument("--timeout", type=float, default=None, help="Per-request timeout in seconds")
    parser.add_argument("--legacy-matching", action="store_true", help="Correlate by message type only, ignoring parent msg_id")


def _run(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(prog="ipyraw run")
    _add_common(parser)
    parser.add_argument("--kernel-cmd", help="Kernel command line; {connection_file} is substituted")
    parser.add_argument("--start-port", type=int, help="First of five consecutive ports")
    args = parser.parse_args(argv)

    kernel_argv = shlex.split(args.kernel_cmd) if args.kernel_cmd else None
    kernel = RawKernel(kernel_argv, timeout=args.timeout, match_parent=not args.legacy_matching)
    with kernel.start(args.start_port):
        for code in args.code: _print_turn(kernel.execute(code))
        kernel.shutdown()
    return 0


def _connect(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(prog="ipyraw connect")
    parser.add_argument("-f", "--connection-file", required=True)
    _add_common(parser)
    args = parser.parse_args(argv)

    with Connection() as conn:
        conn.connect(ConnectionInfo.from_file(args.connection_file))
        correlator = Correlator(conn, timeout=args.timeout, match_parent=not args.legacy_matching)
        correlator.wait_for_ready()
        for code in args.code: _print_turn(correlator.send(execute_request(code)))
    return 0


def main() -> None:
    argv = sys.argv[1:]
    if argv and argv[0] == "connect": raise SystemExit(_connect(argv[1:]))
    if argv and argv[0] == "run": argv = argv[1:]
    raise SystemExit(_run(argv))


if __name__ == "__main__":
    main()
