from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import Callable, Optional, Sequence

from tools.checksum_core import ChecksumConfig, ChecksumPipeline, Outcome, OutcomeStatus
from tools.checksum_errors import LedgerWriteError, SetupError, TraversalError
from tools.checksum_ledger import DEFAULT_FLUSH_EVERY, RecordFormat
from tools.hash_providers import DEFAULT_ALGORITHM, available_algorithms, parse_key
from tools.path_reconciler import ReconcileStrategy

log = logging.getLogger("tree_checksum")

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Record or verify checksums for every file in a directory tree")
    parser.add_argument("--dir", default=".", help="Directory to scan")
    parser.add_argument("--list", dest="list_path", default=None, help="Checksum list file (stdout when generating without one)")
    parser.add_argument("--verify", action="store_true", help="Verify the directory against --list")
    parser.add_argument("--verbose", action="store_true", help="Print every file, not only mismatches")
    parser.add_argument("--progress", action="store_true", help="Print processed/total once per second")
    parser.add_argument("--json", action="store_true", help="Read and write JSON lines instead of tab separated records")
    parser.add_argument(
        "--algo",
        default=DEFAULT_ALGORITHM,
        help=f"Hash algorithm: {'|'.join(available_algorithms())} (default: {DEFAULT_ALGORITHM})",
    )
    parser.add_argument("--key", default=None, help="Hex key for keyed algorithms (blake2b, blake3)")
    parser.add_argument("--threads", type=int, default=None, help="Hashing worker count (default: CPU count)")
    parser.add_argument(
        "--strategy",
        choices=[strategy.value for strategy in ReconcileStrategy],
        default=ReconcileStrategy.LAYOUT.value,
        help="How recorded paths are mapped onto --dir when verifying",
    )
    parser.add_argument(
        "--flush-every",
        type=int,
        default=DEFAULT_FLUSH_EVERY,
        help="Records written between forced flushes of the checksum list",
    )
    parser.add_argument("--follow-symlinks", action="store_true", help="Follow symlinks when scanning")
    parser.add_argument("--best-effort", action="store_true", help="Skip unreadable directories instead of aborting")
    parser.add_argument("--log-level", choices=_LOG_LEVELS, default="INFO", help="Logging verbosity (stderr)")
    return parser


def _make_config(args: argparse.Namespace) -> ChecksumConfig:
    if args.threads is not None and args.threads < 1:
        raise SetupError("--threads must be at least 1")
    return ChecksumConfig(
        root=Path(args.dir).expanduser(),
        list_path=Path(args.list_path).expanduser() if args.list_path else None,
        verify=args.verify,
        verbose=args.verbose,
        progress=args.progress,
        record_format=RecordFormat.JSON if args.json else RecordFormat.TEXT,
        algorithm=args.algo,
        key=parse_key(args.key),
        thread_count=args.threads,
        strategy=ReconcileStrategy(args.strategy),
        flush_every=args.flush_every,
        follow_symlinks=args.follow_symlinks,
        best_effort=args.best_effort,
    )


def _stdout(line: str) -> None:
    print(line, flush=True)


def _stderr(line: str) -> None:
    print(line, file=sys.stderr, flush=True)


def _log_generated(verbose: bool) -> Callable[[Outcome], None]:
    def _on_result(outcome: Outcome) -> None:
        if verbose and outcome.status == OutcomeStatus.OK:
            log.info("%s %s", outcome.detail, outcome.path)

    return _on_result


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s")

    stop_event = threading.Event()
    try:
        config = _make_config(args)
        if config.verify:
            pipeline = ChecksumPipeline(
                config,
                stop_event,
                line_callback=_stdout,
                progress_callback=_stdout,
                status_callback=log.debug,
            )
        else:
            # Without --list the records themselves go to stdout.
            progress_out = _stdout if config.list_path else _stderr
            pipeline = ChecksumPipeline(
                config,
                stop_event,
                line_callback=log.warning,
                progress_callback=progress_out,
                status_callback=log.debug,
                result_callback=_log_generated(config.verbose),
            )
    except SetupError as exc:
        log.error("%s", exc)
        return 1

    try:
        summary = pipeline.run()
    except SetupError as exc:
        log.error("%s", exc)
        return 1
    except TraversalError as exc:
        log.error("Scan aborted: %s", exc)
        return 1
    except LedgerWriteError as exc:
        log.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        summary = pipeline.interrupt()
        if not config.verify:
            log.warning("Interrupted after hashing %d files", summary.total)
        return 130

    if not config.verify:
        log.info(
            "Hashed %d files (%d failed, %d already recorded)",
            summary.match,
            summary.errors,
            summary.skipped,
        )
    return 0 if summary.success else 2


if __name__ == "__main__":
    sys.exit(main())
