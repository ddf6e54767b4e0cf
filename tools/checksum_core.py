from __future__ import annotations

import os
import queue
import stat
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from .checksum_errors import LedgerWriteError, SetupError, TraversalError
from .checksum_ledger import (
    DEFAULT_FLUSH_EVERY,
    ChecksumEntry,
    ChecksumLedger,
    RecordFormat,
    load_ledger,
    read_entries,
)
from .hash_providers import DEFAULT_ALGORITHM, HashProvider, get_provider, hash_file
from .path_reconciler import PathReconciler, ReconcileStrategy, normalize_separators


_QUEUE_FACTOR = 4
_PROGRESS_INTERVAL = 1.0


class OutcomeStatus(str, Enum):
    OK = "OK"
    MISMATCH = "MISMATCH"
    ERROR = "ERROR"


@dataclass(frozen=True)
class Outcome:
    path: str
    status: OutcomeStatus
    detail: str = ""

    def describe(self) -> str:
        if self.status == OutcomeStatus.ERROR:
            return f"{self.path} ERROR: {self.detail}"
        return f"{self.path} {self.status.value}"


# ---------------------------------------------------------------- walker --
def _child_path(parent: str, name: str) -> str:
    if parent == os.curdir:
        return name
    return os.path.join(parent, name)


def iter_files(
    root: Union[str, Path],
    skip: Optional[Iterable[str]] = None,
    exclude: Optional[Iterable[Union[str, Path]]] = None,
    follow_symlinks: bool = False,
    on_error: Optional[Callable[[TraversalError], None]] = None,
    on_skip: Optional[Callable[[str], None]] = None,
    stop_event: Optional[threading.Event] = None,
) -> Iterator[str]:
    """Yield every regular file below ``root`` in a single pass.

    Paths are joined onto ``root`` exactly as given so they compare equal to
    the paths a previous run recorded. Entries of ``skip`` are matched after
    separator normalisation; ``exclude`` holds files (the ledger itself) that
    must never be hashed. A directory that cannot be listed raises
    :class:`TraversalError` unless ``on_error`` is given, in which case the
    error is reported and the walk continues.
    """

    root_str = os.fspath(root)
    skip_keys: Set[str] = {normalize_separators(p) for p in skip} if skip else set()
    excluded = {os.path.normcase(os.path.abspath(os.fspath(p))) for p in exclude or ()}
    visited: Set[Tuple[int, int]] = set()
    stack = [root_str]
    while stack:
        if stop_event is not None and stop_event.is_set():
            return
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
            if follow_symlinks:
                info = os.stat(current)
                marker = (info.st_dev, info.st_ino)
                if marker in visited:
                    continue
                visited.add(marker)
        except OSError as exc:
            error = TraversalError(current, exc)
            if on_error is None:
                raise error from exc
            on_error(error)
            continue
        subdirs: List[str] = []
        for entry in entries:
            path = _child_path(current, entry.name)
            try:
                if entry.is_symlink() and not follow_symlinks:
                    continue
                if entry.is_dir(follow_symlinks=follow_symlinks):
                    subdirs.append(path)
                    continue
                if not entry.is_file(follow_symlinks=follow_symlinks):
                    continue
                if not stat.S_ISREG(entry.stat(follow_symlinks=follow_symlinks).st_mode):
                    continue
            except OSError:
                continue
            if excluded and os.path.normcase(os.path.abspath(path)) in excluded:
                continue
            if normalize_separators(path) in skip_keys:
                if on_skip is not None:
                    on_skip(path)
                continue
            yield path
        stack.extend(reversed(subdirs))


# ----------------------------------------------------------- dispatching --
class ProgressCounter:
    """Processed-path counter; readers never take the lock."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def value(self) -> int:
        return self._value


_STOP = object()
_WORKER_DONE = object()


class Dispatcher:
    """Bounded fan-out of paths to hashing threads with fan-in of outcomes.

    A producer thread feeds a bounded job queue (blocking while it is full),
    ``workers`` threads of a :class:`ThreadPoolExecutor` claim jobs and push
    one :class:`Outcome` per claimed path onto the result queue. :meth:`run`
    yields outcomes as they arrive and only returns once the pool has shut
    down.
    """

    def __init__(
        self,
        task: Callable[[str], Outcome],
        workers: Optional[int] = None,
        queue_size: Optional[int] = None,
        stop_event: Optional[threading.Event] = None,
        pause_event: Optional[threading.Event] = None,
        counter: Optional[ProgressCounter] = None,
    ) -> None:
        self.task = task
        self.workers = max(1, workers or os.cpu_count() or 1)
        self.queue_size = max(1, queue_size or self.workers * _QUEUE_FACTOR)
        self.stop_event = stop_event or threading.Event()
        self.pause_event = pause_event
        self.counter = counter or ProgressCounter()

    def _execute(self, path: str) -> Outcome:
        try:
            return self.task(path)
        except Exception as exc:
            return Outcome(path, OutcomeStatus.ERROR, str(exc))
        finally:
            self.counter.increment()

    def _wait_for_resume(self, halt: "_AnyEvent") -> bool:
        if self.pause_event is None:
            return not halt.is_set()
        while not self.pause_event.wait(0.1):
            if halt.is_set():
                return False
        return not halt.is_set()

    def run(self, paths: Iterable[str]) -> Iterator[Outcome]:
        jobs: "queue.Queue[object]" = queue.Queue(maxsize=self.queue_size)
        results: "queue.Queue[object]" = queue.Queue()
        failures: List[BaseException] = []
        abandoned = threading.Event()
        halt = _AnyEvent(self.stop_event, abandoned)

        def _produce() -> None:
            try:
                for path in paths:
                    if halt.is_set():
                        break
                    while True:
                        try:
                            jobs.put(path, timeout=0.1)
                            break
                        except queue.Full:
                            if halt.is_set():
                                return
            except Exception as exc:
                failures.append(exc)
            finally:
                for _ in range(self.workers):
                    jobs.put(_STOP)

        def _work() -> None:
            while True:
                job = jobs.get()
                if job is _STOP:
                    break
                if not self._wait_for_resume(halt):
                    continue
                results.put(self._execute(job))

        executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="checksum-hash")
        futures = []
        for _ in range(self.workers):
            future = executor.submit(_work)
            future.add_done_callback(lambda _f: results.put(_WORKER_DONE))
            futures.append(future)
        producer = threading.Thread(target=_produce, name="checksum-dispatch", daemon=True)
        producer.start()

        finished = 0
        try:
            while finished < len(futures):
                item = results.get()
                if item is _WORKER_DONE:
                    finished += 1
                    continue
                yield item  # type: ignore[misc]
        finally:
            if finished < len(futures):
                abandoned.set()
                while finished < len(futures):
                    if results.get() is _WORKER_DONE:
                        finished += 1
            producer.join()
            executor.shutdown(wait=True)
        if failures:
            raise failures[0]
        for future in futures:
            future.result()


class _AnyEvent:
    def __init__(self, *events: threading.Event) -> None:
        self._events = events

    def is_set(self) -> bool:
        return any(event.is_set() for event in self._events)


# ------------------------------------------------------------ aggregation --
class ResultAggregator:
    """Running tally of outcomes.

    Errors are folded into ``mismatch`` and also counted in ``errors``. The
    fold only adds counters, so the result does not depend on arrival order.
    """

    def __init__(self, verbose: bool = False, line_callback: Optional[Callable[[str], None]] = None) -> None:
        self.verbose = verbose
        self.line_callback = line_callback
        self.total = 0
        self.match = 0
        self.mismatch = 0
        self.errors = 0
        self.warnings: List[str] = []
        self._finished = False

    def _emit(self, line: str) -> None:
        if self.line_callback is not None:
            self.line_callback(line)

    def fold(self, outcome: Outcome) -> None:
        self.total += 1
        if outcome.status == OutcomeStatus.OK:
            self.match += 1
        else:
            self.mismatch += 1
            if outcome.status == OutcomeStatus.ERROR:
                self.errors += 1
        if self.verbose or outcome.status != OutcomeStatus.OK:
            self._emit(outcome.describe())

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        self._emit(f"WARNING: {message}")

    def merge(self, other: "ResultAggregator") -> "ResultAggregator":
        merged = ResultAggregator(self.verbose, self.line_callback)
        merged.total = self.total + other.total
        merged.match = self.match + other.match
        merged.mismatch = self.mismatch + other.mismatch
        merged.errors = self.errors + other.errors
        merged.warnings = self.warnings + other.warnings
        return merged

    @property
    def success(self) -> bool:
        return self.mismatch == 0

    def counts(self) -> Tuple[int, int, int]:
        return self.total, self.match, self.mismatch

    def summary_lines(self, cancelled: bool = False, planned: Optional[int] = None) -> List[str]:
        lines = []
        if cancelled:
            of_planned = f" of {planned}" if planned is not None else ""
            lines.append(f"Cancelled after {self.total}{of_planned} files")
        elif self.mismatch == 0 and not self.verbose:
            lines.append("All files match")
        lines.append(f"Total:{self.total} Match:{self.match} Mismatch:{self.mismatch}")
        return lines

    def finish(self, cancelled: bool = False, planned: Optional[int] = None) -> None:
        if self._finished:
            return
        self._finished = True
        for line in self.summary_lines(cancelled, planned):
            self._emit(line)


class ProgressReporter:
    def __init__(
        self,
        counter: ProgressCounter,
        total: int,
        emit: Callable[[str], None],
        enabled: bool = True,
        interval: float = _PROGRESS_INTERVAL,
    ) -> None:
        self.counter = counter
        self.total = total
        self.emit = emit
        self.enabled = enabled
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def active(self) -> bool:
        return self.enabled and self.total > 0

    def _report(self) -> None:
        self.emit(f"{self.counter.value}/{self.total}")

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self._report()

    def start(self) -> "ProgressReporter":
        if self.active and self._thread is None:
            self._thread = threading.Thread(target=self._loop, name="checksum-progress", daemon=True)
            self._thread.start()
        return self

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join()
        self._thread = None
        self._report()

    def __enter__(self) -> "ProgressReporter":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


# --------------------------------------------------------------- pipeline --
@dataclass
class RunSummary:
    total: int = 0
    match: int = 0
    mismatch: int = 0
    errors: int = 0
    skipped: int = 0
    collisions: int = 0
    planned: int = 0
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.mismatch == 0 and not self.cancelled

    def as_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "planned": self.planned,
            "match": self.match,
            "mismatch": self.mismatch,
            "errors": self.errors,
            "skipped": self.skipped,
            "collisions": self.collisions,
            "cancelled": int(self.cancelled),
        }


@dataclass
class ChecksumConfig:
    root: Path
    list_path: Optional[Path] = None
    verify: bool = False
    verbose: bool = False
    progress: bool = False
    record_format: RecordFormat = RecordFormat.TEXT
    algorithm: str = DEFAULT_ALGORITHM
    key: Optional[bytes] = None
    thread_count: Optional[int] = None
    strategy: ReconcileStrategy = ReconcileStrategy.LAYOUT
    flush_every: int = DEFAULT_FLUSH_EVERY
    follow_symlinks: bool = False
    best_effort: bool = False


def _ignore(_message: str) -> None:
    return None


class ChecksumPipeline:
    """One generate or verify run.

    Owns the per-run state shared with the workers: the progress counter,
    the selected hash provider and, in generate mode, the ledger writer.
    """

    def __init__(
        self,
        config: ChecksumConfig,
        stop_event: Optional[threading.Event] = None,
        pause_event: Optional[threading.Event] = None,
        line_callback: Optional[Callable[[str], None]] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
        status_callback: Optional[Callable[[str], None]] = None,
        result_callback: Optional[Callable[[Outcome], None]] = None,
        output_stream: Optional[IO[str]] = None,
    ) -> None:
        self.config = config
        self.stop_event = stop_event or threading.Event()
        if pause_event is None:
            pause_event = threading.Event()
            pause_event.set()
        self.pause_event = pause_event
        self.line_callback = line_callback or _ignore
        self.progress_callback = progress_callback or _ignore
        self.status_callback = status_callback or _ignore
        self.result_callback = result_callback
        self.output_stream = output_stream
        self.counter = ProgressCounter()
        self.provider: HashProvider = get_provider(config.algorithm, config.key)
        # Per-file lines for successful hashes only make sense when verifying.
        self.aggregator = ResultAggregator(config.verbose and config.verify, self.line_callback)
        self.summary = RunSummary()
        self.planned: Optional[int] = None
        self._ledger_failure: Optional[LedgerWriteError] = None
        self._validate()

    def _validate(self) -> None:
        root = Path(self.config.root)
        if not root.is_dir():
            raise SetupError(f"Scan root is not a directory: {root}")
        if self.config.verify and not self.config.list_path:
            raise SetupError("A checksum list is required in verify mode")
        if self.config.flush_every < 1:
            raise SetupError("flush_every must be at least 1")

    def run(self) -> RunSummary:
        if self.config.verify:
            return self.verify()
        return self.generate()

    def _dispatcher(self, task: Callable[[str], Outcome]) -> Dispatcher:
        return Dispatcher(
            task,
            workers=self.config.thread_count,
            stop_event=self.stop_event,
            pause_event=self.pause_event,
            counter=self.counter,
        )

    def _digest(self, path: str) -> str:
        return hash_file(path, self.provider, self.stop_event, self.pause_event)

    def _drain(self, dispatcher: Dispatcher, paths: Iterable[str], total: int) -> None:
        with ProgressReporter(self.counter, total, self.progress_callback, enabled=self.config.progress):
            for outcome in dispatcher.run(paths):
                self.aggregator.fold(outcome)
                if self.result_callback is not None:
                    self.result_callback(outcome)

    def _finish(self) -> RunSummary:
        agg = self.aggregator
        self.summary.total = agg.total
        self.summary.match = agg.match
        self.summary.mismatch = agg.mismatch
        self.summary.errors = agg.errors
        self.summary.planned = self.planned if self.planned is not None else agg.total
        self.summary.cancelled = self.stop_event.is_set()
        return self.summary

    def interrupt(self) -> RunSummary:
        """Stop the run and report what finished before the stop."""
        self.stop_event.set()
        if self.config.verify:
            self.aggregator.finish(cancelled=True, planned=self.planned)
        return self._finish()

    def _abort_on_ledger_failure(self, error: LedgerWriteError) -> None:
        if self._ledger_failure is None:
            self._ledger_failure = error
        self.stop_event.set()

    # -- generate --
    def _traversal_warning(self, error: TraversalError) -> None:
        self.aggregator.warn(str(error))

    def _count_skipped(self, _path: str) -> None:
        self.summary.skipped += 1

    def generate(self) -> RunSummary:
        config = self.config
        recorded: Dict[str, str] = {}
        exclude: List[Path] = []
        if config.list_path:
            recorded = load_ledger(config.list_path, config.record_format)
            exclude.append(Path(config.list_path))
        paths: Iterable[str] = iter_files(
            config.root,
            skip=recorded,
            exclude=exclude,
            follow_symlinks=config.follow_symlinks,
            on_error=self._traversal_warning if config.best_effort else None,
            on_skip=self._count_skipped,
            stop_event=self.stop_event,
        )
        total = 0
        if config.progress:
            paths = list(paths)
            total = len(paths)
            self.planned = total
            self.status_callback(f"Preparing – queued {total} files")

        ledger = ChecksumLedger(
            config.list_path,
            config.record_format,
            flush_every=config.flush_every,
            stream=self.output_stream or sys.stdout,
        )

        def _record(path: str) -> Outcome:
            try:
                digest = self._digest(path)
            except (OSError, RuntimeError) as exc:
                return Outcome(path, OutcomeStatus.ERROR, str(exc))
            try:
                ledger.append(ChecksumEntry(digest, path))
            except LedgerWriteError as exc:
                self._abort_on_ledger_failure(exc)
                return Outcome(path, OutcomeStatus.ERROR, str(exc))
            return Outcome(path, OutcomeStatus.OK, digest)

        with ledger:
            self._drain(self._dispatcher(_record), paths, total)
        if self._ledger_failure is not None:
            raise self._ledger_failure
        return self._finish()

    # -- verify --
    def verify(self) -> RunSummary:
        config = self.config
        entries = read_entries(config.list_path, config.record_format)  # type: ignore[arg-type]
        reconciler = PathReconciler(config.root, config.strategy)
        result = reconciler.reconcile(entries)
        for collision in result.collisions:
            self.aggregator.warn(collision.describe())
        self.summary.collisions = len(result.collisions)
        expected = result.expected
        self.planned = len(result.paths)
        self.status_callback(f"Preparing – queued {len(result.paths)} files")

        def _compare(path: str) -> Outcome:
            try:
                digest = self._digest(path)
            except (OSError, RuntimeError) as exc:
                return Outcome(path, OutcomeStatus.ERROR, str(exc))
            wanted = expected.get(path)
            if wanted is not None and wanted == digest:
                return Outcome(path, OutcomeStatus.OK, digest)
            return Outcome(path, OutcomeStatus.MISMATCH, f"expected {wanted}, got {digest}")

        self._drain(self._dispatcher(_compare), result.paths, len(result.paths))
        self.aggregator.finish(cancelled=self.stop_event.is_set(), planned=self.planned)
        return self._finish()


__all__ = [
    "ChecksumConfig",
    "ChecksumPipeline",
    "Dispatcher",
    "Outcome",
    "OutcomeStatus",
    "ProgressCounter",
    "ProgressReporter",
    "ResultAggregator",
    "RunSummary",
    "iter_files",
]
