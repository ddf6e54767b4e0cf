from __future__ import annotations

import json
import os
import string
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Dict, Iterator, List, Optional, Union

from .checksum_errors import LedgerWriteError, MalformedRecordError, SetupError


DEFAULT_FLUSH_EVERY = 64
_HEX_DIGITS = frozenset(string.hexdigits)


class RecordFormat(str, Enum):
    TEXT = "text"
    JSON = "json"


@dataclass(frozen=True)
class ChecksumEntry:
    digest: str
    path: str


def format_record(entry: ChecksumEntry, record_format: RecordFormat) -> str:
    if record_format == RecordFormat.JSON:
        return json.dumps({"hash": entry.digest, "path": entry.path}, ensure_ascii=False) + "\n"
    return f"{entry.digest}\t{entry.path}\n"


def _check_digest(digest: object) -> str:
    if not isinstance(digest, str) or not digest or not _HEX_DIGITS.issuperset(digest):
        raise MalformedRecordError(f"Undecodable digest: {digest!r}")
    return digest.lower()


def parse_record(line: str, record_format: RecordFormat) -> ChecksumEntry:
    """Decode one ledger line; raises :class:`MalformedRecordError`."""
    line = line.rstrip("\r\n")
    if record_format == RecordFormat.JSON:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as exc:
            raise MalformedRecordError(f"Invalid JSON record: {exc}") from exc
        if not isinstance(payload, dict):
            raise MalformedRecordError("JSON record is not an object")
        digest = payload.get("hash")
        path = payload.get("path")
    else:
        if "\t" in line:
            digest, _, path = line.partition("\t")
        elif "  " in line:
            # coreutils "<digest>  <path>"
            digest, _, path = line.partition("  ")
        else:
            raise MalformedRecordError("Expected two fields")
    if not isinstance(path, str) or not path:
        raise MalformedRecordError("Missing path")
    return ChecksumEntry(_check_digest(digest), path)


def _iter_complete_lines(handle: IO[str]) -> Iterator[str]:
    # A last line without its newline is a torn append and is never a record.
    for line in handle:
        if line.endswith("\n"):
            yield line


def iter_records(path: Union[str, Path], record_format: RecordFormat) -> Iterator[ChecksumEntry]:
    with open(path, "r", encoding="utf-8", errors="surrogateescape") as handle:
        for line in _iter_complete_lines(handle):
            if not line.strip():
                continue
            try:
                yield parse_record(line, record_format)
            except MalformedRecordError:
                continue


def load_ledger(path: Union[str, Path], record_format: RecordFormat) -> Dict[str, str]:
    """Map recorded path to digest; a missing ledger loads as empty."""
    records: Dict[str, str] = {}
    try:
        for entry in iter_records(path, record_format):
            records[entry.path] = entry.digest
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise SetupError(f"Cannot read checksum list {path}: {exc}") from exc
    return records


def read_entries(path: Union[str, Path], record_format: RecordFormat) -> List[ChecksumEntry]:
    try:
        return list(iter_records(path, record_format))
    except OSError as exc:
        raise SetupError(f"Cannot read checksum list {path}: {exc}") from exc


def _trim_torn_tail(path: Path) -> None:
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return
    if size == 0:
        return
    with path.open("rb+") as handle:
        handle.seek(-1, os.SEEK_END)
        if handle.read(1) == b"\n":
            return
        data_end = size
        block = 64 * 1024
        while data_end > 0:
            start = max(0, data_end - block)
            handle.seek(start)
            chunk = handle.read(data_end - start)
            idx = chunk.rfind(b"\n")
            if idx >= 0:
                handle.truncate(start + idx + 1)
                return
            data_end = start
        handle.truncate(0)


class ChecksumLedger:
    """Append-only checksum list shared by the hashing workers.

    Records are buffered and written as one batch every ``flush_every``
    appends, followed by an fsync, so a crash can only lose the batch in
    progress. Without a path the ledger streams to ``stream`` (stdout).
    A failed write is fatal: the batch is dropped and every later append
    raises :class:`LedgerWriteError`.
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        record_format: RecordFormat = RecordFormat.TEXT,
        flush_every: int = DEFAULT_FLUSH_EVERY,
        stream: Optional[IO[str]] = None,
    ) -> None:
        if path is None and stream is None:
            raise ValueError("ChecksumLedger needs a path or a stream")
        self.path = Path(path) if path is not None else None
        self.record_format = record_format
        self.flush_every = max(1, int(flush_every)) if self.path is not None else 1
        self._lock = threading.Lock()
        self._pending: List[str] = []
        self._written = 0
        self._failure: Optional[LedgerWriteError] = None
        self._target = str(self.path) if self.path is not None else "<stdout>"
        self._owns_handle = self.path is not None
        if self.path is not None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                _trim_torn_tail(self.path)
                self._handle: Optional[IO[str]] = self.path.open(
                    "a", encoding="utf-8", errors="surrogateescape"
                )
            except OSError as exc:
                raise SetupError(f"Cannot open checksum list {self.path} for writing: {exc}") from exc
        else:
            self._handle = stream

    @property
    def written(self) -> int:
        return self._written

    @property
    def failed(self) -> bool:
        return self._failure is not None

    def append(self, entry: ChecksumEntry) -> None:
        record = format_record(entry, self.record_format)
        with self._lock:
            if self._failure is not None:
                raise LedgerWriteError(str(self._failure))
            if self._handle is None:
                raise ValueError("ledger is closed")
            self._pending.append(record)
            self._written += 1
            if len(self._pending) >= self.flush_every:
                self._flush_locked()

    def flush(self) -> None:
        with self._lock:
            self._flush_locked()

    def _flush_locked(self) -> None:
        handle = self._handle
        if handle is None or not self._pending or self._failure is not None:
            return
        batch = "".join(self._pending)
        self._pending.clear()
        try:
            handle.write(batch)
            handle.flush()
        except OSError as exc:
            # Nothing is written after a failed batch, so any partial record
            # stays at the tail where the next open trims it.
            self._failure = LedgerWriteError(f"Cannot write checksum list {self._target}: {exc}")
            raise self._failure from exc
        if self._owns_handle:
            try:
                os.fsync(handle.fileno())
            except OSError:
                pass

    def close(self) -> None:
        with self._lock:
            handle = self._handle
            if handle is None:
                return
            try:
                self._flush_locked()
            finally:
                self._handle = None
                if self._owns_handle:
                    self._close_handle(handle)

    def _close_handle(self, handle: IO[str]) -> None:
        try:
            handle.close()
        except OSError as exc:
            # After a failed write the buffered tail is already lost and reported.
            if self._failure is None:
                self._failure = LedgerWriteError(f"Cannot write checksum list {self._target}: {exc}")
                raise self._failure from exc

    def __enter__(self) -> "ChecksumLedger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = [
    "DEFAULT_FLUSH_EVERY",
    "ChecksumEntry",
    "ChecksumLedger",
    "RecordFormat",
    "format_record",
    "iter_records",
    "load_ledger",
    "parse_record",
    "read_entries",
]
