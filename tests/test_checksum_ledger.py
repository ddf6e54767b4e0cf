from __future__ import annotations

import io
import json
import sys
import threading
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tools.checksum_errors import LedgerWriteError, MalformedRecordError, SetupError
from tools.checksum_ledger import (
    ChecksumEntry,
    ChecksumLedger,
    RecordFormat,
    format_record,
    load_ledger,
    parse_record,
    read_entries,
)


def test_text_record_layout():
    entry = ChecksumEntry("abc123", "dir/file name.txt")
    line = format_record(entry, RecordFormat.TEXT)
    assert line == "abc123\tdir/file name.txt\n"
    assert parse_record(line, RecordFormat.TEXT) == entry


def test_json_record_layout():
    entry = ChecksumEntry("abc123", "C:\\data\\ünï.txt")
    line = format_record(entry, RecordFormat.JSON)
    assert json.loads(line) == {"hash": "abc123", "path": "C:\\data\\ünï.txt"}
    assert parse_record(line, RecordFormat.JSON) == entry


def test_text_reader_accepts_coreutils_layout():
    entry = parse_record("ABCDEF  some/path\n", RecordFormat.TEXT)
    assert entry == ChecksumEntry("abcdef", "some/path")


@pytest.mark.parametrize(
    "line",
    ["no separator here", "zz-not-hex\tpath", "abc\t", "\tpath"],
)
def test_malformed_text_records(line: str):
    with pytest.raises(MalformedRecordError):
        parse_record(line, RecordFormat.TEXT)


@pytest.mark.parametrize(
    "line",
    ['{"hash": "abc"}', '{"path": "x"}', "[1, 2]", "{not json", '{"hash": 12, "path": "x"}'],
)
def test_malformed_json_records(line: str):
    with pytest.raises(MalformedRecordError):
        parse_record(line, RecordFormat.JSON)


def test_load_skips_malformed_lines(tmp_path: Path):
    ledger = tmp_path / "sums.txt"
    ledger.write_text(
        "aa\tfirst\n"
        "garbage line\n"
        "\n"
        "qq\tbad-digest\n"
        "bb\tsecond\n",
        encoding="utf-8",
    )
    assert load_ledger(ledger, RecordFormat.TEXT) == {"first": "aa", "second": "bb"}


def test_load_skips_malformed_json_lines(tmp_path: Path):
    ledger = tmp_path / "sums.jsonl"
    ledger.write_text(
        '{"hash": "aa", "path": "first"}\n'
        '{"hash": "aa", "pa\n'
        '{"hash": "bb", "path": "second"}\n',
        encoding="utf-8",
    )
    assert load_ledger(ledger, RecordFormat.JSON) == {"first": "aa", "second": "bb"}


def test_load_ignores_torn_final_record(tmp_path: Path):
    ledger = tmp_path / "sums.txt"
    ledger.write_text("aa\tone\nbb\ttw", encoding="utf-8")
    assert load_ledger(ledger, RecordFormat.TEXT) == {"one": "aa"}


def test_missing_ledger_loads_empty(tmp_path: Path):
    assert load_ledger(tmp_path / "absent.txt", RecordFormat.TEXT) == {}


def test_read_entries_missing_list_is_setup_error(tmp_path: Path):
    with pytest.raises(SetupError):
        read_entries(tmp_path / "absent.txt", RecordFormat.TEXT)


def test_read_entries_keeps_order(tmp_path: Path):
    ledger = tmp_path / "sums.txt"
    ledger.write_text("bb\tz\naa\ty\ncc\tx\n", encoding="utf-8")
    assert [e.path for e in read_entries(ledger, RecordFormat.TEXT)] == ["z", "y", "x"]


def test_records_only_reach_disk_at_flush_boundaries(tmp_path: Path):
    path = tmp_path / "sums.txt"
    ledger = ChecksumLedger(path, RecordFormat.TEXT, flush_every=2)
    for idx in range(5):
        ledger.append(ChecksumEntry(f"{idx:02x}", f"file{idx}"))
    # Simulates a crash right after the second flush boundary.
    on_disk = load_ledger(path, RecordFormat.TEXT)
    assert on_disk == {f"file{idx}": f"{idx:02x}" for idx in range(4)}
    ledger.close()
    assert len(load_ledger(path, RecordFormat.TEXT)) == 5


def test_reopen_trims_torn_tail_before_appending(tmp_path: Path):
    path = tmp_path / "sums.txt"
    path.write_text("aa\tone\nbb\ttw", encoding="utf-8")
    with ChecksumLedger(path, RecordFormat.TEXT) as ledger:
        ledger.append(ChecksumEntry("cc", "three"))
    assert path.read_text(encoding="utf-8") == "aa\tone\ncc\tthree\n"


def test_reopen_drops_file_that_is_one_torn_record(tmp_path: Path):
    path = tmp_path / "sums.txt"
    path.write_text("aa\tpartial", encoding="utf-8")
    with ChecksumLedger(path, RecordFormat.TEXT) as ledger:
        ledger.append(ChecksumEntry("cc", "fresh"))
    assert path.read_text(encoding="utf-8") == "cc\tfresh\n"


def test_concurrent_appends_never_interleave(tmp_path: Path):
    path = tmp_path / "sums.jsonl"
    per_thread = 200

    with ChecksumLedger(path, RecordFormat.JSON, flush_every=7) as ledger:
        def _writer(worker: int) -> None:
            for idx in range(per_thread):
                ledger.append(ChecksumEntry(f"{worker:04x}{idx:04x}", f"w{worker}/f{idx}"))

        threads = [threading.Thread(target=_writer, args=(w,)) for w in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert ledger.written == 8 * per_thread

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 8 * per_thread
    assert all(parse_record(line, RecordFormat.JSON) for line in lines)
    assert len(load_ledger(path, RecordFormat.JSON)) == 8 * per_thread


def test_stream_ledger_writes_each_record():
    stream = io.StringIO()
    ledger = ChecksumLedger(stream=stream, record_format=RecordFormat.TEXT, flush_every=100)
    ledger.append(ChecksumEntry("aa", "one"))
    assert stream.getvalue() == "aa\tone\n"
    ledger.close()
    assert not stream.closed


def test_append_after_close_fails(tmp_path: Path):
    ledger = ChecksumLedger(tmp_path / "sums.txt")
    ledger.close()
    ledger.close()
    with pytest.raises(ValueError):
        ledger.append(ChecksumEntry("aa", "one"))


def test_close_flushes_on_error_path(tmp_path: Path):
    path = tmp_path / "sums.txt"
    with pytest.raises(RuntimeError):
        with ChecksumLedger(path, flush_every=1000) as ledger:
            ledger.append(ChecksumEntry("aa", "one"))
            raise RuntimeError("boom")
    assert load_ledger(path, RecordFormat.TEXT) == {"one": "aa"}


def test_ledger_requires_destination():
    with pytest.raises(ValueError):
        ChecksumLedger()


class _TornWriter:
    """Writes half of each batch, then fails like a full disk."""

    def __init__(self, inner):
        self._inner = inner

    def write(self, data: str) -> int:
        self._inner.write(data[: len(data) // 2])
        self._inner.flush()
        raise OSError(28, "No space left on device")

    def flush(self) -> None:
        self._inner.flush()

    def fileno(self) -> int:
        return self._inner.fileno()

    def close(self) -> None:
        self._inner.close()


def test_write_failure_is_fatal_and_tail_is_trimmed_on_reopen(tmp_path: Path):
    path = tmp_path / "sums.txt"
    ledger = ChecksumLedger(path, flush_every=1)
    ledger.append(ChecksumEntry("aa", "one"))
    ledger._handle = _TornWriter(ledger._handle)

    with pytest.raises(LedgerWriteError):
        ledger.append(ChecksumEntry("bbbb", "second"))
    assert ledger.failed
    with pytest.raises(LedgerWriteError):
        ledger.append(ChecksumEntry("cccc", "third"))
    ledger.close()

    assert not path.read_text(encoding="utf-8").endswith("\n")

    with ChecksumLedger(path) as reopened:
        assert path.read_text(encoding="utf-8") == "aa\tone\n"
        reopened.append(ChecksumEntry("dddd", "fourth"))
    assert load_ledger(path, RecordFormat.TEXT) == {"one": "aa", "fourth": "dddd"}


class _FullStream(io.StringIO):
    def write(self, data: str) -> int:
        raise OSError(28, "No space left on device")


def test_stream_write_failure_raises():
    ledger = ChecksumLedger(stream=_FullStream())
    with pytest.raises(LedgerWriteError):
        ledger.append(ChecksumEntry("aa", "one"))
    assert ledger.failed
    ledger.close()
