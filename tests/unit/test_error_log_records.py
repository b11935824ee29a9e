from __future__ import annotations

import json
import re
from pathlib import Path

from flowmap.logging.error_log import ErrorLogBuffer
from flowmap.models.error_record import ErrorRecord

"""Unit tests for ErrorRecord and the JSON Lines error log buffer."""


def test_record_json_line_has_fixed_keys():
    record = ErrorRecord.create("books.csv", "Book", 3, "INTEGRITY_ERROR", "boom")
    data = json.loads(record.to_json_line())
    assert set(data) == {"timestamp", "source", "mapping", "row", "error_type", "message"}
    assert data["row"] == 3
    assert data["timestamp"].endswith("Z")


def test_non_ascii_messages_are_kept():
    record = ErrorRecord.create("livres.csv", "Livre", 1, "VALIDATION_ERROR", "é manquant")
    assert "é manquant" in record.to_json_line()


def test_empty_buffer_writes_nothing(tmp_path: Path):
    buffer = ErrorLogBuffer(tmp_path / "logs")
    assert buffer.flush() is None
    assert not (tmp_path / "logs").exists()


def test_flush_writes_json_lines(tmp_path: Path):
    buffer = ErrorLogBuffer(tmp_path / "logs")
    buffer.append(ErrorRecord.create("a.csv", "Book", 1, "X", "one"))
    buffer.append(ErrorRecord.create("a.csv", "Book", 2, "Y", "two"))
    assert len(buffer) == 2
    path = buffer.flush()
    assert path is not None
    assert re.fullmatch(r"errors-\d{8}-\d{6}\.log", path.name)
    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["row"] for line in lines] == [1, 2]
    assert len(buffer) == 0


def test_later_flushes_append_to_same_file(tmp_path: Path):
    buffer = ErrorLogBuffer(tmp_path)
    buffer.append(ErrorRecord.create("a.csv", "Book", 1, "X", "one"))
    first = buffer.flush()
    buffer.append(ErrorRecord.create("a.csv", "Book", 2, "X", "two"))
    second = buffer.flush()
    assert first == second
    assert len(second.read_text(encoding="utf-8").splitlines()) == 2
