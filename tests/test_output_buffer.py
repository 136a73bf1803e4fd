from __future__ import annotations

import allure
import pytest

from fixloop.runner.output_buffer import TRUNCATION_MARKER, BoundedOutputBuffer

pytestmark = [
    allure.epic("Command Runner"),
    allure.feature("Bounded Output"),
]


def test_appending_below_cap_is_lossless() -> None:
    buffer = BoundedOutputBuffer(max_bytes=1_000)
    lines = ["first", "", "  indented", "unicode: привет"]

    buffer.extend(lines)

    assert buffer.snapshot() == "\n".join(lines)
    assert buffer.truncated is False
    assert len(buffer) == len(lines)


def test_empty_buffer_snapshot_is_empty_string() -> None:
    assert BoundedOutputBuffer().snapshot() == ""


def test_overflow_keeps_marker_and_most_recent_lines() -> None:
    buffer = BoundedOutputBuffer(max_bytes=100)

    for index in range(30):
        buffer.append(f"line-{index:02d}")

    snapshot = buffer.snapshot()
    assert buffer.truncated is True
    assert snapshot.startswith(TRUNCATION_MARKER + "\n")
    assert snapshot.endswith("line-29")
    assert "line-00" not in snapshot
    assert buffer.byte_size <= buffer.max_bytes
    assert len(snapshot.encode("utf-8")) <= buffer.max_bytes + len(TRUNCATION_MARKER) + 1


def test_overflow_retains_at_most_half_the_cap_right_after_compaction() -> None:
    buffer = BoundedOutputBuffer(max_bytes=100)
    for _ in range(12):
        buffer.append("x" * 7)

    # 12 lines * 8 bytes = 96 bytes, still below the cap.
    assert buffer.truncated is False

    buffer.append("y" * 7)

    assert buffer.truncated is True
    assert buffer.byte_size <= 50
    assert buffer.snapshot().endswith("y" * 7)


def test_single_oversize_line_is_cut_to_its_tail() -> None:
    buffer = BoundedOutputBuffer(max_bytes=20)

    buffer.append("a" * 50 + "b" * 9)

    assert buffer.snapshot() == f"{TRUNCATION_MARKER}\n{'b' * 9}"
    assert buffer.byte_size <= 10


def test_tail_cut_does_not_split_multibyte_characters() -> None:
    buffer = BoundedOutputBuffer(max_bytes=10)

    buffer.append("é" * 10)

    tail = buffer.snapshot().split("\n", 1)[1]
    assert tail == "éé"


def test_snapshot_is_idempotent_without_appends() -> None:
    buffer = BoundedOutputBuffer(max_bytes=64)
    for index in range(20):
        buffer.append(f"row {index}")

    assert buffer.snapshot() == buffer.snapshot()

    buffer.append("row 20")
    assert buffer.snapshot().endswith("row 20")


def test_snapshot_after_every_append_matches_single_snapshot() -> None:
    live = BoundedOutputBuffer(max_bytes=300)
    batch = BoundedOutputBuffer(max_bytes=300)
    lines = ["", "start"] + [f"entry {index}" for index in range(200)] + ["", "end"]

    for line in lines:
        live.append(line)
        batch.append(line)
        assert live.snapshot().endswith(line)

    assert live.truncated is True
    assert live.snapshot() == batch.snapshot()
    assert live.snapshot() == f"{TRUNCATION_MARKER}\n" + "\n".join(
        lines[len(lines) - len(live) :],
    )


def test_incremental_snapshot_keeps_leading_empty_lines() -> None:
    buffer = BoundedOutputBuffer(max_bytes=1_000)

    buffer.append("")
    assert buffer.snapshot() == ""
    buffer.append("")
    buffer.append("x")

    assert buffer.snapshot() == "\n\nx"


def test_clear_resets_content_and_truncation_flag() -> None:
    buffer = BoundedOutputBuffer(max_bytes=16)
    buffer.extend(["0123456789"] * 3)
    assert buffer.truncated is True

    buffer.clear()

    assert buffer.snapshot() == ""
    assert buffer.truncated is False
    assert buffer.byte_size == 0


def test_rejects_non_positive_cap() -> None:
    with pytest.raises(ValueError, match="max_bytes"):
        BoundedOutputBuffer(max_bytes=0)
