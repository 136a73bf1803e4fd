"""Size-capped line buffer that keeps the most recent output."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterable

DEFAULT_MAX_OUTPUT_BYTES = 500_000
TRUNCATION_MARKER = "... (older output truncated) ..."


class BoundedOutputBuffer:
    """Append-only text lines with a byte ceiling.

    Each line costs its UTF-8 length plus one newline byte. Once an append
    pushes the total over ``max_bytes``, lines are dropped from the front
    until the rest fits in half the cap, and :meth:`snapshot` starts with
    :data:`TRUNCATION_MARKER`.

    The rendered text is extended with lines appended since the previous
    snapshot and only re-joined from scratch after a compaction.
    """

    def __init__(self, max_bytes: int = DEFAULT_MAX_OUTPUT_BYTES) -> None:
        if max_bytes <= 0:
            raise ValueError("max_bytes must be > 0.")
        self.max_bytes = max_bytes
        self._lines: deque[str] = deque()
        self._sizes: deque[int] = deque()
        self._total = 0
        self._truncated = False
        self._text = ""
        self._pending: list[str] = []
        self._stale = False
        self._lock = threading.Lock()

    @property
    def truncated(self) -> bool:
        return self._truncated

    @property
    def byte_size(self) -> int:
        """Retained size in bytes, excluding the truncation marker."""

        return self._total

    def __len__(self) -> int:
        return len(self._lines)

    def append(self, line: str) -> None:
        size = _line_size(line)
        with self._lock:
            self._lines.append(line)
            self._sizes.append(size)
            self._total += size
            if self._total > self.max_bytes:
                self._compact()
                self._stale = True
                self._pending.clear()
            elif not self._stale:
                self._pending.append(line)

    def extend(self, lines: Iterable[str]) -> None:
        for line in lines:
            self.append(line)

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()
            self._sizes.clear()
            self._total = 0
            self._truncated = False
            self._text = ""
            self._pending.clear()
            self._stale = False

    def snapshot(self) -> str:
        with self._lock:
            # A marker-only text stands for an empty retained line.
            if self._stale or (self._pending and self._text == TRUNCATION_MARKER):
                body = "\n".join(self._lines)
                if self._truncated:
                    body = f"{TRUNCATION_MARKER}\n{body}" if body else TRUNCATION_MARKER
                self._text = body
            elif self._pending:
                added = "\n".join(self._pending)
                rendered = len(self._lines) - len(self._pending)
                self._text = f"{self._text}\n{added}" if rendered else added
            self._pending.clear()
            self._stale = False
            return self._text

    def _compact(self) -> None:
        keep = self.max_bytes // 2
        while self._total > keep and len(self._lines) > 1:
            self._lines.popleft()
            self._total -= self._sizes.popleft()
        if self._total > keep:
            tail = _tail_of_line(self._lines.pop(), max(keep - 1, 0))
            self._sizes.pop()
            self._lines.append(tail)
            self._sizes.append(_line_size(tail))
            self._total = self._sizes[0]
        self._truncated = True


def _line_size(line: str) -> int:
    return len(line.encode("utf-8", errors="replace")) + 1


def _tail_of_line(line: str, max_line_bytes: int) -> str:
    encoded = line.encode("utf-8", errors="replace")
    if max_line_bytes <= 0:
        return ""
    return encoded[-max_line_bytes:].decode("utf-8", errors="ignore")
