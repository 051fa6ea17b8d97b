"""Incremental JSON-lines parser for scanner output.

The scanner writes one JSON object per line to stdout. Output arrives in
arbitrary chunks, so lines are reassembled across reads; only the current
partial line is ever held in memory.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, Iterable, Iterator

from scan_worker.types import SEVERITY_ORDER, Finding

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_BYTES = 1024 * 1024
UNKNOWN_TITLE = "Unknown Finding"

_SEVERITY_MAP = {name: name for name in SEVERITY_ORDER} | {"informational": "info", "unknown": "info"}


@dataclass(frozen=True)
class ParsedRecord:
    raw: bytes
    finding: Finding


def normalize_severity(value: Any) -> str:
    if not isinstance(value, str):
        return "info"
    return _SEVERITY_MAP.get(value.strip().lower(), "info")


def _first_text(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value
    return None


def record_to_finding(record: dict[str, Any], *, target: str) -> Finding:
    info = record.get("info")
    if not isinstance(info, dict):
        info = {}

    title = _first_text(info.get("name"), info.get("id")) or UNKNOWN_TITLE
    description = (
        _first_text(
            info.get("description"),
            record.get("matched-at"),
            record.get("matched_at"),
            record.get("matched"),
        )
        or ""
    )

    host = _first_text(record.get("host"))
    if host is not None:
        path = record.get("path")
        resource = f"{host}{path}" if isinstance(path, str) else host
    else:
        resource = target

    return Finding(
        title=title,
        severity=normalize_severity(info.get("severity")),
        description=description,
        resource=resource,
    )


def parse_line(line: bytes, *, target: str) -> Finding | None:
    stripped = line.strip()
    if not stripped:
        return None
    try:
        record = json.loads(stripped)
    except ValueError:
        return None
    if not isinstance(record, dict):
        return None
    return record_to_finding(record, target=target)


class ResultStreamParser:
    def __init__(self, *, target: str, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES) -> None:
        self._target = target
        self._max_line_bytes = max_line_bytes
        self._buffer = bytearray()
        self._discarding = False
        self.skipped_lines = 0

    def feed(self, chunk: bytes) -> list[ParsedRecord]:
        records: list[ParsedRecord] = []
        start = 0
        while True:
            newline = chunk.find(b"\n", start)
            if newline == -1:
                break

            if self._discarding:
                # Tail of an oversized line.
                self._discarding = False
            else:
                self._buffer += chunk[start:newline]
                record = self._complete_line(bytes(self._buffer))
                if record is not None:
                    records.append(record)
            self._buffer.clear()
            start = newline + 1

        if start < len(chunk) and not self._discarding:
            self._buffer += chunk[start:]
            if len(self._buffer) > self._max_line_bytes:
                logger.warning(
                    "dropping oversized output line target=%s limit_bytes=%d",
                    self._target,
                    self._max_line_bytes,
                )
                self.skipped_lines += 1
                self._buffer.clear()
                self._discarding = True

        return records

    def close(self) -> list[ParsedRecord]:
        """Flush a final line that was not newline-terminated."""
        if self._discarding or not self._buffer:
            self._buffer.clear()
            self._discarding = False
            return []

        line = bytes(self._buffer)
        self._buffer.clear()
        record = self._complete_line(line)
        return [record] if record is not None else []

    def _complete_line(self, line: bytes) -> ParsedRecord | None:
        if len(line) > self._max_line_bytes:
            self.skipped_lines += 1
            return None

        finding = parse_line(line, target=self._target)
        if finding is None:
            if line.strip():
                self.skipped_lines += 1
                logger.debug("skipping non-record output line=%r", line[:100])
            return None
        return ParsedRecord(raw=line.strip(), finding=finding)


def iter_records(
    chunks: Iterable[bytes],
    *,
    target: str,
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
) -> Iterator[ParsedRecord]:
    parser = ResultStreamParser(target=target, max_line_bytes=max_line_bytes)
    for chunk in chunks:
        yield from parser.feed(chunk)
    yield from parser.close()
