"""Bounded output capture.

Two sinks accumulate decoded output chunks under a size cap:

- BoundedCapture appends a truncation marker once past the cap and drops the
  rest (used for stderr and remote output).
- SpillingCapture moves everything to a timestamp-named spool file once the
  cap would be exceeded, leaving a short notice in memory (used for local
  stdout when output files are enabled).

Writes that touch the spool file are reported by `writes_to_file()` so
async callers can run them on a worker thread.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, List, Optional

logger = logging.getLogger(__name__)

SPILL_PREFIX = "output-"
SPILL_SUFFIX = ".txt"

STDOUT_TRUNCATION_MARKER = "\n... Output truncated due to size limit ..."
STDERR_TRUNCATION_MARKER = "\n... Error output truncated due to size limit ..."


def format_size_limit(limit: int) -> str:
    """Render a character cap the way messages quote it, e.g. '1MB'."""
    return f"{limit / (1024 * 1024):g}MB"


def spill_file_name(now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    return f"{SPILL_PREFIX}{stamp}{SPILL_SUFFIX}"


class BoundedCapture:
    """In-memory capture that truncates once past `limit` characters."""

    def __init__(self, limit: int, marker: str = STDOUT_TRUNCATION_MARKER):
        self._limit = limit
        self._marker = marker
        self._parts: List[str] = []
        self._size = 0
        self.truncated = False

    def write(self, chunk: str) -> None:
        if not chunk or self.truncated:
            return
        if self._size + len(chunk) <= self._limit:
            self._parts.append(chunk)
            self._size += len(chunk)
            return
        self._parts.append(self._marker)
        self.truncated = True

    def writes_to_file(self, chunk: str) -> bool:
        """True if writing `chunk` would touch the filesystem."""
        return False

    def getvalue(self) -> str:
        return "".join(self._parts)

    def close(self) -> None:
        pass


class SpillingCapture(BoundedCapture):
    """Capture that spills to a file in `directory` once past `limit`.

    After the spill, the in-memory text is replaced by a notice naming the
    file and every later chunk is appended to the file, so the file holds the
    complete output.
    """

    def __init__(self, limit: int, directory: Path):
        super().__init__(limit, STDOUT_TRUNCATION_MARKER)
        self._directory = directory
        self._file: Optional[IO[str]] = None
        self.output_file: Optional[Path] = None

    def writes_to_file(self, chunk: str) -> bool:
        if not chunk:
            return False
        if self._file is not None:
            return True
        return not self.truncated and self._size + len(chunk) > self._limit

    def write(self, chunk: str) -> None:
        if not chunk:
            return
        if self._file is not None:
            self._file.write(chunk)
            return
        if self.truncated or self._size + len(chunk) <= self._limit:
            super().write(chunk)
            return
        self.truncated = True
        try:
            self._file = self._open_spill_file()
        except OSError as e:
            logger.warning(f"Could not create output file in {self._directory}: {e}")
            self._parts.append(self._marker)
            return
        self._file.write(self.getvalue())
        self._file.write(chunk)
        self._parts = [
            f"Output exceeded {format_size_limit(self._limit)} limit.\n"
            f"Full output saved to: {self.output_file}\n"
        ]
        logger.info(f"Output exceeded {self._limit} characters, spilling to {self.output_file}")

    def _open_spill_file(self) -> IO[str]:
        self._directory.mkdir(parents=True, exist_ok=True)
        name = spill_file_name()
        candidate = self._directory / name
        counter = 1
        while True:
            try:
                handle = open(candidate, "x", encoding="utf-8", newline="")
            except FileExistsError:
                candidate = self._directory / name.replace(
                    SPILL_SUFFIX, f"-{counter}{SPILL_SUFFIX}"
                )
                counter += 1
                continue
            self.output_file = candidate
            return handle

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None


__all__ = [
    "BoundedCapture",
    "SPILL_PREFIX",
    "SPILL_SUFFIX",
    "STDERR_TRUNCATION_MARKER",
    "STDOUT_TRUNCATION_MARKER",
    "SpillingCapture",
    "format_size_limit",
    "spill_file_name",
]
