"""Housekeeping for spooled output files."""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import List, Optional

from .capture import SPILL_PREFIX, SPILL_SUFFIX

logger = logging.getLogger(__name__)


def is_spill_file(path: Path) -> bool:
    return path.name.startswith(SPILL_PREFIX) and path.name.endswith(SPILL_SUFFIX)


def sweep_output_files(
    directory: Path,
    retention_hours: float,
    now: Optional[float] = None,
) -> List[Path]:
    """Delete spill files in `directory` last modified before the retention window.

    Best-effort: scan and delete failures are logged and skipped, never raised.

    Args:
        directory: Output directory holding spill files
        retention_hours: Files older than this many hours are removed
        now: Reference time as a POSIX timestamp (defaults to time.time())

    Returns:
        Paths that were deleted
    """
    cutoff = (time.time() if now is None else now) - retention_hours * 3600
    removed: List[Path] = []
    try:
        entries = list(directory.iterdir())
    except FileNotFoundError:
        return removed
    except OSError as e:
        logger.error(f"Error cleaning up old output files in {directory}: {e}")
        return removed

    for path in entries:
        if not is_spill_file(path):
            continue
        try:
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink()
                removed.append(path)
        except OSError as e:
            logger.error(f"Error cleaning up old output file {path}: {e}")

    if removed:
        logger.info(f"Removed {len(removed)} expired output file(s) from {directory}")
    return removed


__all__ = ["is_spill_file", "sweep_output_files"]
