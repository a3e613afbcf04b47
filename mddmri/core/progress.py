"""Progress reporting for the voxel loop.

`LoopProgress` drives a tqdm bar over rows (or worker blocks) and, when the
loop runs verbosely, logs one status line per z slice carrying a marker for
every fourth row: ``o`` if the row held masked voxels, ``.`` otherwise.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import List, Optional

from tqdm import tqdm


BAR_FORMAT = "|{bar:60}|{percentage:3.0f}% ({n_fmt}/{total_fmt}) [{desc}: {elapsed} < {remaining}]"

MARKER_EVERY = 4
ACTIVE_MARKER = 'o'
IDLE_MARKER = '.'


_OVERRIDE_PROGRESS_ENABLED: Optional[bool] = None


def set_progress_enabled(enabled: Optional[bool]) -> None:
    """Globally force progress bars on/off; None restores env/TTY detection."""

    global _OVERRIDE_PROGRESS_ENABLED
    _OVERRIDE_PROGRESS_ENABLED = enabled


def is_progress_enabled(explicit: Optional[bool] = None) -> bool:
    """Priority: explicit argument, global override, MDDMRI_PROGRESS, stderr TTY."""
    if explicit is not None:
        return bool(explicit)

    if _OVERRIDE_PROGRESS_ENABLED is not None:
        return bool(_OVERRIDE_PROGRESS_ENABLED)

    env = os.environ.get("MDDMRI_PROGRESS", "").strip().lower()
    if env in {"1", "true", "yes", "on"}:
        return True
    if env in {"0", "false", "no", "off"}:
        return False

    try:
        return bool(sys.stderr.isatty())
    except (AttributeError, ValueError):
        return False


def make_progress_bar(*, total: int, desc: str, enabled: Optional[bool] = None) -> tqdm:
    return tqdm(
        total=int(total),
        desc=str(desc),
        ascii=True,
        bar_format=BAR_FORMAT,
        disable=not is_progress_enabled(enabled),
    )


class LoopProgress:
    """Progress of one voxel-loop call.

    Quiet calls never show a bar or log slice lines; verbose calls log slice
    lines and show the bar when `is_progress_enabled` allows it.
    """

    def __init__(self, total: int, desc: str, verbose: bool = False) -> None:
        self.verbose = bool(verbose)
        self.bar = make_progress_bar(total=total, desc=desc, enabled=None if self.verbose else False)
        self._markers: List[str] = []
        self.lines: List[str] = []

    def start(self, message: str) -> None:
        if self.verbose:
            logging.info(message)

    def row_done(self, j: int, active: bool) -> None:
        """Record row `j` (0-based) of the current slice."""
        if (j + 1) % MARKER_EVERY == 0:
            self._markers.append(ACTIVE_MARKER if active else IDLE_MARKER)
        self.bar.update(1)

    def slice_done(self, k: int) -> None:
        """Close slice `k` (0-based) and emit its status line."""
        line = f"k={k + 1:3d} {''.join(self._markers)};"
        self._markers = []
        self.lines.append(line)
        if self.verbose:
            logging.info(line)

    def advance(self, n: int = 1) -> None:
        self.bar.update(n)

    def close(self) -> None:
        self.bar.close()

    def __enter__(self) -> "LoopProgress":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
