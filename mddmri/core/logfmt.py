from __future__ import annotations

import logging
from typing import Optional


# Custom verbosity levels used to implement mddmri output modes.
# STATUS: minimal milestones (quiet mode)
# INFO: standard user-facing output
# DETAIL/VERBOSE: extra user-facing detail (voxel-loop progress lines)
STATUS = 25
DETAIL = 15
VERBOSE = 12


_LEVELS_REGISTERED = False

_OUTPUT_MODE_LEVELS = {
    'quiet': STATUS,
    'standard': logging.INFO,
    'verbose': VERBOSE,
    'debug': logging.DEBUG,
}


def ensure_custom_levels_registered() -> None:
    global _LEVELS_REGISTERED
    if _LEVELS_REGISTERED:
        return

    logging.addLevelName(STATUS, "STATUS")
    logging.addLevelName(DETAIL, "DETAIL")
    logging.addLevelName(VERBOSE, "VERBOSE")

    def _status(self: logging.Logger, msg, *args, **kwargs):  # type: ignore[no-redef]
        if self.isEnabledFor(STATUS):
            self._log(STATUS, msg, args, **kwargs)

    def _detail(self: logging.Logger, msg, *args, **kwargs):  # type: ignore[no-redef]
        if self.isEnabledFor(DETAIL):
            self._log(DETAIL, msg, args, **kwargs)

    def _verbose(self: logging.Logger, msg, *args, **kwargs):  # type: ignore[no-redef]
        if self.isEnabledFor(VERBOSE):
            self._log(VERBOSE, msg, args, **kwargs)

    if not hasattr(logging.Logger, "status"):
        setattr(logging.Logger, "status", _status)
    if not hasattr(logging.Logger, "detail"):
        setattr(logging.Logger, "detail", _detail)
    if not hasattr(logging.Logger, "verbose"):
        setattr(logging.Logger, "verbose", _verbose)

    _LEVELS_REGISTERED = True


class MDdMRIFormatter(logging.Formatter):
    """Consistent, readable console/file formatting.

    - INFO:    "MDdMRI: <message>"
    - WARNING: "MDdMRI [WARNING]: <message>"
    - ERROR:   "MDdMRI [ERROR]: <message>"
    """

    def format(self, record: logging.LogRecord) -> str:
        prefix = "MDdMRI"
        if record.levelno == logging.INFO:
            return f"{prefix}: {record.getMessage()}"
        return f"{prefix} [{record.levelname}]: {record.getMessage()}"


def level_for_output_mode(output_mode: str) -> int:
    try:
        return _OUTPUT_MODE_LEVELS[str(output_mode)]
    except KeyError:
        raise ValueError(
            f"Unknown output mode {output_mode!r}; expected one of {sorted(_OUTPUT_MODE_LEVELS)}"
        ) from None


def configure_logging(output_mode: str = 'standard', log_file: Optional[str] = None) -> None:
    """Configure the root logger for console (and optionally file) output."""
    ensure_custom_levels_registered()
    level = level_for_output_mode(output_mode)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(MDdMRIFormatter())
    handlers: list[logging.Handler] = [console_handler]

    if log_file is not None:
        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(min(level, logging.INFO))
        file_handler.setFormatter(MDdMRIFormatter())
        handlers.append(file_handler)

    logging.basicConfig(
        level=min(level, logging.INFO),
        handlers=handlers,
        force=True,
    )


def log_banner(
    title: str,
    *,
    logger: Optional[logging.Logger] = None,
    level: int = logging.INFO,
) -> None:
    """Log a formatted banner."""
    ensure_custom_levels_registered()
    lg = logger or logging.getLogger()
    border = "# " + ("-" * 79) + " #"
    lg.log(level, border)
    lg.log(level, f"# {str(title).center(79)} #")
    lg.log(level, border)
