"""Logging setup for the SRUN portal client.

This module configures the **root** logger so application code can simply call
``logging.getLogger(__name__)`` and emit messages.

Behavior:
- A file handler is attached at the requested level (default: ``INFO``) and
  writes to an OS-appropriate directory (``XDG_STATE_HOME`` on Linux/WSL or
  ``LOCALAPPDATA`` on Windows).
- A stderr handler is attached at ``WARNING`` and above (``INFO`` with
  ``verbose=True``).
- Python warnings are routed through logging (via ``logging.captureWarnings``).

In tutorial mode (``tutorial=True``), log timestamps are made deterministic so
test outputs are reproducible.
"""

import logging
import os
import pathlib
import sys
from logging.handlers import RotatingFileHandler

LOG_DIR_NAME = "srunportal"


def _set_formatter(tutorial: bool, handler: logging.Handler) -> None:
    date = "2000-01-01T00:00:00+0100" if tutorial else "{asctime}"
    handler.setFormatter(
        logging.Formatter(
            fmt=date + " {levelname} {name}: {message}",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
            style="{",
        )
    )


def _default_log_dir() -> pathlib.Path:
    """Return an OS-appropriate log directory."""
    if os.name == "nt":
        base = pathlib.Path(
            os.getenv("LOCALAPPDATA", pathlib.Path.home() / "AppData" / "Local")
        )
    else:
        # Linux / WSL: prefer XDG state dir
        base = pathlib.Path(
            os.getenv("XDG_STATE_HOME", pathlib.Path.home() / ".local" / "state")
        )

    log_dir = base / LOG_DIR_NAME / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    return log_dir


def configure_logging(
    *,
    level: str = "INFO",
    node: str = "srunportal",
    verbose: bool = False,
    tutorial: bool = False,
) -> pathlib.Path:
    """Configure root logging for the application.

    This attaches two handlers to the **root** logger:

    1) A file handler at ``level`` writing to ``<state-dir>/srunportal/logs/<node>.log``.
       - On Linux/WSL: ``$XDG_STATE_HOME`` (fallback: ``~/.local/state``)
       - On Windows: ``%LOCALAPPDATA%`` (fallback: ``~/AppData/Local``)

    2) A stderr handler at ``WARNING`` and above, or ``INFO`` when ``verbose``.

    Calling this function multiple times is safe: existing root handlers are
    removed and closed before new handlers are installed.

    Args:
        level (str): Logging level name (e.g., ``"DEBUG"``, ``"INFO"``).
        node (str): Name used for the log filename.
        verbose (bool): Echo ``INFO`` messages (per-attempt outcomes) to stderr.
        tutorial (bool): If True, use deterministic timestamps and overwrite the log
            file each run.

    Returns:
        pathlib.Path: The log file path.

    Raises:
        ValueError: If ``level`` is not a valid logging level name.

    Examples:
        >>> import logging
        >>> from srunportal.logging_utils import configure_logging
        >>> _ = configure_logging(level="INFO", node="demo", tutorial=True)
        >>> logging.getLogger("demo").info("hello")
    """
    # route Python warnings through logging.
    logging.captureWarnings(True)
    warn_logger = logging.getLogger("py.warnings")

    # normalize and validate level
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level!r}")

    root = logging.getLogger()
    root.setLevel(numeric_level)

    # avoid duplicated logs if configure_logging is called more than once
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    # base class for StreamHandler and RotatingFileHandler allowing both to type check out
    handler: logging.Handler

    # let warnings flow to root handlers (avoid duplicates)
    warn_logger.handlers.clear()
    warn_logger.propagate = True

    err_handler = logging.StreamHandler(stream=sys.stderr)
    err_handler.setLevel("INFO" if verbose else "WARNING")
    _set_formatter(tutorial, err_handler)
    root.addHandler(err_handler)

    fn = _default_log_dir() / pathlib.Path(node).with_suffix(".log")

    # tutorial runs only keep the last log
    if tutorial:
        handler = logging.FileHandler(filename=fn, mode="w")
    else:
        handler = RotatingFileHandler(
            filename=fn, mode="a", maxBytes=50 * 1024 * 1024, backupCount=2
        )

    _set_formatter(tutorial, handler)
    root.addHandler(handler)
    handler.setLevel(numeric_level)

    return fn
