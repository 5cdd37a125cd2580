"""Harness log file setup.

Each run starts a fresh ``.loop.log`` in the working directory; the previous
run's log is kept as ``.loop.log.old``. The file opens with a session header
and records every ``ocloop`` logger message.
"""

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ocloop.constants import LOG_FILE

_FILE_FORMAT = "[%(asctime)s.%(msecs)03d] [%(levelname)s] [%(name)s] %(message)s"
_DATE_FORMAT = "%H:%M:%S"
_RULE = "=" * 80

# Quiet even in verbose mode
_NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")

logger = logging.getLogger(__name__)


def rotate_log(log_path: Path, old_path: Path) -> None:
    if not log_path.exists():
        return
    try:
        log_path.replace(old_path)
    except OSError as e:
        logger.warning(f"Could not rotate {log_path}: {e}")


def session_header(debug: bool, cwd: str, model: Optional[str]) -> str:
    return "\n".join(
        [
            _RULE,
            f"OCLOOP SESSION: {datetime.now(timezone.utc).isoformat()}",
            f"Working Directory: {cwd}",
            f"Debug Mode: {str(debug).lower()}",
            f"Model: {model or 'default'}",
            _RULE,
            "",
        ]
    )


def setup_logging(
    log_file: str = LOG_FILE,
    debug: bool = False,
    verbose: bool = False,
    model: Optional[str] = None,
    cwd: Optional[str] = None,
) -> Optional[Path]:
    """Route ``ocloop`` logging to a fresh log file in ``cwd``.

    Returns the log path, or None when the file could not be created; the
    harness keeps running without a log file in that case.
    """
    cwd = cwd or os.getcwd()
    log_path = Path(cwd) / log_file
    rotate_log(log_path, log_path.with_name(f"{log_path.name}.old"))

    try:
        log_path.write_text(session_header(debug, cwd, model), encoding="utf-8")
        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    except OSError as e:
        logger.warning(f"Could not initialize log file {log_path}: {e}")
        return None

    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_DATE_FORMAT))
    package_logger = logging.getLogger("ocloop")
    package_logger.handlers.clear()
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    # The terminal belongs to the harness UI
    package_logger.propagate = False

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_path


def log_iteration_start(n: int) -> None:
    logging.getLogger("ocloop").info(f"--- ITERATION {n} ---")


def log_iteration_end(n: int) -> None:
    logging.getLogger("ocloop").info(f"--- ITERATION {n} END ---")
