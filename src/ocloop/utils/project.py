"""Working-directory housekeeping."""

import logging
from pathlib import Path
from typing import Optional

from ocloop.constants import GITIGNORE_ENTRY

logger = logging.getLogger(__name__)

GITIGNORE_FILE = ".gitignore"


def ensure_gitignore(cwd: Optional[Path] = None, entry: str = GITIGNORE_ENTRY) -> bool:
    """Make sure ``.gitignore`` lists ``entry``. Returns True if the file changed."""
    path = (cwd or Path.cwd()) / GITIGNORE_FILE

    if not path.exists():
        path.write_text(f"{entry}\n", encoding="utf-8")
        logger.info(f"Created {GITIGNORE_FILE} with {entry}")
        return True

    content = path.read_text(encoding="utf-8")
    if entry in (line.strip() for line in content.split("\n")):
        return False

    suffix = "" if content.endswith("\n") or not content else "\n"
    path.write_text(f"{content}{suffix}{entry}\n", encoding="utf-8")
    logger.info(f"Added {entry} to {GITIGNORE_FILE}")
    return True
