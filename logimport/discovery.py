import logging
import os
from typing import List, Optional

from .config import DEFAULT_PATTERN

logger = logging.getLogger(__name__)


def find_log_files(
    logfile: Optional[str] = None,
    logdir: Optional[str] = None,
    pattern: str = DEFAULT_PATTERN,
) -> List[str]:
    """
    Return the files to import.

    An explicit ``logfile`` is returned as-is. Otherwise ``logdir`` is walked
    recursively and every file whose name contains ``pattern`` is kept, in
    sorted path order. Unreadable directories are logged and skipped.

    :param logfile: Single file to import.
    :param logdir: Directory to scan.
    :param pattern: Substring a file name must contain.
    :return: Candidate paths.
    """
    if logfile:
        return [logfile]
    if not logdir:
        return []

    logger.info(f"Reading dir: {logdir}")
    found: List[str] = []

    def on_error(exc: OSError) -> None:
        logger.warning(f"Cannot read {exc.filename}: {exc.strerror}")

    for root, dirs, files in os.walk(logdir, onerror=on_error):
        dirs.sort()
        for name in sorted(files):
            if pattern in name:
                found.append(os.path.join(root, name))

    logger.info(f"Found {len(found)} files matching '{pattern}'")
    return found
