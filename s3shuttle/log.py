"""
Logging setup shared by all commands. Messages go to stdout at the level
picked by --quiet/--debug; --log-file additionally captures everything,
including canonical requests and strings to sign, at DEBUG level.
"""

import logging
import sys
from typing import Optional


def setup_logging(console_level: int, log_file: Optional[str] = None) -> None:
    """
    Configure logging:
    - Console uses level console_level (WARNING, INFO or DEBUG).
    - File, if given, captures everything at DEBUG level.
    """
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if log_file else console_level)

    # Remove existing handlers
    for h in list(logger.handlers):
        logger.removeHandler(h)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(console_level)
    ch.setFormatter(logging.Formatter('[%(levelname)s] %(message)s'))
    logger.addHandler(ch)

    if log_file:
        fh = logging.FileHandler(log_file, mode='w')
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(message)s'))
        logger.addHandler(fh)

    # urllib3 is chatty at DEBUG
    logging.getLogger('urllib3').setLevel(logging.INFO if console_level > logging.DEBUG else logging.DEBUG)
