# dexarb/logger.py
import logging
import os
import sys
from typing import Optional

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(module)s | %(message)s'


def setup_console_logger(name: str, level: str, logfile: Optional[str] = None) -> logging.Logger:
    """
    Sets up the named logger for console output, optionally mirrored to a file.
    Children (e.g. 'dexarb.execution') propagate into it.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        formatter = logging.Formatter(LOG_FORMAT)

        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        if logfile:
            directory = os.path.dirname(logfile)
            if directory:
                os.makedirs(directory, exist_ok=True)
            file_handler = logging.FileHandler(logfile)
            file_handler.setFormatter(formatter)
            # The file keeps everything; the console only shows `level` and up.
            file_handler.setLevel(logging.DEBUG)
            logger.setLevel(logging.DEBUG)
            handler.setLevel(level)
            logger.addHandler(file_handler)

    return logger
