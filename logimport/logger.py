import logging
import os
from typing import Optional


def setup_logger(
    name: Optional[str] = "logimport",
    log_file: Optional[str] = "logimport.log",
    verbose: bool = False,
    log_dir: str = ".logs",
) -> logging.Logger:
    """Sets up a logger that outputs messages to both the console and a log file.

    Every module of the package logs through a child of the ``logimport``
    logger, so configuring that one name once at startup is enough. Handlers
    are only added once to prevent duplicate messages. If `verbose` is True,
    DEBUG messages are shown and filename/line info is included.

    Args:
        name (str, optional): Name of the logger. If None, the root logger is used.
        log_file (str, optional): Name of the log file inside `log_dir`. If None,
            only the console handler is installed.
        verbose (bool, optional): If True, sets level to DEBUG
            and includes filename and line number.
        log_dir (str, optional): Directory the log file is written to.

    Returns:
        logging.Logger: Configured logger instance with console and file handlers.
    """
    logger = logging.getLogger(name)
    logger.propagate = False
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    if logger.handlers:
        return logger

    if verbose:
        fmt = "%(asctime)s - %(levelname)s - [%(threadName)s %(filename)s:%(lineno)d] - %(message)s"
    else:
        fmt = "%(asctime)s - %(levelname)s - %(message)s"

    # Console handler setup
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(console_handler)

    if log_file:
        # File handler setup
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(os.path.join(log_dir, log_file), mode="w")
        file_handler.setFormatter(logging.Formatter(fmt))
        logger.addHandler(file_handler)

    return logger
