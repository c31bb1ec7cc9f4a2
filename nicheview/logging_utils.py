import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

LOGGER_NAME = "nicheview"
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def _level(level: str) -> int:
    return getattr(logging, str(level).upper(), logging.INFO)


def _attach(logger: logging.Logger, handler: logging.Handler, level: int) -> None:
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler.setLevel(level)
    logger.addHandler(handler)


def setup_logger(out_dir: Optional[str] = None, level: str = "INFO", console: bool = True) -> logging.Logger:
    """Configure the `nicheview` logger once per process.

    With `out_dir`, run logs go to `nicheview.log` and errors additionally to
    `nicheview.error.log`, both rotating.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger
    lvl = _level(level)
    logger.setLevel(lvl)

    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
        log_path = os.path.join(out_dir, "nicheview.log")
        err_path = os.path.join(out_dir, "nicheview.error.log")
        _attach(logger, RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=3), lvl)
        _attach(logger, RotatingFileHandler(err_path, maxBytes=2 * 1024 * 1024, backupCount=2), logging.ERROR)
    if console:
        _attach(logger, logging.StreamHandler(), lvl)

    logger.propagate = False
    if out_dir:
        logger.info("Logger initialized. Logs under %s", out_dir)
    return logger


def close_logger() -> None:
    """Detach and close the handlers installed by setup_logger."""
    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.propagate = True
