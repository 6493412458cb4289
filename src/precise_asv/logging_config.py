"""
Logging configuration for the precise-asv pipeline.

Every module logs to a child of the ``precise_asv`` logger. Pipeline stages
are wrapped in ``PerformanceLogger`` (or the ``time_it`` decorator) so a run
reports where its time goes, and the measured durations can be collected
into the run context.
"""

import functools
import logging
import platform
import sys
import time
from importlib import metadata
from pathlib import Path
from typing import Callable, Dict, Optional

ROOT_LOGGER = "precise_asv"
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
REPORTED_PACKAGES = ("numpy", "pandas", "scipy", "statsmodels", "polars", "pydantic")


class PerformanceLogger:
    """Context manager that logs the start, end and duration of a stage.

    When ``timings`` is given, the duration in seconds is stored there under
    the stage name whether or not the stage succeeded.
    """

    def __init__(
        self,
        logger: logging.Logger,
        operation: str,
        timings: Optional[Dict[str, float]] = None,
    ):
        self.logger = logger
        self.operation = operation
        self.timings = timings
        self.start_time: Optional[float] = None
        self.duration: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.info(f"Starting {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is None:
            return False
        self.duration = time.perf_counter() - self.start_time
        if self.timings is not None:
            self.timings[self.operation] = self.duration
        if exc_type is None:
            self.logger.info(f"Completed {self.operation} in {self.duration:.3f}s")
        else:
            self.logger.error(f"Failed {self.operation} after {self.duration:.3f}s: {exc_val}")
        return False


def time_it(operation: Optional[str] = None):
    """Decorator logging the duration of each call on the function's module logger."""
    def decorator(func: Callable) -> Callable:
        name = operation or func.__name__.replace("_", " ")
        logger = logging.getLogger(func.__module__)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with PerformanceLogger(logger, name):
                return func(*args, **kwargs)
        return wrapper
    return decorator


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    console_output: bool = True,
    format_string: str = DEFAULT_FORMAT,
) -> logging.Logger:
    """Configure the ``precise_asv`` logger tree.

    Handlers from an earlier call are replaced. Records do not propagate to
    the root logger, so host applications keep control of their own output.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ERROR, CRITICAL); unknown
            names fall back to INFO
        log_file: Optional file that receives the same records as the console
        console_output: Whether to log to stderr
        format_string: Record format

    Returns:
        The configured ``precise_asv`` logger
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(format_string)

    handlers = []
    if console_output:
        handlers.append(logging.StreamHandler(sys.stderr))
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(numeric_level)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.propagate = False
    return logger


def package_versions() -> Dict[str, str]:
    versions = {}
    for name in REPORTED_PACKAGES:
        try:
            versions[name] = metadata.version(name)
        except metadata.PackageNotFoundError:
            versions[name] = "not installed"
    return versions


def log_system_info(logger: logging.Logger) -> None:
    """Log interpreter, platform and numerical stack versions for reproducibility."""
    logger.info(f"Platform: {platform.platform()}")
    logger.info(f"Python: {sys.version.split()[0]}")
    for name, version in package_versions().items():
        logger.info(f"{name}: {version}")
