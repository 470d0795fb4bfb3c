"""Logging configuration for diskattach.

Provides configurable logging with:
- File-based logging with rotation
- Console output for real-time debugging
- Timing of remote engine calls on a separate perf logger

Environment Variables:
    DISKATTACH_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    DISKATTACH_LOG_FILE: Path to log file (default: ~/.diskattach/diskattach.log)
    DISKATTACH_LOG_MAX_SIZE: Max log file size in MB (default: 10)
    DISKATTACH_LOG_BACKUPS: Number of backup files to keep (default: 5)

Usage:
    from vm_disk_attachments.utils.logging_config import setup_logging, timed

    setup_logging()  # Call once at startup

    @timed("list_attachments")
    async def list_attachments(self, vm_id, retry):
        ...

    async with timed_section("cleanup", vm_id=vm_id):
        ...
"""
import asyncio
import functools
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Callable, Any

perf_logger = logging.getLogger("diskattach.perf")
main_logger = logging.getLogger("diskattach")

# Loggers fed by setup_logging: the CLI namespace and the package modules
APP_LOGGERS = ("diskattach", "vm_disk_attachments")

MAIN_FORMAT = "%(asctime)s.%(msecs)03d | %(name)-32s | %(levelname)-7s | %(message)s"
PERF_FORMAT = "%(asctime)s.%(msecs)03d | PERF | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class LogSettings:
    """Logging options read from DISKATTACH_LOG_* variables."""
    level: int = logging.INFO
    file: Path = Path.home() / ".diskattach" / "diskattach.log"
    max_size_mb: int = 10
    backups: int = 5

    @classmethod
    def from_env(cls) -> "LogSettings":
        return cls(
            level=get_log_level(),
            file=get_log_file(),
            max_size_mb=int(os.environ.get("DISKATTACH_LOG_MAX_SIZE", "10")),
            backups=int(os.environ.get("DISKATTACH_LOG_BACKUPS", "5")),
        )

    @property
    def perf_file(self) -> Path:
        return self.file.parent / "diskattach-perf.log"


def get_log_level() -> int:
    """Get log level from environment."""
    level_str = os.environ.get("DISKATTACH_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file() -> Path:
    """Get log file path from environment."""
    default_path = Path.home() / ".diskattach" / "diskattach.log"
    return Path(os.environ.get("DISKATTACH_LOG_FILE", str(default_path)))


def _rotating(path: Path, settings: LogSettings, fmt: str) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=settings.max_size_mb * 1024 * 1024,
        backupCount=settings.backups,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(fmt, datefmt=DATE_FORMAT))
    return handler


def _replace_handlers(logger: logging.Logger, handlers: list[logging.Handler]) -> None:
    for old in [h for h in logger.handlers if getattr(h, "_diskattach", False)]:
        logger.removeHandler(old)
        old.close()
    for handler in handlers:
        handler._diskattach = True  # type: ignore[attr-defined]
        logger.addHandler(handler)


def setup_logging(settings: Optional[LogSettings] = None) -> LogSettings:
    """Configure logging for the application.

    Sets up:
    - Console handler (INFO+ by default, respects DISKATTACH_LOG_LEVEL)
    - File handler with rotation (DEBUG level - captures everything)
    - Performance logger for remote call timings

    Calling it again replaces the handlers of the previous call.
    """
    settings = settings or LogSettings.from_env()
    settings.file.parent.mkdir(parents=True, exist_ok=True)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(settings.level)
    console_handler.setFormatter(logging.Formatter(MAIN_FORMAT, datefmt=DATE_FORMAT))
    file_handler = _rotating(settings.file, settings, MAIN_FORMAT)

    for name in APP_LOGGERS:
        app_logger = logging.getLogger(name)
        app_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
        _replace_handlers(app_logger, [console_handler, file_handler])

    perf_logger.setLevel(logging.DEBUG)
    perf_logger.propagate = False
    _replace_handlers(perf_logger, [_rotating(settings.perf_file, settings, PERF_FORMAT)])

    main_logger.info(
        f"Logging initialized: level={logging.getLevelName(settings.level)}, "
        f"file={settings.file}"
    )
    perf_logger.info(f"Performance logging to: {settings.perf_file}")
    return settings


def _perf_line(operation: str, vm_id: Optional[str], elapsed: float, outcome: str) -> str:
    return f"{operation:20s} | {vm_id or 'N/A':36s} | {elapsed:8.2f}ms | {outcome}"


def timed(operation: str):
    """Decorator to log execution time of an async store method.

    The VM identifier is taken from the first positional argument after
    ``self`` when it is a string, which matches the store call signatures.

    Usage:
        @timed("create_attachment")
        async def create_attachment(self, vm_id, disk_id, interface, retry):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            vm_id = kwargs.get("vm_id")
            if vm_id is None and len(args) > 1 and isinstance(args[1], str):
                vm_id = args[1]

            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_perf_line(operation, vm_id, elapsed, f"FAIL: {e}"))
                raise
            elapsed = (time.perf_counter() - start) * 1000  # ms
            perf_logger.info(_perf_line(operation, vm_id, elapsed, "OK"))
            return result

        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"timed() expects a coroutine function, got {func!r}")
        return async_wrapper

    return decorator


@asynccontextmanager
async def timed_section(operation: str, vm_id: Optional[str] = None, **extra):
    """Async context manager for timing a phase of a reconciliation pass.

    Usage:
        async with timed_section("cleanup", vm_id=vm_id, entries=3):
            ...
    """
    start = time.perf_counter()
    extra_str = " | ".join(f"{k}={v}" for k, v in extra.items()) if extra else ""

    try:
        yield
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        msg = _perf_line(operation, vm_id, elapsed, f"FAIL: {e}")
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.warning(msg)
        raise
    elapsed = (time.perf_counter() - start) * 1000
    msg = _perf_line(operation, vm_id, elapsed, "OK")
    if extra_str:
        msg += f" | {extra_str}"
    perf_logger.info(msg)
