"""Utility modules for retries, logging and auditing."""
from .connection import RetryStrategy, with_retry, is_transient
from .logging_config import (
    setup_logging,
    LogSettings,
    timed,
    timed_section,
    perf_logger,
)
from .audit_log import ChangeTracker, ChangeRecord, setup_audit_logging, get_recent_changes

__all__ = [
    "RetryStrategy",
    "with_retry",
    "is_transient",
    "setup_logging",
    "LogSettings",
    "timed",
    "timed_section",
    "perf_logger",
    "ChangeTracker",
    "ChangeRecord",
    "setup_audit_logging",
    "get_recent_changes",
]
