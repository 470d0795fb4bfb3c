"""Audit logging for attachment changes.

Every mutation issued against a remote engine (create, remove, disk delete)
is written as one JSON line to a dedicated audit log, dry runs included.
"""
import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("diskattach.audit")

AUDIT_DIR = Path.home() / ".diskattach"
AUDIT_FILE_NAME = "audit.log"
AUDIT_MAX_BYTES = 10 * 1024 * 1024
AUDIT_BACKUPS = 10


def default_audit_file() -> Path:
    return AUDIT_DIR / AUDIT_FILE_NAME


def setup_audit_logging(log_dir: Optional[str] = None) -> Path:
    """Route audit records to a rotating JSON-lines file.

    Replaces any handler installed by an earlier call. Audit records do not
    reach the application log.

    Args:
        log_dir: Directory for the audit log. Defaults to ~/.diskattach/

    Returns:
        Path of the audit log file
    """
    directory = Path(log_dir) if log_dir else AUDIT_DIR
    directory.mkdir(parents=True, exist_ok=True)
    audit_file = directory / AUDIT_FILE_NAME

    for old in list(audit_logger.handlers):
        audit_logger.removeHandler(old)
        old.close()

    handler = RotatingFileHandler(
        audit_file, maxBytes=AUDIT_MAX_BYTES, backupCount=AUDIT_BACKUPS
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
    return audit_file


@dataclass
class ChangeRecord:
    """Record of a single attachment change."""
    timestamp: str
    vm_id: str
    operation: str  # create_attachment, remove_attachment, delete_disk
    user: str
    dry_run: bool
    success: bool
    parameters: dict
    result: Optional[dict] = None
    error: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=None)

    @classmethod
    def from_json(cls, json_str: str) -> "ChangeRecord":
        data = json.loads(json_str)
        return cls(**data)


class ChangeTracker:
    """Track and log attachment changes for one VM."""

    def __init__(self, vm_id: str, user: Optional[str] = None):
        self.vm_id = vm_id
        self.user = user or "system"
        self.records: list[ChangeRecord] = []

    def log_change(
        self,
        operation: str,
        parameters: dict,
        success: bool,
        result: Optional[dict] = None,
        error: Optional[str] = None,
        dry_run: bool = False,
    ) -> ChangeRecord:
        """Log an attachment change.

        Args:
            operation: The remote operation performed
            parameters: Parameters passed to the operation
            success: Whether the operation succeeded
            result: What the engine returned (e.g. the new attachment)
            error: Error message if failed
            dry_run: Whether this was a dry-run (no actual changes)

        Returns:
            The ChangeRecord that was logged
        """
        record = ChangeRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            vm_id=self.vm_id,
            operation=operation,
            user=self.user,
            dry_run=dry_run,
            success=success,
            parameters=parameters,
            result=result,
            error=error[:1000] if error else None,
        )

        audit_logger.info(record.to_json())
        self.records.append(record)

        return record


def _read_records(log_file: Path) -> Iterator[ChangeRecord]:
    with open(log_file) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                yield ChangeRecord.from_json(line)
            except (json.JSONDecodeError, TypeError):
                logger.debug(f"Skipping malformed audit line in {log_file}")


def get_recent_changes(
    log_file: Optional[str] = None,
    vm_id: Optional[str] = None,
    operation: Optional[str] = None,
    limit: int = 100,
) -> list[ChangeRecord]:
    """Read recent changes back from the audit log, most recent first.

    Args:
        log_file: Path to audit log. Defaults to ~/.diskattach/audit.log
        vm_id: Only records of this VM
        operation: Only records of this operation
        limit: Maximum number of records to return
    """
    path = Path(log_file) if log_file else default_audit_file()
    if not path.exists():
        return []

    matching = [
        record for record in _read_records(path)
        if (vm_id is None or record.vm_id == vm_id)
        and (operation is None or record.operation == operation)
    ]
    return matching[::-1][:limit]
