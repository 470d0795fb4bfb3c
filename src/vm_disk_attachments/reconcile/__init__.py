"""Reconcile Engine - declarative disk attachment management.

The Reconcile Engine keeps the disk attachments of a VM in line with a
declared set:
- Send the desired attachments, not individual attach/detach calls
- Validation before any engine communication
- Interface changes handled as detach + re-attach
- Optional cleanup of attachments that are not declared
- Partial failures reported per entry, never aborting the pass

Usage:
    from vm_disk_attachments.reconcile import ReconcileEngine

    engine = ReconcileEngine(store)
    result = await engine.apply_config({
        "vm_id": "3f1c...",
        "attachments": [
            {"disk_id": "9b0e...", "disk_interface": "virtio_scsi"},
        ],
        "remove_unmanaged": True,
    }, RetryStrategy(), dry_run=True)
"""

from .engine import ReconcileEngine
from .schema import (
    ConfigurationFailure,
    PartialFailure,
    ChangeType,
    CleanupAction,
    DesiredAttachment,
    DesiredSet,
    ReconcileRequest,
    ValidationResult,
    AttachmentChange,
    UnmanagedCleanup,
    DiffResult,
    ResolvedAttachment,
    OperationFailure,
    ReconcileResult,
)
from .parser import ConfigParser, compute_checksum
from .validator import ConfigValidator, is_uuid
from .diff import DiffEngine, summarize_diff
from .cleaner import UnmanagedCleaner
from .projector import project, refresh

__all__ = [
    # Main engine
    "ReconcileEngine",
    # Errors
    "ConfigurationFailure",
    "PartialFailure",
    # Schema classes
    "ChangeType",
    "CleanupAction",
    "DesiredAttachment",
    "DesiredSet",
    "ReconcileRequest",
    "ValidationResult",
    "AttachmentChange",
    "UnmanagedCleanup",
    "DiffResult",
    "ResolvedAttachment",
    "OperationFailure",
    "ReconcileResult",
    # Parser
    "ConfigParser",
    "compute_checksum",
    # Components (for advanced use)
    "ConfigValidator",
    "is_uuid",
    "DiffEngine",
    "summarize_diff",
    "UnmanagedCleaner",
    "project",
    "refresh",
]
