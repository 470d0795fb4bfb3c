"""Schema definitions for attachment reconciliation.

Defines the desired set, the diff model and the result of a pass.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Mapping, Optional

from ..stores.base import Attachment, DiskInterface, RemoteFailure


class ConfigurationFailure(ValueError):
    """Malformed desired-set input, detected before any remote call."""

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class ChangeType(str, Enum):
    """Decision for one desired entry."""
    CREATE = "create"        # No attachment for the disk yet
    RECREATE = "recreate"    # Attached through another interface
    NO_CHANGE = "no_change"  # Attached as declared


class CleanupAction(str, Enum):
    """What happens to an unmanaged attachment."""
    DETACH = "detach"    # Remove the attachment only
    DESTROY = "destroy"  # Delete the underlying disk


# --- Desired state ---

@dataclass(frozen=True)
class DesiredAttachment:
    """One declared attachment."""
    disk_id: str
    interface: DiskInterface


class DesiredSet(Mapping[str, DiskInterface]):
    """Declared disk_id -> interface mapping for one VM.

    Keys are unique by construction; duplicates are a configuration error.
    """

    def __init__(self, entries: Optional[list[DesiredAttachment]] = None):
        self._entries: dict[str, DiskInterface] = {}
        duplicates = []
        for entry in entries or []:
            if entry.disk_id in self._entries:
                duplicates.append(entry.disk_id)
                continue
            self._entries[entry.disk_id] = entry.interface
        if duplicates:
            raise ConfigurationFailure(
                [f"Duplicate disk_id in desired attachments: {d}" for d in duplicates]
            )

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, DiskInterface]) -> "DesiredSet":
        entries = []
        errors = []
        for disk_id, interface in mapping.items():
            try:
                entries.append(DesiredAttachment(disk_id, DiskInterface.parse(interface)))
            except ValueError as e:
                errors.append(f"Disk {disk_id}: {e}")
        if errors:
            raise ConfigurationFailure(errors)
        return cls(entries)

    def __getitem__(self, disk_id: str) -> DiskInterface:
        return self._entries[disk_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> list[DesiredAttachment]:
        return [DesiredAttachment(d, i) for d, i in self._entries.items()]

    def __repr__(self) -> str:
        inner = ", ".join(f"{d}={i.value}" for d, i in self._entries.items())
        return f"DesiredSet({inner})"


@dataclass
class ReconcileRequest:
    """Typed input of one reconciliation pass."""
    vm_id: str
    desired: DesiredSet
    remove_unmanaged: bool = False
    destructive: bool = False
    checksum: Optional[str] = None


# --- Validation Results ---

@dataclass
class ValidationResult:
    """Result of request validation."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# --- Diff Results ---

@dataclass
class AttachmentChange:
    """Decision for a single desired entry."""
    disk_id: str
    change_type: ChangeType
    desired_interface: DiskInterface
    existing: Optional[Attachment] = None


@dataclass
class UnmanagedCleanup:
    """An actual attachment whose disk is not declared."""
    attachment: Attachment
    action: CleanupAction


@dataclass
class DiffResult:
    """Result of diffing desired vs actual attachments."""
    cleanups: list[UnmanagedCleanup] = field(default_factory=list)
    changes: list[AttachmentChange] = field(default_factory=list)
    # Unmanaged attachments left untouched because cleanup is disabled
    ignored: list[Attachment] = field(default_factory=list)

    @property
    def pending_changes(self) -> list[AttachmentChange]:
        return [c for c in self.changes if c.change_type != ChangeType.NO_CHANGE]

    @property
    def no_change(self) -> bool:
        return not self.cleanups and not self.pending_changes

    @property
    def total_changes(self) -> int:
        return len(self.cleanups) + len(self.pending_changes)


# --- Results ---

@dataclass(frozen=True)
class ResolvedAttachment:
    """Persisted read-back state of one attachment."""
    disk_id: str
    interface: DiskInterface
    id: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "disk_id": self.disk_id,
            "disk_interface": self.interface.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResolvedAttachment":
        return cls(
            disk_id=data["disk_id"],
            interface=DiskInterface.parse(data["disk_interface"]),
            id=data["id"],
        )


@dataclass
class OperationFailure:
    """One failed remote operation within a pass."""
    operation: str
    cause: RemoteFailure
    disk_id: Optional[str] = None
    attachment_id: Optional[str] = None

    def __str__(self) -> str:
        target = self.disk_id or self.attachment_id or "-"
        return f"{self.operation} [{target}]: {self.cause}"

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "disk_id": self.disk_id,
            "attachment_id": self.attachment_id,
            "error": str(self.cause),
        }


class PartialFailure(Exception):
    """Some entries of a pass failed while others succeeded."""

    def __init__(self, result: "ReconcileResult"):
        self.result = result
        details = "; ".join(str(f) for f in result.failures)
        super().__init__(
            f"{len(result.failures)} operation(s) failed on VM {result.vm_id}: {details}"
        )


@dataclass
class ReconcileResult:
    """Combined outcome of one reconciliation pass."""
    vm_id: str
    resolved: list[ResolvedAttachment] = field(default_factory=list)
    failures: list[OperationFailure] = field(default_factory=list)
    changes_made: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    def raise_for_failures(self) -> None:
        """Raise PartialFailure if any operation failed."""
        if self.failures:
            raise PartialFailure(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "vm_id": self.vm_id,
            "success": self.success,
            "dry_run": self.dry_run,
            "resolved": [r.to_dict() for r in self.resolved],
            "failures": [f.to_dict() for f in self.failures],
            "changes_made": self.changes_made,
        }
