"""State Store for persisted attachment read-back state.

Handles:
- Reading/writing one YAML state file per VM
- Directory structure initialization
- Drift detection against the live attachments
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import yaml

from ..reconcile.schema import ResolvedAttachment
from ..stores.base import Attachment

logger = logging.getLogger(__name__)

# Default state directory
DEFAULT_STATE_DIR = Path.home() / ".diskattach"


@dataclass
class StoredState:
    """Persisted state of one VM with metadata."""
    vm_id: str
    attachments: list[ResolvedAttachment] = field(default_factory=list)
    remove_unmanaged: bool = False
    checksum: str = ""
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    source: str = "apply"  # apply, import, refresh

    def to_yaml(self) -> str:
        """Convert to YAML string with metadata header."""
        data = {
            "vm_id": self.vm_id,
            "checksum": self.checksum,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "updated_by": self.updated_by,
            "source": self.source,
            "remove_unmanaged": self.remove_unmanaged,
            "attachments": [a.to_dict() for a in self.attachments],
        }
        return yaml.dump(data, default_flow_style=False, sort_keys=False)

    @classmethod
    def from_yaml(cls, yaml_str: str, vm_id: str) -> "StoredState":
        """Parse from YAML string."""
        data = yaml.safe_load(yaml_str) or {}

        updated_at = None
        updated_at_str = data.get("updated_at")
        if isinstance(updated_at_str, datetime):
            updated_at = updated_at_str
        elif updated_at_str:
            try:
                updated_at = datetime.fromisoformat(updated_at_str)
            except (ValueError, TypeError):
                logger.warning(f"Ignoring malformed updated_at in state of VM {vm_id}")

        return cls(
            vm_id=vm_id,
            attachments=[
                ResolvedAttachment.from_dict(a) for a in data.get("attachments") or []
            ],
            remove_unmanaged=bool(data.get("remove_unmanaged", False)),
            checksum=data.get("checksum", ""),
            updated_at=updated_at,
            updated_by=data.get("updated_by"),
            source=data.get("source", "apply"),
        )


@dataclass
class DriftItem:
    """A single drift item between stored and live state."""
    disk_id: str
    drift_type: str  # 'missing', 'extra', 'modified'
    expected: Any = None
    actual: Any = None
    details: str = ""


@dataclass
class DriftReport:
    """Drift report comparing stored vs live attachments."""
    vm_id: str
    checked_at: datetime
    in_sync: bool
    items: list[DriftItem] = field(default_factory=list)

    @property
    def drift_count(self) -> int:
        return len(self.items)

    def summary(self) -> str:
        """Human-readable summary."""
        if self.in_sync:
            return f"{self.vm_id}: IN SYNC"

        lines = [f"{self.vm_id}: DRIFT ({self.drift_count} issues)"]
        for item in self.items[:5]:
            lines.append(f"  - disk {item.disk_id}: {item.drift_type}")
        if self.drift_count > 5:
            lines.append(f"  ... and {self.drift_count - 5} more")
        return "\n".join(lines)


def check_drift(
    vm_id: str,
    state: list[ResolvedAttachment],
    actual: list[Attachment],
) -> DriftReport:
    """
    Compare stored state with the live attachments of a VM.

    Args:
        vm_id: VM identifier
        state: Resolved attachments from the last pass
        actual: Attachments currently reported by the engine

    Returns:
        DriftReport with all differences
    """
    items: list[DriftItem] = []
    live_by_disk: dict[str, Attachment] = {}
    for attachment in actual:
        live_by_disk.setdefault(attachment.disk_id, attachment)

    stored_disks = set()
    for entry in state:
        stored_disks.add(entry.disk_id)
        live = live_by_disk.get(entry.disk_id)

        if live is None:
            items.append(DriftItem(
                disk_id=entry.disk_id,
                drift_type="missing",
                expected=entry.to_dict(),
                details=f"Disk {entry.disk_id} expected but not attached",
            ))
        elif live.interface != entry.interface:
            items.append(DriftItem(
                disk_id=entry.disk_id,
                drift_type="modified",
                expected=entry.interface.value,
                actual=live.interface.value,
                details=(
                    f"Interface {live.interface.value}, expected {entry.interface.value}"
                ),
            ))
        elif live.id != entry.id:
            items.append(DriftItem(
                disk_id=entry.disk_id,
                drift_type="modified",
                expected=entry.id,
                actual=live.id,
                details=f"Attachment id changed from {entry.id} to {live.id}",
            ))

    for disk_id, live in live_by_disk.items():
        if disk_id not in stored_disks:
            items.append(DriftItem(
                disk_id=disk_id,
                drift_type="extra",
                actual=live.to_dict(),
                details=f"Disk {disk_id} attached but not in state",
            ))

    return DriftReport(
        vm_id=vm_id,
        checked_at=datetime.now(timezone.utc),
        in_sync=len(items) == 0,
        items=items,
    )


class StateStore:
    """
    Manages persisted attachment state.

    Directory structure:
        ~/.diskattach/
        └── state/
            ├── <vm_id>.yaml
            └── ...
    """

    def __init__(self, base_dir: Optional[Path] = None):
        """
        Initialize the state store.

        Args:
            base_dir: Base directory for state files. Defaults to ~/.diskattach
        """
        self.base_dir = Path(base_dir) if base_dir else DEFAULT_STATE_DIR
        self.state_dir = self.base_dir / "state"
        self._ensure_directories()

    def _ensure_directories(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _state_path(self, vm_id: str) -> Path:
        """State file of a VM.

        Raises:
            ValueError: If the VM id would place the file outside the state directory
        """
        if not vm_id or "/" in vm_id or "\\" in vm_id or ".." in vm_id:
            raise ValueError(f"Invalid VM id for a state file: {vm_id!r}")
        path = self.state_dir / f"{vm_id}.yaml"
        if path.resolve().parent != self.state_dir.resolve():
            raise ValueError(f"Invalid VM id for a state file: {vm_id!r}")
        return path

    def load(self, vm_id: str) -> Optional[StoredState]:
        """Get stored state for a VM, None if there is none."""
        path = self._state_path(vm_id)
        if not path.exists():
            return None
        return StoredState.from_yaml(path.read_text(), vm_id)

    def save(
        self,
        vm_id: str,
        attachments: list[ResolvedAttachment],
        remove_unmanaged: bool = False,
        checksum: str = "",
        updated_by: Optional[str] = None,
        source: str = "apply",
    ) -> StoredState:
        """
        Save state for a VM.

        Args:
            vm_id: VM identifier
            attachments: Resolved attachments of the last pass
            remove_unmanaged: Whether the pass owned unmanaged attachments
            checksum: Checksum of the desired-state document
            updated_by: Who made the change
            source: What produced the state

        Returns:
            The saved StoredState
        """
        state = StoredState(
            vm_id=vm_id,
            attachments=sorted(attachments, key=lambda a: a.disk_id),
            remove_unmanaged=remove_unmanaged,
            checksum=checksum,
            updated_at=datetime.now(timezone.utc),
            updated_by=updated_by,
            source=source,
        )
        self._state_path(vm_id).write_text(state.to_yaml())
        logger.info(f"Saved state for VM {vm_id} ({len(state.attachments)} attachment(s))")
        return state

    def delete(self, vm_id: str) -> bool:
        """Delete stored state for a VM."""
        path = self._state_path(vm_id)
        if path.exists():
            path.unlink()
            logger.info(f"Deleted state for VM {vm_id}")
            return True
        return False

    def list_vms(self) -> list[str]:
        """List VMs with stored state."""
        return sorted(p.stem for p in self.state_dir.glob("*.yaml"))
