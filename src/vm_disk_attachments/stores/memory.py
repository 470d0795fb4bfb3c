"""In-memory engine simulation.

Behaves like a real engine for everything the reconciler relies on, without
any network access. Used for dry local runs (``type: memory`` in the engines
inventory) and as the deterministic store in tests.
"""
import logging
import uuid
from collections import OrderedDict
from dataclasses import replace
from typing import Optional

from .base import (
    Attachment,
    AttachmentStore,
    Disk,
    DiskInterface,
    NotFoundFailure,
    RemoteFailure,
    StoreConfig,
)

logger = logging.getLogger(__name__)


class MemoryStore(AttachmentStore):
    """Attachment store backed by plain dictionaries."""

    def __init__(self, store_id: str = "memory", config: Optional[StoreConfig] = None):
        super().__init__(store_id, config or StoreConfig(type="memory", name=store_id))
        self.vms: set[str] = set()
        self.disks: dict[str, Disk] = {}
        # vm_id -> attachment_id -> Attachment, in creation order
        self.attachments: dict[str, OrderedDict[str, Attachment]] = {}
        # (operation, args) for every hook invocation, failed ones included
        self.calls: list[tuple[str, tuple]] = []
        self._faults: dict[str, list[RemoteFailure]] = {}

    # --- Seeding helpers ---

    def add_vm(self, vm_id: Optional[str] = None) -> str:
        vm_id = vm_id or str(uuid.uuid4())
        self.vms.add(vm_id)
        self.attachments.setdefault(vm_id, OrderedDict())
        return vm_id

    def add_disk(self, disk_id: Optional[str] = None, **kwargs) -> Disk:
        disk = Disk(id=disk_id or str(uuid.uuid4()), **kwargs)
        self.disks[disk.id] = disk
        return disk

    def seed_attachment(
        self,
        vm_id: str,
        disk_id: str,
        interface: DiskInterface,
        attachment_id: Optional[str] = None,
    ) -> Attachment:
        """Place an attachment directly, bypassing checks and call records."""
        self.add_vm(vm_id)
        if disk_id not in self.disks:
            self.add_disk(disk_id)
        attachment = Attachment(
            id=attachment_id or str(uuid.uuid4()),
            disk_id=disk_id,
            interface=DiskInterface.parse(interface),
            vm_id=vm_id,
        )
        self.attachments[vm_id][attachment.id] = attachment
        return attachment

    def fail_next(self, operation: str, failure: RemoteFailure) -> None:
        """Make the next call of ``operation`` raise ``failure``."""
        self._faults.setdefault(operation, []).append(failure)

    def calls_for(self, operation: str) -> list[tuple]:
        return [args for op, args in self.calls if op == operation]

    @property
    def mutating_calls(self) -> list[tuple[str, tuple]]:
        return [
            call for call in self.calls
            if call[0] in ("create_attachment", "remove_attachment", "delete_disk")
        ]

    def _record(self, operation: str, *args) -> None:
        self.calls.append((operation, args))
        faults = self._faults.get(operation)
        if faults:
            raise faults.pop(0)

    def _vm(self, operation: str, vm_id: str) -> OrderedDict[str, Attachment]:
        if vm_id not in self.vms:
            raise NotFoundFailure(operation, f"VM {vm_id} not found")
        return self.attachments.setdefault(vm_id, OrderedDict())

    # --- Hooks ---

    async def _list_attachments(self, vm_id: str) -> list[Attachment]:
        self._record("list_attachments", vm_id)
        return list(self._vm("list_attachments", vm_id).values())

    async def _get_attachment(self, vm_id: str, attachment_id: str) -> Attachment:
        self._record("get_attachment", vm_id, attachment_id)
        attachments = self._vm("get_attachment", vm_id)
        if attachment_id not in attachments:
            raise NotFoundFailure(
                "get_attachment", f"attachment {attachment_id} not found on VM {vm_id}"
            )
        return attachments[attachment_id]

    async def _create_attachment(
        self, vm_id: str, disk_id: str, interface: DiskInterface
    ) -> Attachment:
        self._record("create_attachment", vm_id, disk_id, interface)
        attachments = self._vm("create_attachment", vm_id)
        disk = self.disks.get(disk_id)
        if disk is None:
            raise NotFoundFailure("create_attachment", f"disk {disk_id} not found")

        if any(a.disk_id == disk_id for a in attachments.values()):
            raise RemoteFailure(
                "create_attachment", f"disk {disk_id} is already attached to VM {vm_id}"
            )
        if not disk.shared:
            for other_vm, other in self.attachments.items():
                if other_vm != vm_id and any(a.disk_id == disk_id for a in other.values()):
                    raise RemoteFailure(
                        "create_attachment",
                        f"disk {disk_id} is attached to VM {other_vm} and is not shared",
                    )

        attachment = Attachment(
            id=str(uuid.uuid4()),
            disk_id=disk_id,
            interface=interface,
            vm_id=vm_id,
        )
        attachments[attachment.id] = attachment
        logger.debug(f"Attached disk {disk_id} to VM {vm_id} as {attachment.id}")
        return attachment

    async def _remove_attachment(self, vm_id: str, attachment_id: str) -> None:
        self._record("remove_attachment", vm_id, attachment_id)
        attachments = self._vm("remove_attachment", vm_id)
        if attachments.pop(attachment_id, None) is None:
            raise NotFoundFailure(
                "remove_attachment", f"attachment {attachment_id} not found on VM {vm_id}"
            )

    async def _resolve_disk(self, attachment: Attachment) -> Disk:
        self._record("resolve_disk", attachment.id)
        disk = self.disks.get(attachment.disk_id)
        if disk is None:
            raise NotFoundFailure("resolve_disk", f"disk {attachment.disk_id} not found")
        return replace(disk)

    async def _delete_disk(self, disk: Disk) -> None:
        self._record("delete_disk", disk.id)
        if self.disks.pop(disk.id, None) is None:
            raise NotFoundFailure("delete_disk", f"disk {disk.id} not found")
        for attachments in self.attachments.values():
            for attachment_id in [k for k, a in attachments.items() if a.disk_id == disk.id]:
                del attachments[attachment_id]
