"""Diff engine for planning attachment changes.

Matches desired entries to actual attachments by disk ID alone, so a change
of interface is still recognized as the same logical attachment.
"""
from typing import Optional

from ..stores.base import Attachment
from .schema import (
    AttachmentChange,
    ChangeType,
    CleanupAction,
    DesiredSet,
    DiffResult,
    UnmanagedCleanup,
)


class DiffEngine:
    """Calculate the plan that takes actual attachments to the desired set."""

    def calculate(
        self,
        actual: list[Attachment],
        desired: DesiredSet,
        remove_unmanaged: bool = False,
        destructive: bool = False,
    ) -> DiffResult:
        """
        Calculate the diff between desired and actual attachments.

        Args:
            actual: Attachments reported by the engine, in engine order
            desired: Declared disk_id -> interface mapping
            remove_unmanaged: Plan cleanup for undeclared attachments
            destructive: Cleanup deletes disks instead of detaching

        Returns:
            DiffResult with cleanups first, then one change per desired entry
        """
        result = DiffResult()

        managed: list[Attachment] = []
        for attachment in actual:
            if attachment.disk_id in desired:
                managed.append(attachment)
            elif remove_unmanaged:
                action = CleanupAction.DESTROY if destructive else CleanupAction.DETACH
                result.cleanups.append(UnmanagedCleanup(attachment, action))
            else:
                result.ignored.append(attachment)

        for disk_id, interface in desired.items():
            existing = self._find_existing(managed, disk_id)
            if existing is None:
                change_type = ChangeType.CREATE
            elif existing.interface == interface:
                change_type = ChangeType.NO_CHANGE
            else:
                change_type = ChangeType.RECREATE

            result.changes.append(AttachmentChange(
                disk_id=disk_id,
                change_type=change_type,
                desired_interface=interface,
                existing=existing,
            ))

        return result

    @staticmethod
    def _find_existing(actual: list[Attachment], disk_id: str) -> Optional[Attachment]:
        """First actual attachment of the disk, if any."""
        for attachment in actual:
            if attachment.disk_id == disk_id:
                return attachment
        return None


def summarize_diff(diff: DiffResult, vm_id: str = "") -> str:
    """
    Create a human-readable summary of a diff.

    Useful for dry-run output and logging.
    """
    lines = []

    if diff.no_change:
        lines.append("No changes needed - attachments match the desired set")
    else:
        target = f" on VM {vm_id}" if vm_id else ""
        lines.append(f"Changes to apply{target} ({diff.total_changes} total):")
        lines.append("")

    for cleanup in diff.cleanups:
        att = cleanup.attachment
        if cleanup.action == CleanupAction.DESTROY:
            lines.append(f"  [!] Delete unmanaged disk {att.disk_id}")
            lines.append(f"      (attachment {att.id}, {att.interface.value})")
        else:
            lines.append(f"  [-] Detach unmanaged disk {att.disk_id}")
            lines.append(f"      (attachment {att.id}, {att.interface.value})")

    for change in diff.changes:
        if change.change_type == ChangeType.CREATE:
            lines.append(f"  [+] Attach disk {change.disk_id}")
            lines.append(f"      Interface: {change.desired_interface.value}")
        elif change.existing is not None and change.change_type == ChangeType.RECREATE:
            lines.append(f"  [~] Re-attach disk {change.disk_id}")
            lines.append(
                f"      Interface: {change.existing.interface.value} -> "
                f"{change.desired_interface.value} (replaces {change.existing.id})"
            )

    if diff.ignored:
        lines.append("")
        lines.append(f"Unmanaged attachments left in place: {len(diff.ignored)}")
        for att in diff.ignored:
            lines.append(f"  - disk {att.disk_id} ({att.interface.value})")

    return "\n".join(lines)
