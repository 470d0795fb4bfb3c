"""Read-back projection of attachment state.

``project`` derives what a pass persists from the desired set and the ids
it resolved. ``refresh`` re-derives stored state from a fresh engine listing
so the next pass sees drift.
"""
from typing import Mapping, Optional

from ..stores.base import Attachment
from .schema import DesiredSet, ResolvedAttachment


def project(
    desired: DesiredSet,
    resolved_ids: Mapping[str, Optional[str]],
) -> list[ResolvedAttachment]:
    """
    Build the persisted state after a reconciliation pass.

    Args:
        desired: The desired set of the pass
        resolved_ids: disk_id -> attachment id for entries that resolved

    Returns:
        One triple per resolved desired entry, ordered by disk_id. Entries
        without an id are left out so the next pass retries them.
    """
    resolved = []
    for disk_id, interface in desired.items():
        attachment_id = resolved_ids.get(disk_id)
        if attachment_id:
            resolved.append(ResolvedAttachment(disk_id, interface, attachment_id))
    return sorted(resolved, key=lambda r: r.disk_id)


def refresh(
    state: list[ResolvedAttachment],
    actual: list[Attachment],
) -> list[ResolvedAttachment]:
    """
    Re-read stored state against the engine.

    Stored entries take the live id and interface of the attachment with the
    same disk; entries with no live attachment are dropped; live attachments
    missing from state are appended.
    """
    live_by_disk: dict[str, Attachment] = {}
    for attachment in actual:
        live_by_disk.setdefault(attachment.disk_id, attachment)

    refreshed: list[ResolvedAttachment] = []
    seen: set[str] = set()
    for entry in state:
        live = live_by_disk.get(entry.disk_id)
        if live is None or entry.disk_id in seen:
            continue
        seen.add(entry.disk_id)
        refreshed.append(ResolvedAttachment(live.disk_id, live.interface, live.id))

    for disk_id, live in live_by_disk.items():
        if disk_id not in seen:
            refreshed.append(ResolvedAttachment(live.disk_id, live.interface, live.id))

    return refreshed
