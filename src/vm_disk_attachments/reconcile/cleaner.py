"""Removal of attachments that are not in the desired set."""
import logging
from typing import Optional

from ..stores.base import Attachment, AttachmentStore, NotFoundFailure, RemoteFailure
from ..utils.audit_log import ChangeTracker
from ..utils.connection import RetryStrategy
from .schema import OperationFailure

logger = logging.getLogger(__name__)


class UnmanagedCleaner:
    """Detach, or delete the disk behind, an unmanaged attachment.

    Detaching can be undone; deleting the disk cannot, so destructive mode
    must be asked for explicitly.
    """

    def __init__(self, store: AttachmentStore, tracker: Optional[ChangeTracker] = None):
        self.store = store
        self.tracker = tracker

    async def clean(
        self,
        vm_id: str,
        attachment: Attachment,
        destructive: bool,
        retry: RetryStrategy,
    ) -> Optional[OperationFailure]:
        """
        Eliminate one unmanaged attachment.

        Args:
            vm_id: VM the attachment belongs to
            attachment: Actual attachment whose disk is not declared
            destructive: Delete the disk instead of detaching it
            retry: Retry policy for the remote calls

        Returns:
            None on success, otherwise the failed operation
        """
        if destructive:
            return await self._destroy(attachment, retry)
        return await self._detach(vm_id, attachment, retry)

    async def _detach(
        self, vm_id: str, attachment: Attachment, retry: RetryStrategy
    ) -> Optional[OperationFailure]:
        logger.info(f"Detaching unmanaged disk {attachment.disk_id} ({attachment.id})")
        params = {"attachment_id": attachment.id, "disk_id": attachment.disk_id}
        try:
            await self.store.remove_attachment(vm_id, attachment.id, retry)
        except NotFoundFailure:
            logger.info(f"Attachment {attachment.id} already gone")
        except RemoteFailure as e:
            logger.error(f"Failed to detach unmanaged attachment {attachment.id}: {e}")
            self._audit("remove_attachment", params, success=False, error=str(e))
            return OperationFailure(
                operation="remove_attachment",
                cause=e,
                disk_id=attachment.disk_id,
                attachment_id=attachment.id,
            )
        self._audit("remove_attachment", params, success=True)
        return None

    async def _destroy(
        self, attachment: Attachment, retry: RetryStrategy
    ) -> Optional[OperationFailure]:
        logger.warning(
            f"Deleting unmanaged disk {attachment.disk_id} (attachment {attachment.id})"
        )
        try:
            disk = await self.store.resolve_disk(attachment, retry)
        except RemoteFailure as e:
            logger.error(f"Failed to resolve disk for attachment {attachment.id}: {e}")
            return OperationFailure(
                operation="resolve_disk",
                cause=e,
                disk_id=attachment.disk_id,
                attachment_id=attachment.id,
            )

        params = {"disk_id": disk.id, "attachment_id": attachment.id, "alias": disk.alias}
        try:
            await self.store.delete_disk(disk, retry)
        except NotFoundFailure:
            logger.info(f"Disk {disk.id} already gone")
        except RemoteFailure as e:
            logger.error(f"Failed to delete disk {disk.id}: {e}")
            self._audit("delete_disk", params, success=False, error=str(e))
            return OperationFailure(
                operation="delete_disk",
                cause=e,
                disk_id=disk.id,
                attachment_id=attachment.id,
            )
        self._audit("delete_disk", params, success=True)
        return None

    def _audit(self, operation: str, params: dict, success: bool, error: Optional[str] = None) -> None:
        if self.tracker is not None:
            self.tracker.log_change(operation, params, success=success, error=error)
