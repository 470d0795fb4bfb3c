"""Main Reconcile Engine - orchestrates one reconciliation pass.

Provides a single entry point for:
1. Parsing and validating the desired set
2. Fetching the live attachments of the VM
3. Cleaning unmanaged attachments (optional)
4. Creating and re-creating attachments
5. Projecting the state to persist
"""
import asyncio
import logging
from typing import Any, Optional

from ..stores.base import (
    AttachmentStore,
    DiskInterface,
    NotFoundFailure,
    RemoteFailure,
)
from ..utils.audit_log import ChangeTracker
from ..utils.connection import RetryStrategy
from ..utils.logging_config import timed_section
from .cleaner import UnmanagedCleaner
from .diff import DiffEngine, summarize_diff
from .parser import ConfigParser
from .projector import project, refresh
from .schema import (
    AttachmentChange,
    ChangeType,
    CleanupAction,
    ConfigurationFailure,
    DesiredSet,
    DiffResult,
    OperationFailure,
    ReconcileRequest,
    ReconcileResult,
    ResolvedAttachment,
    ValidationResult,
)
from .validator import ConfigValidator

logger = logging.getLogger(__name__)


class ReconcileEngine:
    """
    Reconcile the disk attachments of a VM against a desired set.

    Usage:
        engine = ReconcileEngine(store)
        result = await engine.reconcile(vm_id, desired, RetryStrategy())
    """

    def __init__(
        self,
        store: AttachmentStore,
        concurrency: int = 1,
        require_uuids: bool = True,
        user: Optional[str] = None,
    ):
        """
        Initialize the Reconcile Engine.

        Args:
            store: Attachment store of the engine hosting the VM
            concurrency: Desired entries processed in parallel
            require_uuids: Enforce UUID syntax on identifiers
            user: User recorded in the audit log
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.concurrency = concurrency
        self.user = user
        self.parser = ConfigParser()
        self.validator = ConfigValidator(require_uuids=require_uuids)
        self.diff_engine = DiffEngine()

    # --- Entry points ---

    async def reconcile(
        self,
        vm_id: str,
        desired: DesiredSet,
        retry: RetryStrategy,
        remove_unmanaged: bool = False,
        destructive: bool = False,
        dry_run: bool = False,
    ) -> ReconcileResult:
        """
        Run one reconciliation pass for a VM.

        Args:
            vm_id: VM whose attachments are reconciled
            desired: Declared disk_id -> interface mapping
            retry: Retry policy for every remote call of the pass
            remove_unmanaged: Eliminate attachments of undeclared disks
            destructive: Delete undeclared disks instead of detaching them
            dry_run: Plan only, issue no mutation

        Returns:
            ReconcileResult with resolved state and per-entry failures

        Raises:
            ConfigurationFailure: Invalid input, before any remote call
            RemoteFailure: The live attachments could not be fetched
        """
        request = ReconcileRequest(
            vm_id=vm_id,
            desired=desired,
            remove_unmanaged=remove_unmanaged,
            destructive=destructive,
        )
        return await self.run(request, retry, dry_run=dry_run)

    async def apply_config(
        self,
        config: dict[str, Any],
        retry: RetryStrategy,
        dry_run: bool = False,
    ) -> ReconcileResult:
        """Parse a desired-state document and reconcile it."""
        logger.info("Parsing desired attachment configuration")
        request = self.parser.parse(config)
        return await self.run(request, retry, dry_run=dry_run)

    async def preview(self, config: dict[str, Any], retry: RetryStrategy) -> str:
        """
        Preview changes without applying.

        Returns human-readable diff summary.
        """
        request = self.parser.parse(config)
        validation = self.validate(request)

        diff = await self.plan(request, retry)
        summary = summarize_diff(diff, request.vm_id)

        if validation.warnings:
            summary += "\n\nWarnings:\n" + "\n".join(
                f"  - {w}" for w in validation.warnings
            )
        return summary

    def validate(self, request: ReconcileRequest) -> ValidationResult:
        """Validate a request, raising ConfigurationFailure on errors."""
        validation = self.validator.validate(request)
        if not validation.valid:
            raise ConfigurationFailure(validation.errors)
        for warning in validation.warnings:
            logger.warning(warning)
        return validation

    async def plan(self, request: ReconcileRequest, retry: RetryStrategy) -> DiffResult:
        """Fetch the live attachments and calculate the diff."""
        async with timed_section("fetch", vm_id=request.vm_id):
            actual = await self.store.list_attachments(request.vm_id, retry)
        logger.debug(f"VM {request.vm_id} has {len(actual)} attachment(s)")
        return self.diff_engine.calculate(
            actual,
            request.desired,
            remove_unmanaged=request.remove_unmanaged,
            destructive=request.destructive,
        )

    # --- The pass ---

    async def run(
        self,
        request: ReconcileRequest,
        retry: RetryStrategy,
        dry_run: bool = False,
    ) -> ReconcileResult:
        """Run a pass for an already parsed request."""
        logger.info(
            f"{'DRY RUN: ' if dry_run else ''}Reconciling {len(request.desired)} "
            f"attachment(s) on VM {request.vm_id}"
        )
        self.validate(request)

        # Fetch failures abort the pass before any mutation
        diff = await self.plan(request, retry)
        result = ReconcileResult(vm_id=request.vm_id, dry_run=dry_run)

        if dry_run:
            return self._dry_run(request, diff, result)

        if diff.no_change:
            logger.info(f"No changes needed on VM {request.vm_id}")

        tracker = ChangeTracker(request.vm_id, user=self.user)

        # Cleanup completes before any create so freed disks can be reused
        if diff.cleanups:
            async with timed_section("cleanup", vm_id=request.vm_id, entries=len(diff.cleanups)):
                await self._clean(request.vm_id, diff, retry, tracker, result)

        resolved_ids: dict[str, Optional[str]] = {}
        async with timed_section("apply", vm_id=request.vm_id, entries=len(diff.changes)):
            semaphore = asyncio.Semaphore(self.concurrency)
            outcomes = await asyncio.gather(*(
                self._apply_change(request.vm_id, change, retry, tracker, semaphore)
                for change in diff.changes
            ))

        for change, (attachment_id, failure, description) in zip(diff.changes, outcomes):
            resolved_ids[change.disk_id] = attachment_id
            if failure is not None:
                result.failures.append(failure)
            if description:
                result.changes_made.append(description)

        result.resolved = project(request.desired, resolved_ids)

        if result.failures:
            logger.warning(
                f"Reconciliation of VM {request.vm_id} finished with "
                f"{len(result.failures)} failure(s)"
            )
        else:
            logger.info(f"Reconciliation of VM {request.vm_id} complete")
        return result

    async def _clean(
        self,
        vm_id: str,
        diff: DiffResult,
        retry: RetryStrategy,
        tracker: ChangeTracker,
        result: ReconcileResult,
    ) -> None:
        cleaner = UnmanagedCleaner(self.store, tracker)
        for cleanup in diff.cleanups:
            destructive = cleanup.action == CleanupAction.DESTROY
            failure = await cleaner.clean(vm_id, cleanup.attachment, destructive, retry)
            if failure is not None:
                result.failures.append(failure)
            elif destructive:
                result.changes_made.append(f"Deleted unmanaged disk {cleanup.attachment.disk_id}")
            else:
                result.changes_made.append(f"Detached unmanaged disk {cleanup.attachment.disk_id}")

    async def _apply_change(
        self,
        vm_id: str,
        change: AttachmentChange,
        retry: RetryStrategy,
        tracker: ChangeTracker,
        semaphore: asyncio.Semaphore,
    ) -> tuple[Optional[str], Optional[OperationFailure], Optional[str]]:
        """
        Apply the decision for one desired entry.

        Returns:
            Tuple of (resolved attachment id, failure, change description)
        """
        existing = change.existing
        if existing is not None and change.change_type == ChangeType.NO_CHANGE:
            return existing.id, None, None

        async with semaphore:
            if existing is not None and change.change_type == ChangeType.RECREATE:
                failure = await self._detach(vm_id, existing.id, change.disk_id, retry, tracker)
                if failure is not None:
                    # The mismatched attachment stays; the next pass retries
                    return None, failure, None

            try:
                attachment = await self.store.create_attachment(
                    vm_id, change.disk_id, change.desired_interface, retry
                )
            except RemoteFailure as e:
                logger.error(f"Failed to attach disk {change.disk_id} to VM {vm_id}: {e}")
                tracker.log_change(
                    "create_attachment",
                    {"disk_id": change.disk_id, "disk_interface": change.desired_interface.value},
                    success=False,
                    error=str(e),
                )
                return None, OperationFailure("create_attachment", e, disk_id=change.disk_id), None

        tracker.log_change(
            "create_attachment",
            {"disk_id": change.disk_id, "disk_interface": change.desired_interface.value},
            success=True,
            result=attachment.to_dict(),
        )

        if existing is not None and change.change_type == ChangeType.RECREATE:
            description = (
                f"Re-attached disk {change.disk_id}: {existing.interface.value} -> "
                f"{change.desired_interface.value}"
            )
        else:
            description = f"Attached disk {change.disk_id} as {change.desired_interface.value}"
        logger.info(description)
        return attachment.id, None, description

    def _dry_run(
        self,
        request: ReconcileRequest,
        diff: DiffResult,
        result: ReconcileResult,
    ) -> ReconcileResult:
        """Handle dry-run mode - preview without executing."""
        tracker = ChangeTracker(request.vm_id, user=self.user)
        for cleanup in diff.cleanups:
            att = cleanup.attachment
            if cleanup.action == CleanupAction.DESTROY:
                result.changes_made.append(f"[PREVIEW] Delete unmanaged disk {att.disk_id}")
                tracker.log_change("delete_disk", {"disk_id": att.disk_id}, success=True, dry_run=True)
            else:
                result.changes_made.append(f"[PREVIEW] Detach unmanaged disk {att.disk_id}")
                tracker.log_change(
                    "remove_attachment", {"attachment_id": att.id}, success=True, dry_run=True
                )

        resolved_ids: dict[str, Optional[str]] = {}
        for change in diff.changes:
            if change.existing is not None and change.change_type == ChangeType.NO_CHANGE:
                resolved_ids[change.disk_id] = change.existing.id
                continue
            verb = "Attach" if change.change_type == ChangeType.CREATE else "Re-attach"
            result.changes_made.append(
                f"[PREVIEW] {verb} disk {change.disk_id} as {change.desired_interface.value}"
            )
            tracker.log_change(
                "create_attachment",
                {"disk_id": change.disk_id, "disk_interface": change.desired_interface.value},
                success=True,
                dry_run=True,
            )

        result.resolved = project(request.desired, resolved_ids)
        return result

    # --- Whole-resource operations ---

    async def refresh(
        self,
        vm_id: str,
        state: list[ResolvedAttachment],
        retry: RetryStrategy,
    ) -> list[ResolvedAttachment]:
        """Re-read stored state against the live attachments of the VM."""
        actual = await self.store.list_attachments(vm_id, retry)
        return refresh(state, actual)

    async def adopt(self, vm_id: str, retry: RetryStrategy) -> list[ResolvedAttachment]:
        """Take every live attachment of a VM as its state."""
        return await self.refresh(vm_id, [], retry)

    async def teardown(
        self,
        vm_id: str,
        state: list[ResolvedAttachment],
        retry: RetryStrategy,
    ) -> ReconcileResult:
        """
        Remove every attachment recorded in state.

        Attachments already gone count as removed. The resolved list of the
        result holds the entries that could not be removed.
        """
        result = ReconcileResult(vm_id=vm_id)
        tracker = ChangeTracker(vm_id, user=self.user)

        for entry in state:
            failure = await self._detach(vm_id, entry.id, entry.disk_id, retry, tracker)
            if failure is not None:
                result.failures.append(failure)
                result.resolved.append(entry)
            else:
                result.changes_made.append(f"Detached disk {entry.disk_id}")

        return result

    # --- Single attachments ---

    async def attach(
        self,
        vm_id: str,
        disk_id: str,
        interface: DiskInterface,
        retry: RetryStrategy,
    ) -> ResolvedAttachment:
        """Create one attachment. Raises RemoteFailure on failure."""
        tracker = ChangeTracker(vm_id, user=self.user)
        params = {"disk_id": disk_id, "disk_interface": interface.value}
        try:
            attachment = await self.store.create_attachment(vm_id, disk_id, interface, retry)
        except RemoteFailure as e:
            tracker.log_change("create_attachment", params, success=False, error=str(e))
            raise
        tracker.log_change("create_attachment", params, success=True, result=attachment.to_dict())
        return ResolvedAttachment(attachment.disk_id, attachment.interface, attachment.id)

    async def read(
        self,
        vm_id: str,
        attachment_id: str,
        retry: RetryStrategy,
    ) -> Optional[ResolvedAttachment]:
        """Read one attachment, None if it no longer exists."""
        try:
            attachment = await self.store.get_attachment(vm_id, attachment_id, retry)
        except NotFoundFailure:
            return None
        return ResolvedAttachment(attachment.disk_id, attachment.interface, attachment.id)

    async def detach(self, vm_id: str, attachment_id: str, retry: RetryStrategy) -> None:
        """Remove one attachment. Already-removed is success."""
        tracker = ChangeTracker(vm_id, user=self.user)
        failure = await self._detach(vm_id, attachment_id, None, retry, tracker)
        if failure is not None:
            raise failure.cause

    async def _detach(
        self,
        vm_id: str,
        attachment_id: str,
        disk_id: Optional[str],
        retry: RetryStrategy,
        tracker: ChangeTracker,
    ) -> Optional[OperationFailure]:
        params = {"attachment_id": attachment_id, "disk_id": disk_id}
        try:
            await self.store.remove_attachment(vm_id, attachment_id, retry)
        except NotFoundFailure:
            logger.info(f"Attachment {attachment_id} already removed from VM {vm_id}")
            return None
        except RemoteFailure as e:
            logger.error(f"Failed to remove attachment {attachment_id}: {e}")
            tracker.log_change("remove_attachment", params, success=False, error=str(e))
            return OperationFailure(
                "remove_attachment", e, disk_id=disk_id, attachment_id=attachment_id
            )
        tracker.log_change("remove_attachment", params, success=True)
        return None
