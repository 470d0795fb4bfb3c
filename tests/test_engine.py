"""Tests for the Reconcile Engine against the in-memory store."""
import asyncio

import pytest

from vm_disk_attachments.reconcile import (
    ChangeType,
    ConfigurationFailure,
    DesiredSet,
    PartialFailure,
    ReconcileEngine,
    ResolvedAttachment,
)
from vm_disk_attachments.stores import (
    DiskInterface,
    MemoryStore,
    NotFoundFailure,
    RemoteFailure,
)
from vm_disk_attachments.utils.connection import RetryStrategy

VM = "vm-1"
NO_RETRY = RetryStrategy.none()


def make_store(*disks: str, shared: bool = False) -> MemoryStore:
    store = MemoryStore()
    store.add_vm(VM)
    for disk_id in disks:
        store.add_disk(disk_id, shared=shared)
    return store


def make_engine(store: MemoryStore, **kwargs) -> ReconcileEngine:
    kwargs.setdefault("require_uuids", False)
    return ReconcileEngine(store, **kwargs)


class VanishingStore(MemoryStore):
    """Attachments disappear right after they are listed."""

    async def _list_attachments(self, vm_id: str):
        listed = await super()._list_attachments(vm_id)
        self.attachments[vm_id].clear()
        return listed


class SlowStore(MemoryStore):
    """Creating an attachment of one of ``slow_disks`` hangs."""

    def __init__(self, slow_disks: set[str]):
        super().__init__()
        self.slow_disks = slow_disks

    async def _create_attachment(self, vm_id, disk_id, interface):
        if disk_id in self.slow_disks:
            await asyncio.sleep(1)
        return await super()._create_attachment(vm_id, disk_id, interface)


class TrackingStore(MemoryStore):
    """Yields inside every mutation and tracks how many overlap."""

    def __init__(self):
        super().__init__()
        self.in_flight = 0
        self.max_in_flight = 0

    async def _tracked(self, hook, *args):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            return await hook(*args)
        finally:
            self.in_flight -= 1

    async def _create_attachment(self, vm_id, disk_id, interface):
        return await self._tracked(super()._create_attachment, vm_id, disk_id, interface)

    async def _remove_attachment(self, vm_id, attachment_id):
        return await self._tracked(super()._remove_attachment, vm_id, attachment_id)


def desired(**entries: str) -> DesiredSet:
    return DesiredSet.from_mapping(entries)


class TestReconcile:
    """Tests for a single reconciliation pass."""

    @pytest.mark.asyncio
    async def test_creates_missing_attachments(self):
        """Every declared disk without an attachment gets one."""
        store = make_store("d2", "d1")
        engine = make_engine(store)

        result = await engine.reconcile(VM, desired(d2="virtio", d1="ide"), NO_RETRY)

        assert result.success
        assert [r.disk_id for r in result.resolved] == ["d1", "d2"]
        assert result.resolved[0].interface == DiskInterface.IDE
        assert result.resolved[1].interface == DiskInterface.VIRTIO
        live = {a.id for a in store.attachments[VM].values()}
        assert {r.id for r in result.resolved} == live
        assert len(store.calls_for("create_attachment")) == 2

    @pytest.mark.asyncio
    async def test_second_pass_is_noop(self):
        """Running the same pass twice issues no mutation the second time."""
        store = make_store("d1", "d2")
        engine = make_engine(store)
        wanted = desired(d1="virtio_scsi", d2="sata")

        first = await engine.reconcile(VM, wanted, NO_RETRY)
        store.calls.clear()
        second = await engine.reconcile(VM, wanted, NO_RETRY)

        assert store.mutating_calls == []
        assert second.resolved == first.resolved
        assert second.changes_made == []

    @pytest.mark.asyncio
    async def test_interface_change_recreates(self):
        """A disk attached through another interface is removed and re-attached."""
        store = make_store("d1")
        old = store.seed_attachment(VM, "d1", "ide")
        engine = make_engine(store)

        result = await engine.reconcile(VM, desired(d1="virtio"), NO_RETRY)

        assert result.success
        assert [op for op, _ in store.mutating_calls] == [
            "remove_attachment", "create_attachment",
        ]
        assert result.resolved[0].interface == DiskInterface.VIRTIO
        assert result.resolved[0].id != old.id
        assert old.id not in store.attachments[VM]
        assert result.changes_made == ["Re-attached disk d1: ide -> virtio"]

    @pytest.mark.asyncio
    async def test_matching_attachment_keeps_its_id(self):
        """An attachment already as declared is reused without any call."""
        store = make_store("d1")
        existing = store.seed_attachment(VM, "d1", "virtio")
        engine = make_engine(store)

        result = await engine.reconcile(VM, desired(d1="virtio"), NO_RETRY)

        assert result.resolved == [ResolvedAttachment("d1", DiskInterface.VIRTIO, existing.id)]
        assert store.mutating_calls == []

    @pytest.mark.asyncio
    async def test_unmanaged_left_alone_by_default(self):
        """Attachments of undeclared disks are untouched without remove_unmanaged."""
        store = make_store("d1")
        stray = store.seed_attachment(VM, "other", "ide")
        engine = make_engine(store)

        result = await engine.reconcile(VM, desired(d1="virtio"), NO_RETRY)

        assert stray.id in store.attachments[VM]
        assert "remove_attachment" not in [op for op, _ in store.mutating_calls]
        assert [r.disk_id for r in result.resolved] == ["d1"]

    @pytest.mark.asyncio
    async def test_remove_unmanaged_detaches(self):
        """remove_unmanaged detaches undeclared disks but keeps the disks."""
        store = make_store("d1")
        stray = store.seed_attachment(VM, "other", "ide")
        engine = make_engine(store)

        result = await engine.reconcile(
            VM, desired(d1="virtio"), NO_RETRY, remove_unmanaged=True
        )

        assert result.success
        assert stray.id not in store.attachments[VM]
        assert "other" in store.disks
        assert store.calls_for("delete_disk") == []
        assert "Detached unmanaged disk other" in result.changes_made

    @pytest.mark.asyncio
    async def test_destructive_deletes_disk(self):
        """destructive cleanup resolves and deletes the undeclared disk."""
        store = make_store("d1")
        store.seed_attachment(VM, "other", "ide")
        engine = make_engine(store)

        result = await engine.reconcile(
            VM, desired(d1="virtio"), NO_RETRY, remove_unmanaged=True, destructive=True
        )

        assert result.success
        assert "other" not in store.disks
        assert store.calls_for("delete_disk") == [("other",)]
        assert store.calls_for("remove_attachment") == []

    @pytest.mark.asyncio
    async def test_destructive_ignored_without_remove_unmanaged(self):
        """destructive alone never touches unmanaged disks."""
        store = make_store("d1")
        store.seed_attachment(VM, "other", "ide")
        engine = make_engine(store)

        await engine.reconcile(VM, desired(d1="virtio"), NO_RETRY, destructive=True)

        assert "other" in store.disks
        assert store.calls_for("delete_disk") == []

    @pytest.mark.asyncio
    async def test_cleanup_runs_before_creates(self):
        """All cleanup calls are issued before the first create."""
        store = make_store("d1", "d2")
        store.seed_attachment(VM, "x1", "ide")
        store.seed_attachment(VM, "x2", "ide")
        engine = make_engine(store, concurrency=4)

        await engine.reconcile(
            VM, desired(d1="virtio", d2="virtio"), NO_RETRY, remove_unmanaged=True
        )

        ops = [op for op, _ in store.mutating_calls]
        assert ops == [
            "remove_attachment", "remove_attachment",
            "create_attachment", "create_attachment",
        ]

    @pytest.mark.asyncio
    async def test_empty_desired_with_remove_unmanaged(self):
        """An empty desired set with remove_unmanaged detaches everything."""
        store = make_store()
        store.seed_attachment(VM, "x1", "ide")
        store.seed_attachment(VM, "x2", "sata")
        engine = make_engine(store)

        result = await engine.reconcile(VM, DesiredSet(), NO_RETRY, remove_unmanaged=True)

        assert result.resolved == []
        assert len(store.attachments[VM]) == 0


class TestFailures:
    """Tests for failure isolation and fatal errors."""

    @pytest.mark.asyncio
    async def test_create_failure_is_isolated(self):
        """One failed create does not stop the other entries."""
        store = make_store("d1", "d2")
        store.fail_next("create_attachment", RemoteFailure("create_attachment", "quota"))
        engine = make_engine(store)

        result = await engine.reconcile(VM, desired(d1="virtio", d2="virtio"), NO_RETRY)

        assert result.partial
        assert len(result.failures) == 1
        assert result.failures[0].operation == "create_attachment"
        assert result.failures[0].disk_id == "d1"
        assert [r.disk_id for r in result.resolved] == ["d2"]

    @pytest.mark.asyncio
    async def test_raise_for_failures(self):
        """raise_for_failures turns a partial result into PartialFailure."""
        store = make_store("d1")
        store.fail_next("create_attachment", RemoteFailure("create_attachment", "quota"))
        engine = make_engine(store)

        result = await engine.reconcile(VM, desired(d1="virtio"), NO_RETRY)

        with pytest.raises(PartialFailure) as exc:
            result.raise_for_failures()
        assert exc.value.result is result
        assert "quota" in str(exc.value)

    @pytest.mark.asyncio
    async def test_recreate_skips_create_when_remove_fails(self):
        """A failed remove during recreate leaves the old attachment in place."""
        store = make_store("d1")
        old = store.seed_attachment(VM, "d1", "ide")
        store.fail_next("remove_attachment", RemoteFailure("remove_attachment", "locked"))
        engine = make_engine(store)

        result = await engine.reconcile(VM, desired(d1="virtio"), NO_RETRY)

        assert [f.operation for f in result.failures] == ["remove_attachment"]
        assert store.calls_for("create_attachment") == []
        assert old.id in store.attachments[VM]
        assert result.resolved == []

    @pytest.mark.asyncio
    async def test_recreate_proceeds_when_old_attachment_vanished(self):
        """A recreate whose old attachment is already gone still creates the new one."""
        store = VanishingStore()
        store.add_vm(VM)
        store.seed_attachment(VM, "d1", "ide")
        engine = make_engine(store)

        result = await engine.reconcile(VM, desired(d1="virtio"), NO_RETRY)

        assert result.success
        assert len(store.calls_for("remove_attachment")) == 1
        assert [(r.disk_id, r.interface) for r in result.resolved] == [
            ("d1", DiskInterface.VIRTIO)
        ]

    @pytest.mark.asyncio
    async def test_timeout_on_one_entry_is_isolated(self):
        """An entry that times out is a failure; the other entries still resolve."""
        store = SlowStore(slow_disks={"d1"})
        store.add_vm(VM)
        store.add_disk("d1")
        store.add_disk("d2")
        engine = make_engine(store)
        retry = RetryStrategy(max_attempts=1, min_wait=0, max_wait=0, timeout=0.05)

        result = await engine.reconcile(VM, desired(d1="virtio", d2="virtio"), retry)

        assert [r.disk_id for r in result.resolved] == ["d2"]
        assert [(f.disk_id, f.operation) for f in result.failures] == [
            ("d1", "create_attachment")
        ]
        assert result.failures[0].cause.transient

    @pytest.mark.asyncio
    async def test_cleanup_not_found_is_success(self):
        """An unmanaged attachment that vanished counts as removed."""
        store = make_store()
        store.seed_attachment(VM, "x1", "ide")
        store.fail_next("remove_attachment", NotFoundFailure("remove_attachment", "gone"))
        engine = make_engine(store)

        result = await engine.reconcile(VM, DesiredSet(), NO_RETRY, remove_unmanaged=True)

        assert result.success

    @pytest.mark.asyncio
    async def test_cleanup_failure_does_not_abort(self):
        """A failed cleanup is reported and creates still run."""
        store = make_store("d1")
        store.seed_attachment(VM, "x1", "ide")
        store.fail_next("remove_attachment", RemoteFailure("remove_attachment", "busy"))
        engine = make_engine(store)

        result = await engine.reconcile(
            VM, desired(d1="virtio"), NO_RETRY, remove_unmanaged=True
        )

        assert [f.operation for f in result.failures] == ["remove_attachment"]
        assert [r.disk_id for r in result.resolved] == ["d1"]

    @pytest.mark.asyncio
    async def test_resolve_failure_skips_delete(self):
        """If the disk behind an attachment cannot be resolved nothing is deleted."""
        store = make_store()
        store.seed_attachment(VM, "x1", "ide")
        store.fail_next("resolve_disk", RemoteFailure("resolve_disk", "timeout"))
        engine = make_engine(store)

        result = await engine.reconcile(
            VM, DesiredSet(), NO_RETRY, remove_unmanaged=True, destructive=True
        )

        assert [f.operation for f in result.failures] == ["resolve_disk"]
        assert store.calls_for("delete_disk") == []
        assert "x1" in store.disks

    @pytest.mark.asyncio
    async def test_fetch_failure_is_fatal(self):
        """A failed listing aborts the pass before any mutation."""
        store = make_store("d1")
        store.fail_next("list_attachments", RemoteFailure("list_attachments", "down"))
        engine = make_engine(store)

        with pytest.raises(RemoteFailure):
            await engine.reconcile(VM, desired(d1="virtio"), NO_RETRY)

        assert store.mutating_calls == []

    @pytest.mark.asyncio
    async def test_unknown_vm_is_fatal(self):
        """Reconciling a VM the engine does not know raises NotFoundFailure."""
        store = make_store("d1")
        engine = make_engine(store)

        with pytest.raises(NotFoundFailure):
            await engine.reconcile("missing-vm", desired(d1="virtio"), NO_RETRY)

    @pytest.mark.asyncio
    async def test_configuration_failure_before_remote_calls(self):
        """Invalid identifiers are rejected without touching the engine."""
        store = make_store("d1")
        engine = ReconcileEngine(store)

        with pytest.raises(ConfigurationFailure):
            await engine.reconcile(VM, desired(d1="virtio"), NO_RETRY)

        assert store.calls == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self):
        """Transient failures are retried under the caller's strategy."""
        store = make_store("d1")
        store.fail_next(
            "create_attachment",
            RemoteFailure("create_attachment", "503", transient=True),
        )
        engine = make_engine(store)
        retry = RetryStrategy(max_attempts=2, min_wait=0, max_wait=0)

        result = await engine.reconcile(VM, desired(d1="virtio"), retry)

        assert result.success
        assert len(store.calls_for("create_attachment")) == 2

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self):
        """Non-transient failures are attempted once."""
        store = make_store("d1")
        store.fail_next("create_attachment", RemoteFailure("create_attachment", "bad"))
        engine = make_engine(store)
        retry = RetryStrategy(max_attempts=3, min_wait=0, max_wait=0)

        result = await engine.reconcile(VM, desired(d1="virtio"), retry)

        assert result.partial
        assert len(store.calls_for("create_attachment")) == 1


class TestDryRunAndConcurrency:
    """Tests for dry runs and parallel entries."""

    @pytest.mark.asyncio
    async def test_dry_run_issues_no_mutation(self):
        """A dry run only lists attachments."""
        store = make_store("d1", "d2")
        store.seed_attachment(VM, "d2", "ide")
        store.seed_attachment(VM, "x1", "ide")
        engine = make_engine(store)

        result = await engine.reconcile(
            VM, desired(d1="virtio", d2="virtio"), NO_RETRY,
            remove_unmanaged=True, dry_run=True,
        )

        assert result.dry_run
        assert store.mutating_calls == []
        assert "[PREVIEW] Detach unmanaged disk x1" in result.changes_made
        assert "[PREVIEW] Attach disk d1 as virtio" in result.changes_made
        assert "[PREVIEW] Re-attach disk d2 as virtio" in result.changes_made
        assert result.resolved == []

    @pytest.mark.asyncio
    async def test_parallel_entries(self):
        """Entries are applied concurrently up to the configured limit."""
        disks = [f"d{i}" for i in range(6)]
        store = make_store(*disks)
        engine = make_engine(store, concurrency=3)

        result = await engine.reconcile(
            VM, DesiredSet.from_mapping({d: "virtio" for d in disks}), NO_RETRY
        )

        assert result.success
        assert [r.disk_id for r in result.resolved] == sorted(disks)

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        """No more than `concurrency` mutations are in flight, and each
        recreate removes the old attachment before creating the new one."""
        store = TrackingStore()
        store.add_vm(VM)
        old_ids = {}
        for i in range(6):
            store.add_disk(f"d{i}")
            if i % 2:
                old_ids[store.seed_attachment(VM, f"d{i}", "ide").id] = f"d{i}"
        engine = make_engine(store, concurrency=2)

        result = await engine.reconcile(
            VM, DesiredSet.from_mapping({f"d{i}": "virtio" for i in range(6)}), NO_RETRY
        )

        assert result.success
        assert store.max_in_flight == 2
        per_disk: dict[str, list[str]] = {}
        for op, args in store.mutating_calls:
            disk_id = old_ids[args[1]] if op == "remove_attachment" else args[1]
            per_disk.setdefault(disk_id, []).append(op)
        for disk_id in old_ids.values():
            assert per_disk[disk_id] == ["remove_attachment", "create_attachment"]

    def test_concurrency_must_be_positive(self):
        """A concurrency below one is rejected."""
        with pytest.raises(ValueError):
            ReconcileEngine(MemoryStore(), concurrency=0)


class TestConfigEntryPoints:
    """Tests for dict-based entry points."""

    @pytest.mark.asyncio
    async def test_apply_config(self):
        """apply_config parses the document and reconciles it."""
        store = make_store("d1")
        engine = make_engine(store)

        result = await engine.apply_config(
            {"vm_id": VM, "attachments": [{"disk_id": "d1", "disk_interface": "sata"}]},
            NO_RETRY,
        )

        assert result.resolved[0].interface == DiskInterface.SATA

    @pytest.mark.asyncio
    async def test_preview_summarizes_plan(self):
        """preview returns the plan as text without changing anything."""
        store = make_store("d1")
        engine = make_engine(store)

        summary = await engine.preview(
            {"vm_id": VM, "attachments": {"d1": "virtio"}}, NO_RETRY
        )

        assert "[+] Attach disk d1" in summary
        assert store.mutating_calls == []

    @pytest.mark.asyncio
    async def test_plan_reports_change_types(self):
        """plan classifies each desired entry."""
        store = make_store("d1", "d2", "d3")
        store.seed_attachment(VM, "d2", "virtio")
        store.seed_attachment(VM, "d3", "ide")
        engine = make_engine(store)
        request = engine.parser.parse({
            "vm_id": VM,
            "attachments": {"d1": "virtio", "d2": "virtio", "d3": "virtio"},
        })

        diff = await engine.plan(request, NO_RETRY)

        assert [c.change_type for c in diff.changes] == [
            ChangeType.CREATE, ChangeType.NO_CHANGE, ChangeType.RECREATE,
        ]


class TestWholeResource:
    """Tests for refresh, adopt and teardown."""

    @pytest.mark.asyncio
    async def test_teardown_removes_recorded_attachments(self):
        """teardown detaches everything in state."""
        store = make_store("d1", "d2")
        engine = make_engine(store)
        applied = await engine.reconcile(VM, desired(d1="virtio", d2="ide"), NO_RETRY)

        result = await engine.teardown(VM, applied.resolved, NO_RETRY)

        assert result.success
        assert result.resolved == []
        assert len(store.attachments[VM]) == 0

    @pytest.mark.asyncio
    async def test_teardown_missing_attachment_is_success(self):
        """Attachments already gone count as removed."""
        store = make_store("d1")
        engine = make_engine(store)
        state = [ResolvedAttachment("d1", DiskInterface.VIRTIO, "no-such-attachment")]

        result = await engine.teardown(VM, state, NO_RETRY)

        assert result.success

    @pytest.mark.asyncio
    async def test_teardown_keeps_failed_entries(self):
        """Entries that could not be removed stay in the result."""
        store = make_store("d1")
        engine = make_engine(store)
        applied = await engine.reconcile(VM, desired(d1="virtio"), NO_RETRY)
        store.fail_next("remove_attachment", RemoteFailure("remove_attachment", "locked"))

        result = await engine.teardown(VM, applied.resolved, NO_RETRY)

        assert result.resolved == applied.resolved
        assert result.partial

    @pytest.mark.asyncio
    async def test_refresh_follows_live_state(self):
        """refresh drops vanished entries and picks up live changes."""
        store = make_store("d1", "d2")
        engine = make_engine(store)
        applied = await engine.reconcile(VM, desired(d1="virtio", d2="virtio"), NO_RETRY)
        d1 = next(a for a in store.attachments[VM].values() if a.disk_id == "d1")
        del store.attachments[VM][d1.id]
        extra = store.seed_attachment(VM, "d3", "sata")

        refreshed = await engine.refresh(VM, applied.resolved, NO_RETRY)

        assert [r.disk_id for r in refreshed] == ["d2", "d3"]
        assert refreshed[1].id == extra.id

    @pytest.mark.asyncio
    async def test_adopt_takes_live_attachments(self):
        """adopt records every live attachment."""
        store = make_store()
        a = store.seed_attachment(VM, "d1", "ide")
        engine = make_engine(store)

        adopted = await engine.adopt(VM, NO_RETRY)

        assert adopted == [ResolvedAttachment("d1", DiskInterface.IDE, a.id)]


class TestSingleAttachment:
    """Tests for attach, read and detach."""

    @pytest.mark.asyncio
    async def test_attach_read_detach(self):
        """A single attachment can be created, read and removed."""
        store = make_store("d1")
        engine = make_engine(store)

        created = await engine.attach(VM, "d1", DiskInterface.VIRTIO_SCSI, NO_RETRY)
        read = await engine.read(VM, created.id, NO_RETRY)
        await engine.detach(VM, created.id, NO_RETRY)

        assert read == created
        assert await engine.read(VM, created.id, NO_RETRY) is None

    @pytest.mark.asyncio
    async def test_attach_failure_raises(self):
        """attach raises the remote failure."""
        store = make_store()
        engine = make_engine(store)

        with pytest.raises(NotFoundFailure):
            await engine.attach(VM, "unknown-disk", DiskInterface.VIRTIO, NO_RETRY)

    @pytest.mark.asyncio
    async def test_detach_twice_is_fine(self):
        """Detaching an attachment that is already gone succeeds."""
        store = make_store("d1")
        engine = make_engine(store)
        created = await engine.attach(VM, "d1", DiskInterface.VIRTIO, NO_RETRY)

        await engine.detach(VM, created.id, NO_RETRY)
        await engine.detach(VM, created.id, NO_RETRY)

    @pytest.mark.asyncio
    async def test_detach_failure_raises(self):
        """Other remove failures propagate."""
        store = make_store("d1")
        engine = make_engine(store)
        created = await engine.attach(VM, "d1", DiskInterface.VIRTIO, NO_RETRY)
        store.fail_next("remove_attachment", RemoteFailure("remove_attachment", "locked"))

        with pytest.raises(RemoteFailure):
            await engine.detach(VM, created.id, NO_RETRY)
