"""Attachment stores for different virtualization engines."""
from dataclasses import fields

from .base import (
    AttachmentStore,
    Attachment,
    Disk,
    DiskInterface,
    DiskStatus,
    ImageFormat,
    NotFoundFailure,
    RemoteFailure,
    StoreConfig,
)
from .memory import MemoryStore
from .ovirt import OvirtStore

__all__ = [
    "AttachmentStore",
    "Attachment",
    "Disk",
    "DiskInterface",
    "DiskStatus",
    "ImageFormat",
    "NotFoundFailure",
    "RemoteFailure",
    "StoreConfig",
    "MemoryStore",
    "OvirtStore",
    "create_store",
]

# Store type registry
STORE_TYPES = {
    "memory": MemoryStore,
    "ovirt": OvirtStore,
}

_CONFIG_FIELDS = {f.name for f in fields(StoreConfig)}


def create_store(store_id: str, config: dict) -> AttachmentStore:
    """Factory function to create store instances.

    Memory engines accept ``vms`` and ``disks`` lists that are seeded into
    the store on creation.
    """
    config = dict(config)
    store_type = config.get("type", "").lower()
    if store_type not in STORE_TYPES:
        raise ValueError(f"Unknown engine type: {store_type}")

    seed_vms = config.pop("vms", []) if store_type == "memory" else []
    seed_disks = config.pop("disks", []) if store_type == "memory" else []

    unknown = sorted(set(config) - _CONFIG_FIELDS)
    if unknown:
        raise ValueError(f"Unknown option(s) for engine {store_id}: {', '.join(unknown)}")

    config["type"] = store_type
    config.setdefault("name", store_id)
    store = STORE_TYPES[store_type](store_id, StoreConfig(**config))

    if isinstance(store, MemoryStore):
        for vm_id in seed_vms:
            store.add_vm(vm_id)
        for disk in seed_disks:
            if isinstance(disk, dict):
                store.add_disk(disk["id"], shared=bool(disk.get("shared", False)))
            else:
                store.add_disk(disk)
    return store
