"""Base attachment store abstraction for virtualization engines."""
import asyncio
import os
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..utils.connection import RetryStrategy
from ..utils.logging_config import timed

logger = logging.getLogger(__name__)


class DiskInterface(str, Enum):
    """Bus a disk is attached through. Fixed once the attachment exists."""
    IDE = "ide"
    SATA = "sata"
    SPAPR_VSCSI = "spapr_vscsi"
    VIRTIO = "virtio"
    VIRTIO_SCSI = "virtio_scsi"

    @classmethod
    def parse(cls, value: Any) -> "DiskInterface":
        """Validate and convert a raw value.

        Raises:
            ValueError: If the value is not one of the supported interfaces
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"disk interface must be a string, got {type(value).__name__}")
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"invalid disk interface '{value}', must be one of: "
                f"{', '.join(i.value for i in cls)}"
            ) from None


class ImageFormat(str, Enum):
    """On-storage image format of a disk."""
    COW = "cow"
    RAW = "raw"

    @classmethod
    def parse(cls, value: Any) -> "ImageFormat":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"invalid image format '{value}', must be one of: "
                f"{', '.join(f.value for f in cls)}"
            ) from None


class DiskStatus(str, Enum):
    """Engine-reported disk status."""
    OK = "ok"
    LOCKED = "locked"
    ILLEGAL = "illegal"


# --- Remote failures ---

class RemoteFailure(Exception):
    """A store call failed: transport, auth, or engine-side rejection.

    Attributes:
        operation: The store operation attempted (e.g. "create_attachment")
        cause: The underlying exception, if any
        transient: Whether retrying the same call may succeed
    """

    def __init__(
        self,
        operation: str,
        message: str,
        cause: Optional[BaseException] = None,
        transient: bool = False,
    ):
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message
        self.cause = cause
        self.transient = transient


class NotFoundFailure(RemoteFailure):
    """The target of a store call does not exist."""


# --- Engine objects ---

@dataclass(frozen=True)
class Attachment:
    """One disk bound to one VM, as reported by the engine."""
    id: str
    disk_id: str
    interface: DiskInterface
    vm_id: str = ""
    bootable: bool = False
    active: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "disk_id": self.disk_id,
            "disk_interface": self.interface.value,
            "vm_id": self.vm_id,
        }


@dataclass
class Disk:
    """Normalized disk as reported by the engine."""
    id: str
    alias: str = ""
    format: ImageFormat = ImageFormat.COW
    size: int = 0
    shared: bool = False
    status: DiskStatus = DiskStatus.OK
    storage_domain_id: Optional[str] = None


@dataclass
class StoreConfig:
    """Connection settings for one virtualization engine."""
    type: str
    name: str = ""
    url: str = ""
    username: str = ""
    password: Optional[str] = None
    password_env: str = "OVIRT_PASSWORD"
    timeout: float = 30
    retries: int = 3
    retry_min_wait: float = 1
    retry_max_wait: float = 10
    # TLS
    tls_insecure: bool = False
    tls_system: bool = False
    tls_ca_files: list[str] = field(default_factory=list)
    tls_ca_dirs: list[str] = field(default_factory=list)
    tls_ca_bundle: Optional[str] = None
    extra_headers: dict[str, str] = field(default_factory=dict)

    def get_password(self) -> str:
        """Get password from config or environment variable."""
        if self.password:
            return self.password
        return os.environ.get(self.password_env, "")


class AttachmentStore(ABC):
    """Abstract base class for the attachment side of a virtualization engine.

    Public methods take the caller's RetryStrategy and run the matching
    ``_hook`` under it. Subclasses implement the hooks and never retry.
    Hooks raise RemoteFailure (or NotFoundFailure) on every failure.
    """

    def __init__(self, store_id: str, config: StoreConfig):
        self.store_id = store_id
        self.config = config
        self._connected = False

    @property
    def name(self) -> str:
        return self.config.name or self.store_id

    @property
    def is_connected(self) -> bool:
        return self._connected

    # Connection management
    async def connect(self) -> bool:
        """Open the connection to the engine."""
        self._connected = True
        return True

    async def disconnect(self) -> None:
        """Close the connection to the engine."""
        self._connected = False

    async def _call(self, operation: str, retry: RetryStrategy, func, *args: Any) -> Any:
        """Run a hook under the retry policy.

        A timeout left after the last attempt becomes a transient
        RemoteFailure so callers handle it like any other remote failure.
        """
        try:
            return await retry.run(func, *args)
        except asyncio.TimeoutError as e:
            raise RemoteFailure(operation, "timed out", cause=e, transient=True) from e

    # Operations
    @timed("list_attachments")
    async def list_attachments(self, vm_id: str, retry: RetryStrategy) -> list[Attachment]:
        """List all attachments of a VM. Empty list if it has none."""
        return await self._call("list_attachments", retry, self._list_attachments, vm_id)

    @timed("get_attachment")
    async def get_attachment(
        self, vm_id: str, attachment_id: str, retry: RetryStrategy
    ) -> Attachment:
        """Fetch a single attachment of a VM."""
        return await self._call(
            "get_attachment", retry, self._get_attachment, vm_id, attachment_id
        )

    @timed("create_attachment")
    async def create_attachment(
        self,
        vm_id: str,
        disk_id: str,
        interface: DiskInterface,
        retry: RetryStrategy,
    ) -> Attachment:
        """Attach a disk to a VM."""
        return await self._call(
            "create_attachment", retry, self._create_attachment, vm_id, disk_id, interface
        )

    @timed("remove_attachment")
    async def remove_attachment(
        self, vm_id: str, attachment_id: str, retry: RetryStrategy
    ) -> None:
        """Detach a disk from a VM. Raises NotFoundFailure if already gone."""
        await self._call("remove_attachment", retry, self._remove_attachment, vm_id, attachment_id)

    @timed("resolve_disk")
    async def resolve_disk(self, attachment: Attachment, retry: RetryStrategy) -> Disk:
        """Look up the disk behind an attachment."""
        return await self._call("resolve_disk", retry, self._resolve_disk, attachment)

    @timed("delete_disk")
    async def delete_disk(self, disk: Disk, retry: RetryStrategy) -> None:
        """Delete a disk, detaching it from every VM."""
        await self._call("delete_disk", retry, self._delete_disk, disk)

    @abstractmethod
    async def _list_attachments(self, vm_id: str) -> list[Attachment]:
        pass

    @abstractmethod
    async def _get_attachment(self, vm_id: str, attachment_id: str) -> Attachment:
        pass

    @abstractmethod
    async def _create_attachment(
        self, vm_id: str, disk_id: str, interface: DiskInterface
    ) -> Attachment:
        pass

    @abstractmethod
    async def _remove_attachment(self, vm_id: str, attachment_id: str) -> None:
        pass

    @abstractmethod
    async def _resolve_disk(self, attachment: Attachment) -> Disk:
        pass

    @abstractmethod
    async def _delete_disk(self, disk: Disk) -> None:
        pass

    # Context manager support
    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()
        return False
