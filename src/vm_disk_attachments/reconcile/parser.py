"""Parser for desired attachment configuration.

Converts dict/YAML input to a strongly-typed ReconcileRequest. Untyped maps
never travel past this module.
"""
import hashlib
import json
import logging
from typing import Any

from ..stores.base import DiskInterface
from .schema import (
    ConfigurationFailure,
    DesiredAttachment,
    DesiredSet,
    ReconcileRequest,
)

logger = logging.getLogger(__name__)


class ConfigParser:
    """Parse a desired attachment set from dict/YAML format.

    Accepted shapes for ``attachments``::

        attachments:
          - disk_id: 6a9f...
            disk_interface: virtio_scsi

        attachments:
          6a9f...: virtio_scsi
    """

    def parse(self, config: dict[str, Any]) -> ReconcileRequest:
        """
        Parse a configuration dict into a ReconcileRequest.

        Args:
            config: Dict with vm_id, attachments, remove_unmanaged, destructive

        Returns:
            ReconcileRequest object

        Raises:
            ConfigurationFailure: If the config is malformed
        """
        if not isinstance(config, dict):
            raise ConfigurationFailure("Configuration must be a mapping")

        vm_id = config.get("vm_id") or config.get("vm")
        if not vm_id:
            raise ConfigurationFailure("Missing required field: vm_id or vm")
        if not isinstance(vm_id, str):
            raise ConfigurationFailure(f"vm_id must be a string, got {type(vm_id).__name__}")

        remove_unmanaged = self._parse_bool(config, "remove_unmanaged")
        destructive = self._parse_bool(config, "destructive")
        if destructive and not remove_unmanaged:
            logger.warning(
                f"destructive=true has no effect on VM {vm_id} without remove_unmanaged"
            )

        desired = self.parse_attachments(config.get("attachments", []))

        return ReconcileRequest(
            vm_id=vm_id,
            desired=desired,
            remove_unmanaged=remove_unmanaged,
            destructive=destructive,
            checksum=config.get("checksum"),
        )

    def parse_attachments(self, attachments: Any) -> DesiredSet:
        """Parse the attachments block into a DesiredSet."""
        if attachments is None:
            return DesiredSet()

        if isinstance(attachments, dict):
            items = [
                {"disk_id": disk_id, "disk_interface": interface}
                for disk_id, interface in attachments.items()
            ]
        elif isinstance(attachments, list):
            items = attachments
        else:
            raise ConfigurationFailure(
                "attachments must be a list of {disk_id, disk_interface} "
                "or a mapping of disk_id to interface"
            )

        entries: list[DesiredAttachment] = []
        errors: list[str] = []
        for index, item in enumerate(items):
            try:
                entries.append(self._parse_single_attachment(item))
            except ConfigurationFailure as e:
                errors.extend(f"attachments[{index}]: {msg}" for msg in e.errors)

        if errors:
            raise ConfigurationFailure(errors)

        return DesiredSet(entries)

    def _parse_single_attachment(self, item: Any) -> DesiredAttachment:
        """Parse a single attachment entry."""
        if not isinstance(item, dict):
            raise ConfigurationFailure("entry must be a mapping")

        disk_id = item.get("disk_id")
        if not disk_id or not isinstance(disk_id, str):
            raise ConfigurationFailure("missing or non-string disk_id")

        raw_interface = item.get("disk_interface", item.get("interface"))
        if raw_interface is None:
            raise ConfigurationFailure(f"missing disk_interface for disk {disk_id}")

        try:
            interface = DiskInterface.parse(raw_interface)
        except ValueError as e:
            raise ConfigurationFailure(f"disk {disk_id}: {e}")

        return DesiredAttachment(disk_id=disk_id, interface=interface)

    @staticmethod
    def _parse_bool(config: dict[str, Any], key: str) -> bool:
        value = config.get(key, False)
        if not isinstance(value, bool):
            raise ConfigurationFailure(f"{key} must be a boolean, got {value!r}")
        return value


def compute_checksum(config: dict[str, Any]) -> str:
    """
    Compute SHA256 checksum of a config dict.

    Useful for noticing that a desired set changed between passes.
    """
    config_copy = {k: v for k, v in config.items() if k != "checksum"}

    config_str = json.dumps(config_copy, sort_keys=True, separators=(",", ":"), default=str)

    hash_bytes = hashlib.sha256(config_str.encode()).hexdigest()

    return f"sha256:{hash_bytes[:16]}"  # Short hash for readability
