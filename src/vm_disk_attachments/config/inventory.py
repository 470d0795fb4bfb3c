"""Engine inventory management from YAML configuration."""
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import yaml

from ..stores import AttachmentStore, create_store

logger = logging.getLogger(__name__)


class InventoryError(ValueError):
    """The engines inventory is unusable."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


def validate_engine_config(engine_id: str, config: dict) -> tuple[list[str], list[str]]:
    """
    Check the connection options of one engine entry.

    Returns:
        Tuple of (errors, warnings)
    """
    errors: list[str] = []
    warnings: list[str] = []
    prefix = f"engine {engine_id}"
    engine_type = str(config.get("type", "")).lower()

    if engine_type != "memory" and not config.get("url"):
        errors.append(f"{prefix}: url is required")

    insecure = config.get("tls_insecure", False)
    if not isinstance(insecure, bool):
        errors.append(f"{prefix}: tls_insecure must be true or false")
    elif insecure:
        warnings.append(
            f"{prefix}: insecure connection mode enabled, the engine certificate "
            f"will not be verified"
        )

    system = config.get("tls_system", False)
    if not isinstance(system, bool):
        errors.append(f"{prefix}: tls_system must be true or false")
    elif system and sys.platform == "win32":
        errors.append(f"{prefix}: tls_system is not available on Windows")

    for ca_file in config.get("tls_ca_files") or []:
        if not os.path.isfile(ca_file):
            errors.append(f"{prefix}: tls_ca_files entry {ca_file} is not a file")

    for ca_dir in config.get("tls_ca_dirs") or []:
        if not os.path.isdir(ca_dir):
            errors.append(f"{prefix}: tls_ca_dirs entry {ca_dir} is not a directory")

    bundle = config.get("tls_ca_bundle")
    if bundle is not None and not isinstance(bundle, str):
        errors.append(f"{prefix}: tls_ca_bundle must be a PEM string")

    return errors, warnings


class EngineInventory:
    """Manages the engine inventory loaded from YAML config.

    ```yaml
    defaults:
      username: admin@internal
      retries: 3

    engines:
      prod:
        type: ovirt
        url: https://engine.example.com/ovirt-engine/api
        tls_ca_files:
          - /etc/pki/ovirt-engine/ca.pem
      lab:
        type: memory
        vms: [lab-vm]
        disks: [lab-disk]
    ```
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._find_config()
        self._config: dict = {}
        self._stores: dict[str, AttachmentStore] = {}
        self._load_config()

    def _find_config(self) -> str:
        """Find the engines.yaml config file."""
        env_path = os.environ.get("DISKATTACH_CONFIG")
        if env_path:
            return env_path

        search_paths = [
            Path.cwd() / "configs" / "engines.yaml",
            Path.cwd() / "engines.yaml",
            Path.home() / ".config" / "diskattach" / "engines.yaml",
            Path("/etc/diskattach/engines.yaml"),
        ]

        for path in search_paths:
            if path.exists():
                return str(path)

        raise FileNotFoundError(
            "Could not find engines.yaml. Create one in ./configs/engines.yaml"
        )

    def _load_config(self) -> None:
        """Load the YAML configuration."""
        with open(self.config_path) as f:
            self._config = yaml.safe_load(f) or {}

        # Apply defaults
        defaults = self._config.get("defaults", {})
        for engine_id, engine_config in self._config.get("engines", {}).items():
            for key, value in defaults.items():
                if key not in engine_config:
                    engine_config[key] = value

        self._validate_engines()

    def _validate_engines(self) -> None:
        errors: list[str] = []
        for engine_id, engine_config in self._config.get("engines", {}).items():
            engine_errors, warnings = validate_engine_config(engine_id, engine_config)
            errors.extend(engine_errors)
            for warning in warnings:
                logger.warning(warning)
        if errors:
            raise InventoryError(errors)

    def get_engine_ids(self) -> list[str]:
        """Get all engine IDs."""
        return list(self._config.get("engines", {}).keys())

    def get_engine_config(self, engine_id: str) -> dict:
        """Get raw config for an engine."""
        engines = self._config.get("engines", {})
        if engine_id not in engines:
            raise KeyError(f"Unknown engine: {engine_id}")
        return engines[engine_id]

    def get_store(self, engine_id: str) -> AttachmentStore:
        """Get or create the attachment store of an engine."""
        if engine_id not in self._stores:
            config = self.get_engine_config(engine_id)
            self._stores[engine_id] = create_store(engine_id, config)
        return self._stores[engine_id]

    async def close_all(self) -> None:
        """Close all engine connections."""
        for store in self._stores.values():
            if store.is_connected:
                await store.disconnect()
        self._stores.clear()
