"""Tests for engine inventory management."""
import logging
import os
import tempfile

import pytest

from vm_disk_attachments.config import EngineInventory, InventoryError, validate_engine_config
from vm_disk_attachments.stores import MemoryStore, OvirtStore


def write_config(content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write(content)
        return f.name


class TestEngineInventory:
    """Tests for EngineInventory class."""

    @pytest.fixture
    def temp_config(self):
        """Create a temporary config file for testing."""
        path = write_config("""
defaults:
  password_env: "TEST_PASSWORD"
  timeout: 30
  retries: 2

engines:
  prod:
    type: ovirt
    url: https://engine.example.com/ovirt-engine/api
    username: admin@internal
    retries: 5

  lab:
    type: memory
    vms: [vm-1]
    disks: [d1]
""")
        yield path
        os.unlink(path)

    def test_load_config(self, temp_config):
        """Inventory loads config file correctly."""
        inv = EngineInventory(temp_config)

        assert inv.get_engine_ids() == ["prod", "lab"]

    def test_defaults_merged(self, temp_config):
        """Defaults fill in missing keys without overriding explicit ones."""
        inv = EngineInventory(temp_config)
        config = inv.get_engine_config("prod")

        assert config["password_env"] == "TEST_PASSWORD"
        assert config["timeout"] == 30
        assert config["retries"] == 5

    def test_unknown_engine(self, temp_config):
        inv = EngineInventory(temp_config)

        with pytest.raises(KeyError):
            inv.get_engine_config("nope")

    def test_get_store_cached(self, temp_config):
        """Stores are created once per engine."""
        inv = EngineInventory(temp_config)

        prod = inv.get_store("prod")
        lab = inv.get_store("lab")

        assert isinstance(prod, OvirtStore)
        assert isinstance(lab, MemoryStore)
        assert inv.get_store("prod") is prod
        assert "vm-1" in lab.vms

    @pytest.mark.asyncio
    async def test_close_all(self, temp_config):
        inv = EngineInventory(temp_config)
        lab = inv.get_store("lab")
        await lab.connect()

        await inv.close_all()

        assert not lab.is_connected

    def test_env_config_path(self, temp_config, monkeypatch):
        """DISKATTACH_CONFIG points at the inventory."""
        monkeypatch.setenv("DISKATTACH_CONFIG", temp_config)

        inv = EngineInventory()

        assert inv.config_path == temp_config

    def test_missing_config(self, tmp_path, monkeypatch):
        """Without any inventory file a FileNotFoundError is raised."""
        monkeypatch.delenv("DISKATTACH_CONFIG", raising=False)
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))

        if os.path.exists("/etc/diskattach/engines.yaml"):
            pytest.skip("system-wide inventory present")
        with pytest.raises(FileNotFoundError):
            EngineInventory()

    def test_invalid_engine_rejected(self):
        """Validation errors of all engines are raised together."""
        path = write_config("""
engines:
  a:
    type: ovirt
  b:
    type: ovirt
    url: https://b.example.com
    tls_ca_files: [/nonexistent/ca.pem]
""")
        try:
            with pytest.raises(InventoryError) as exc:
                EngineInventory(path)
        finally:
            os.unlink(path)

        assert len(exc.value.errors) == 2


class TestValidateEngineConfig:
    """Tests for connection option checks."""

    def test_memory_needs_no_url(self):
        errors, warnings = validate_engine_config("lab", {"type": "memory"})

        assert errors == []
        assert warnings == []

    def test_insecure_warns(self):
        errors, warnings = validate_engine_config(
            "prod", {"type": "ovirt", "url": "https://x", "tls_insecure": True}
        )

        assert errors == []
        assert "insecure" in warnings[0]

    def test_insecure_logged_on_load(self, caplog):
        path = write_config("""
engines:
  prod:
    type: ovirt
    url: https://x
    tls_insecure: true
""")
        try:
            with caplog.at_level(logging.WARNING):
                EngineInventory(path)
        finally:
            os.unlink(path)

        assert "insecure" in caplog.text

    def test_non_bool_flags(self):
        errors, _ = validate_engine_config(
            "prod", {"type": "ovirt", "url": "https://x", "tls_insecure": "yes"}
        )

        assert "tls_insecure" in errors[0]

    def test_tls_system_on_windows(self, monkeypatch):
        monkeypatch.setattr("sys.platform", "win32")

        errors, _ = validate_engine_config(
            "prod", {"type": "ovirt", "url": "https://x", "tls_system": True}
        )

        assert "Windows" in errors[0]

    def test_ca_paths_checked(self, tmp_path):
        """CA files must be files and CA dirs must be directories."""
        ca_file = tmp_path / "ca.pem"
        ca_file.write_text("pem")

        errors, _ = validate_engine_config("prod", {
            "type": "ovirt",
            "url": "https://x",
            "tls_ca_files": [str(tmp_path)],
            "tls_ca_dirs": [str(ca_file)],
        })
        ok, _ = validate_engine_config("prod", {
            "type": "ovirt",
            "url": "https://x",
            "tls_ca_files": [str(ca_file)],
            "tls_ca_dirs": [str(tmp_path)],
        })

        assert len(errors) == 2
        assert ok == []
