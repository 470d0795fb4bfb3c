"""Engine inventory configuration."""
from .inventory import EngineInventory, InventoryError, validate_engine_config

__all__ = ["EngineInventory", "InventoryError", "validate_engine_config"]
