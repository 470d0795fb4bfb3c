"""State Store package for persisted attachment state.

This package provides:
- StateStore: Main class for reading/writing per-VM state
- StoredState: Resolved attachments of the last pass with metadata
- DriftReport/DriftItem: Drift detection between stored and live state

Directory structure managed:
    ~/.diskattach/
    └── state/
        └── <vm_id>.yaml      # Resolved attachments per VM
"""

from .store import (
    StateStore,
    StoredState,
    DriftReport,
    DriftItem,
    check_drift,
    DEFAULT_STATE_DIR,
)

__all__ = [
    "StateStore",
    "StoredState",
    "DriftReport",
    "DriftItem",
    "check_drift",
    "DEFAULT_STATE_DIR",
]
