"""Pre-flight validation for reconcile requests.

Catches malformed identifiers and risky options before any engine
communication.
"""
import re
from typing import Any

from .schema import (
    ReconcileRequest,
    ValidationResult,
)


UUID_PATTERN = re.compile(
    r"^\b[0-9a-f]{8}\b-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-\b[0-9a-f]{12}\b$"
)

# Above this many declared disks the plan is worth a second look
LARGE_SET_THRESHOLD = 20


def is_uuid(value: Any) -> bool:
    """Check for a lowercase, hyphenated UUID as the engine issues them."""
    return isinstance(value, str) and bool(UUID_PATTERN.match(value))


def validate_non_empty(value: Any, field_name: str) -> list[str]:
    """Return an error if value is not a non-empty string."""
    if not isinstance(value, str):
        return [f"{field_name} must be a string"]
    if value == "":
        return [f"{field_name} must not be empty"]
    return []


class ConfigValidator:
    """Validate a reconcile request for logical errors before execution."""

    def __init__(self, require_uuids: bool = True):
        """
        Initialize validator.

        Args:
            require_uuids: Enforce UUID syntax on VM and disk identifiers.
                The in-memory engine accepts arbitrary identifiers.
        """
        self.require_uuids = require_uuids

    def validate(self, request: ReconcileRequest) -> ValidationResult:
        """
        Validate a reconcile request.

        Performs pre-flight checks:
        - VM and disk identifier syntax
        - Destructive cleanup opt-in
        - Desired set size

        Args:
            request: The request to validate

        Returns:
            ValidationResult with valid flag, errors, and warnings
        """
        errors: list[str] = []
        warnings: list[str] = []

        self._validate_identifiers(request, errors)
        self._check_cleanup_options(request, warnings)
        self._check_set_size(request, warnings)

        return ValidationResult(
            valid=len(errors) == 0,
            errors=errors,
            warnings=warnings,
        )

    def _validate_identifiers(self, request: ReconcileRequest, errors: list[str]) -> None:
        errors.extend(validate_non_empty(request.vm_id, "vm_id"))
        if self.require_uuids and request.vm_id and not is_uuid(request.vm_id):
            errors.append(f"vm_id '{request.vm_id}' is not a UUID")

        for disk_id in request.desired:
            errors.extend(validate_non_empty(disk_id, "disk_id"))
            if self.require_uuids and not is_uuid(disk_id):
                errors.append(f"disk_id '{disk_id}' is not a UUID")

    def _check_cleanup_options(self, request: ReconcileRequest, warnings: list[str]) -> None:
        if request.remove_unmanaged and request.destructive:
            warnings.append(
                f"Unmanaged disks on VM {request.vm_id} will be deleted, not just detached"
            )
        elif request.destructive:
            warnings.append("destructive is ignored because remove_unmanaged is not set")

        if request.remove_unmanaged and not request.desired:
            warnings.append(
                f"Empty desired set with remove_unmanaged: every attachment on "
                f"VM {request.vm_id} will be removed"
            )

    def _check_set_size(self, request: ReconcileRequest, warnings: list[str]) -> None:
        if len(request.desired) > LARGE_SET_THRESHOLD:
            warnings.append(
                f"Large desired set ({len(request.desired)} disks) - verify before applying"
            )
