#!/usr/bin/env python3
"""diskattach command line interface.

Usage:
    diskattach [--config ENGINES] [--state-dir DIR] COMMAND ...

Environment variables:
    DISKATTACH_CONFIG        Engines inventory file
    DISKATTACH_LOG_LEVEL     Console log level (default: INFO)
    OVIRT_PASSWORD           Engine password unless set in the inventory
"""
import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import yaml

from .config import EngineInventory
from .reconcile import ConfigurationFailure, ReconcileEngine, compute_checksum, is_uuid
from .state import StateStore, check_drift
from .stores import RemoteFailure
from .utils.audit_log import setup_audit_logging
from .utils.connection import RetryStrategy
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="diskattach",
        description="Reconcile the disk attachments of virtual machines",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Show what would change
    diskattach plan --engine prod --file vm-db01.yaml

    # Apply the desired attachments and record the resulting state
    diskattach apply --engine prod --file vm-db01.yaml

    # Compare recorded state with the engine
    diskattach status --engine prod --vm 6a9f0e2c-...
""",
    )
    parser.add_argument("--config", type=str, help="Engines inventory file")
    parser.add_argument("--state-dir", type=Path, help="State directory (default: ~/.diskattach)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    plan = sub.add_parser("plan", help="Preview the changes of a desired-state file")
    plan.add_argument("--engine", required=True)
    plan.add_argument("--file", type=Path, required=True)

    apply = sub.add_parser("apply", help="Reconcile a VM against a desired-state file")
    apply.add_argument("--engine", required=True)
    apply.add_argument("--file", type=Path, required=True)
    apply.add_argument("--dry-run", action="store_true", help="Plan only, change nothing")
    apply.add_argument("--concurrency", type=int, default=1)

    status = sub.add_parser("status", help="Check recorded state for drift")
    status.add_argument("--engine", required=True)
    status.add_argument("--vm", required=True)

    destroy = sub.add_parser("destroy", help="Detach every recorded attachment of a VM")
    destroy.add_argument("--engine", required=True)
    destroy.add_argument("--vm", required=True)

    adopt = sub.add_parser("import", help="Record the live attachments of a VM as its state")
    adopt.add_argument("--engine", required=True)
    adopt.add_argument("--vm", required=True)

    sub.add_parser("list", help="List engines and VMs with recorded state")

    return parser


def load_desired(path: Path) -> dict:
    """Load a desired-state YAML document."""
    with open(path) as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ConfigurationFailure(f"{path} does not contain a mapping")
    return data


async def run_command(
    args: argparse.Namespace,
    inventory: EngineInventory,
    state_store: StateStore,
) -> int:
    """Run one subcommand and return its exit code."""
    if args.command == "list":
        for engine_id in inventory.get_engine_ids():
            engine_type = inventory.get_engine_config(engine_id).get("type", "unknown")
            print(f"engine {engine_id} ({engine_type})")
        for vm_id in state_store.list_vms():
            state = state_store.load(vm_id)
            count = len(state.attachments) if state else 0
            print(f"vm {vm_id}: {count} attachment(s)")
        return EXIT_OK

    store = inventory.get_store(args.engine)
    retry = RetryStrategy.from_config(store.config)
    engine = ReconcileEngine(
        store,
        concurrency=getattr(args, "concurrency", 1),
        require_uuids=store.config.type != "memory",
    )

    vm_id = getattr(args, "vm", None)
    if vm_id is not None and engine.validator.require_uuids and not is_uuid(vm_id):
        raise ValueError(f"vm_id '{vm_id}' is not a valid UUID")

    async with store:
        if args.command == "plan":
            print(await engine.preview(load_desired(args.file), retry))
            return EXIT_OK

        if args.command == "apply":
            config = load_desired(args.file)
            result = await engine.apply_config(config, retry, dry_run=args.dry_run)
            if not args.dry_run:
                state_store.save(
                    result.vm_id,
                    result.resolved,
                    remove_unmanaged=bool(config.get("remove_unmanaged", False)),
                    checksum=compute_checksum(config),
                )
            print(json.dumps(result.to_dict(), indent=2))
            return EXIT_OK if result.success else EXIT_PARTIAL

        if args.command == "status":
            stored = state_store.load(args.vm)
            if stored is None:
                logger.error(f"No recorded state for VM {args.vm}")
                return EXIT_FATAL
            actual = await store.list_attachments(args.vm, retry)
            report = check_drift(args.vm, stored.attachments, actual)
            print(report.summary())
            return EXIT_OK if report.in_sync else EXIT_PARTIAL

        if args.command == "destroy":
            stored = state_store.load(args.vm)
            if stored is None:
                logger.info(f"No recorded state for VM {args.vm}, nothing to destroy")
                return EXIT_OK
            result = await engine.teardown(args.vm, stored.attachments, retry)
            if result.resolved:
                state_store.save(
                    args.vm, result.resolved,
                    remove_unmanaged=stored.remove_unmanaged,
                    checksum=stored.checksum,
                    source="destroy",
                )
            else:
                state_store.delete(args.vm)
            print(json.dumps(result.to_dict(), indent=2))
            return EXIT_OK if result.success else EXIT_PARTIAL

        if args.command == "import":
            attachments = await engine.adopt(args.vm, retry)
            state_store.save(args.vm, attachments, source="import")
            print(f"Imported {len(attachments)} attachment(s) of VM {args.vm}")
            return EXIT_OK

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the diskattach CLI."""
    args = build_parser().parse_args(argv)

    if args.verbose:
        os.environ["DISKATTACH_LOG_LEVEL"] = "DEBUG"
    setup_logging()
    setup_audit_logging(str(args.state_dir) if args.state_dir else None)

    try:
        inventory = EngineInventory(args.config)
        state_store = StateStore(args.state_dir)
        return asyncio.run(_run(args, inventory, state_store))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_FATAL
    except (FileNotFoundError, KeyError) as e:
        logger.error(str(e))
        return EXIT_FATAL
    except RemoteFailure as e:
        logger.error(f"Engine call failed: {e}")
        return EXIT_FATAL


async def _run(
    args: argparse.Namespace,
    inventory: EngineInventory,
    state_store: StateStore,
) -> int:
    try:
        return await run_command(args, inventory, state_store)
    finally:
        await inventory.close_all()


if __name__ == "__main__":
    sys.exit(main())
