from __future__ import annotations

import argparse
import faulthandler
import json
import logging
import sys
from pathlib import Path

from clinic_sync.bootstrap.container import AppContainer, build_container
from clinic_sync.bootstrap.logging import configure_logging, install_exception_hook
from clinic_sync.bootstrap.settings import resolve_log_dir
from clinic_sync.core.errors import ReconciliationError
from clinic_sync.domain.models import PersistenceType

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RECONCILIATION_FAILED = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="clinic_sync", description="Dual-store clinic data synchronization")
    parser.add_argument("command", nargs="?", choices=["sync", "status"], default="sync")
    parser.add_argument(
        "--primary",
        choices=[kind.value for kind in PersistenceType],
        default=None,
        help="Authoritative store for the reconciliation (file | relational)",
    )
    parser.add_argument("--data-dir", type=Path, default=None, help="Directory holding config.json and both stores")
    return parser


def store_counts(container: AppContainer) -> dict[str, dict[str, int]]:
    counts: dict[str, dict[str, int]] = {}
    for kind in PersistenceType:
        daos = container.factory.daos(kind)
        counts[kind.value] = {
            "users": len(daos.users.retrieve_all()),
            "psychologists": len(daos.psychologists.retrieve_all()),
            "patients": len(daos.patients.retrieve_all()),
            "appointments": len(daos.appointments.retrieve_all()),
        }
    return counts


def _run_sync(container: AppContainer) -> int:
    try:
        report = container.initial_sync_manager.perform_initial_sync(container.config.primary)
    except ReconciliationError as exc:
        logger.error("Reconciliation failed: %s", exc)
        sys.stderr.write(f"Sincronización abortada: {exc}\n")
        return EXIT_RECONCILIATION_FAILED
    sys.stdout.write(json.dumps(report.to_dict(), ensure_ascii=False) + "\n")
    return EXIT_OK


def _run_status(container: AppContainer) -> int:
    counts = store_counts(container)
    logger.info("store_status", extra={"extra": counts})
    sys.stdout.write(json.dumps(counts, ensure_ascii=False) + "\n")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    log_dir = resolve_log_dir()
    configure_logging(log_dir)
    install_exception_hook(log_dir)
    faulthandler.enable()

    logger.info("Log dir: %s", log_dir)
    logger.info("Python: %s", sys.version)
    logger.info("CWD: %s", Path.cwd())

    container = build_container(args.data_dir, primary=args.primary, run_initial_sync=False)
    try:
        if args.command == "status":
            return _run_status(container)
        return _run_sync(container)
    finally:
        container.close()
