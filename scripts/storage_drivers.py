#!/usr/bin/env python
"""Inspect configured storage drivers.

Usage:
    python scripts/storage_drivers.py list
    python scripts/storage_drivers.py check minio1
    python scripts/storage_drivers.py check --all
"""

from __future__ import annotations

import argparse
import logging
import sys

from dvstore.core.errors import StorageError
from dvstore.core.storage.registry import StorageDriverRegistry
from dvstore.core.utils.config import EnvironmentConfigProvider

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def list_drivers(registry: StorageDriverRegistry) -> int:
    for label, driver_id in sorted(registry.list_drivers().items()):
        driver = registry.get_driver(driver_id)
        location = driver.directory or f"{driver.endpoint}/{driver.bucket}"
        default = " (default)" if driver_id == registry.default_driver_id else ""
        print(f"{label:<12} {driver_id:<12} {driver.kind.value:<10} {location}{default}")
    return 0


def check_drivers(registry: StorageDriverRegistry, driver_ids: list[str]) -> int:
    failures = 0
    for driver_id in driver_ids:
        try:
            registry.get_client(driver_id).head_bucket()
            logger.info(f"Driver '{driver_id}' is reachable")
        except StorageError as e:
            failures += 1
            logger.error(f"Driver '{driver_id}' is not reachable: {e}")
    return 1 if failures else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect configured storage drivers")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("list", help="List drivers by label")
    check = subparsers.add_parser("check", help="Check that a driver's bucket is reachable")
    check.add_argument("driver_ids", nargs="*", help="Driver ids to check")
    check.add_argument("--all", action="store_true", help="Check every configured driver")
    args = parser.parse_args(argv)

    try:
        registry = StorageDriverRegistry(settings=EnvironmentConfigProvider(env_file=".env"))
    except StorageError as e:
        logger.error(f"Invalid storage configuration: {e}")
        return 2

    if args.command == "list":
        return list_drivers(registry)

    driver_ids = list(registry.list_drivers().values()) if args.all else args.driver_ids
    if not driver_ids:
        parser.error("check needs driver ids or --all")
    return check_drivers(registry, driver_ids)


if __name__ == "__main__":
    sys.exit(main())
