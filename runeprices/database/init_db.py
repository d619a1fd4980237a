"""
Database Bootstrap - Command Line Runner

Selects the backend, builds the pool, creates/migrates the schema and
reports storage health, then shuts down. Safe to run repeatedly: against an
initialized database it only verifies.

Usage:
    runeprices-init-db

    # Custom config
    runeprices-init-db --config config/custom.yaml

    # Debug mode
    runeprices-init-db --debug
"""
import argparse
import logging
import sys
from typing import List, Optional

from runeprices.database.config import load_database_config
from runeprices.database.exceptions import StorageError
from runeprices.database.storage import StorageHandle
from runeprices.monitoring.health_check import HealthChecker, HealthStatus

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Initialize the price tracker database')

    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to configuration file (default: config/database.yaml if present)'
    )

    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )

    try:
        config = load_database_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    storage = StorageHandle(config)
    try:
        storage.initialize()

        health = HealthChecker().check_storage(storage)
        logger.info(f"Backend: {storage.profile.kind.value} ({storage.profile.describe()})")
        logger.info(f"Health: {health.status.value} - {health.message}")

        if health.status == HealthStatus.UNHEALTHY:
            return 1
        return 0

    except StorageError as e:
        logger.error(f"Database initialization failed: {e}", exc_info=args.debug)
        return 1

    finally:
        storage.shutdown()


if __name__ == "__main__":
    sys.exit(main())
