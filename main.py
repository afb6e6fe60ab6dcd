"""
main.py
-------
Start-up check for the configured database.

Responsibilities:
    - Rebuild the Schema Registry from `migrations/`.
    - Connect to the primary store (or the test store with ``--test``).
    - Report any drift between the live schema and the migrations.

Migrations themselves are applied by an external runner (e.g. ``sqlx migrate run``).
"""

import sys

import config
from db.connection import Database
from db.drift import DriftDetector
from db.exceptions import BotanistDBError, DriftError
from db.schema import SchemaRegistry
from utils.logger import get_logger

logger = get_logger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Run the check and return the process exit code."""
    args = sys.argv[1:] if argv is None else argv
    testing = "--test" in args

    # ── 1. Schema registry ────────────────────────────────
    logger.info(f"Loading migrations from {config.MIGRATIONS_DIR}")
    try:
        registry = SchemaRegistry.from_directory(config.MIGRATIONS_DIR, strict=True)
    except BotanistDBError as e:
        logger.error(f"Invalid migrations: {e}")
        return 2

    # ── 2. Drift check ────────────────────────────────────
    try:
        with Database.from_environment(testing=testing) as db:
            DriftDetector(db, registry, schema=config.DB_SCHEMA).check()
    except DriftError as e:
        logger.error(str(e))
        return 1
    except BotanistDBError as e:
        logger.error(f"Database check failed: {e}")
        return 2

    logger.info("Database is ready.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
