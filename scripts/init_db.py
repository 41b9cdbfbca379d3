#!/usr/bin/env python
"""
Initialize Database Script
Creates the sync schema, the unknown-developer placeholder and the runtime
scheduler settings row.
"""

import argparse
import sys

from activity_sync.utils.logger import setup_logging, get_logger
from activity_sync.database.connection import get_db
from activity_sync.sync.config_service import ConfigService
from activity_sync.sync.identity import IdentityResolver


def confirm_drop(assume_yes: bool) -> bool:
    if assume_yes:
        return True
    answer = input("Drop every sync table, including job history and notifications? (yes/no): ")
    return answer.strip().lower() == 'yes'


def seed(db):
    """Insert the rows the service expects to exist; safe to run repeatedly."""
    with db.session_scope() as session:
        sentinel_id = IdentityResolver().ensure_sentinel(session)
    return sentinel_id, ConfigService(db).get_config()


def main():
    """Main entry point for database initialization."""
    parser = argparse.ArgumentParser(description='Initialize the activity sync database')
    parser.add_argument(
        '--drop',
        action='store_true',
        help='Drop existing tables before creating (DANGEROUS)'
    )
    parser.add_argument(
        '--yes',
        '-y',
        action='store_true',
        help='Do not ask for confirmation before dropping'
    )

    args = parser.parse_args()

    setup_logging()
    logger = get_logger(__name__)

    try:
        db = get_db()
        if not db.check_connection():
            print("Error: Cannot connect to database")
            sys.exit(1)

        if args.drop:
            if not confirm_drop(args.yes):
                print("Cancelled")
                sys.exit(0)
            db.drop_schema()

        db.create_schema()
        sentinel_id, config = seed(db)
        logger.info(f"Database initialized, unknown developer id={sentinel_id}")

        tables = db.table_names()
        print(f"\n{'='*50}")
        print(f"Database ready: {len(tables)} tables")
        print(f"{'='*50}")
        for table in tables:
            print(f"  - {table}")

        print("\nRuntime scheduler settings:")
        for name, value in config.to_dict().items():
            print(f"  {name}: {value}")

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
