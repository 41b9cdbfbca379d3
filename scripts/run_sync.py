#!/usr/bin/env python
"""
Run Sync Script
Command-line script for syncing one repository or running a whole batch.
"""

import argparse
import sys

from activity_sync.utils.logger import setup_logging, get_logger
from activity_sync.context import AppContext
from activity_sync.database.connection import get_db
from activity_sync.sync.errors import RepositoryNotFound


def main():
    """Main entry point for the sync script."""
    parser = argparse.ArgumentParser(description='Sync repository activity')
    parser.add_argument(
        '--repository',
        '-r',
        type=int,
        help='Repository id to sync (all enabled repositories when omitted)'
    )
    parser.add_argument(
        '--full',
        action='store_true',
        help='Run full sync instead of incremental'
    )
    parser.add_argument(
        '--verbose',
        '-v',
        action='store_true',
        help='Log at DEBUG level'
    )

    args = parser.parse_args()

    setup_logging('DEBUG' if args.verbose else None)
    logger = get_logger(__name__)
    sync_type = 'full' if args.full else 'incremental'

    try:
        db = get_db()
        db.create_schema()
        context = AppContext.build(db)

        if args.repository is not None:
            logger.info(f"Starting sync: repository={args.repository} type={sync_type}")
            result = context.orchestrator.sync_repository(args.repository, sync_type)

            print(f"\n{'='*50}")
            print("Sync Complete")
            print(f"{'='*50}")
            print(f"Repository: {result.repository_id}")
            print(f"Job ID: {result.job_id}")
            print(f"Status: {result.status}")
            print(f"Records Processed: {result.records_processed}")
            print(f"New Data: {result.has_new_data}")
            print(f"Duration: {result.duration:.2f}s")

            if not result.success:
                print(f"Error: {result.error}")
                sys.exit(1)
        else:
            logger.info(f"Starting batch: type={sync_type}")
            summary = context.scheduler.run_now(sync_type)

            if summary.get('skipped'):
                print(f"Skipped: {summary['reason']}")
                sys.exit(1)

            print(f"\n{'='*50}")
            print("Batch Complete")
            print(f"{'='*50}")
            print(f"Batch ID: {summary['batchId']}")
            print(f"Repositories: {summary['processed']}")
            print(f"Successful: {summary['successes']}")
            print(f"Failed: {summary['failures']}")
            print(f"Deferred: {summary['deferred']}")

            if summary['failures']:
                sys.exit(1)

    except RepositoryNotFound as e:
        print(f"\nError: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Sync failed: {e}")
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
