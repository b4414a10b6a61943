#!/usr/bin/env python3
"""
Initialize or inspect the diagram store database.

Creates the tables for documents, page images, question coordinates, stored
diagrams and cached renders. ``--stats`` prints row counts instead.
"""
import argparse
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent))

from config.logging_config import setup_logging
from config.settings import settings
from data.database import DatabaseManager


def print_table_counts(db_manager: DatabaseManager):
    counts = db_manager.table_counts()
    width = max(len(name) for name in counts)
    for name, count in counts.items():
        print(f"  {name.ljust(width)}  {count}")


def main():
    parser = argparse.ArgumentParser(
        description='Initialize the diagramflow store'
    )
    parser.add_argument(
        '--database-url',
        type=str,
        default=None,
        help=f'Database URL (default: {settings.database_url})'
    )
    parser.add_argument(
        '--drop-existing',
        action='store_true',
        help='Drop existing tables before creating new ones (WARNING: destroys data!)'
    )
    parser.add_argument(
        '--stats',
        action='store_true',
        help='Only print row counts for each table'
    )

    args = parser.parse_args()
    setup_logging()

    db_manager = DatabaseManager(args.database_url)
    print(f"Diagram store: {db_manager.database_url}")

    if args.stats:
        print_table_counts(db_manager)
        return

    if args.drop_existing:
        confirm = input("Drop existing tables? This deletes every stored diagram (yes/no): ")
        if confirm.lower() != 'yes':
            print("Aborted.")
            return
        db_manager.drop_tables()

    db_manager.create_tables()

    print("✓ Tables ready:")
    print_table_counts(db_manager)
    print()
    print("Next steps:")
    print("  uvicorn serving.workflow_api:app --port 8002")
    print("  python cli_workflow.py process paper.pdf")


if __name__ == '__main__':
    main()
