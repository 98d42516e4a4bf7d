#!/usr/bin/env python3
"""Database bootstrap for Pointflow.

Creates the Meeting, MeetingSeries, MeetingOccurrence, Point, StatusUpdate
and RolePermission tables on an empty database, or reports the stored role
permission overrides of an existing one.

Usage:
    # Create tables in the configured database (reads .env):
    python -m scripts.init_db

    # Create tables in a specific SQLAlchemy URL:
    python -m scripts.init_db --url sqlite:///./pointflow.db

    # Show stored overrides instead:
    python -m scripts.init_db --status
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from pointflow.database import SqlRepository, create_engine_for_url
from pointflow.logging_config import configure_logging, get_logger

logger = get_logger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create or inspect the Pointflow database")
    parser.add_argument("--url", help="SQLAlchemy URL (defaults to settings)")
    parser.add_argument("--status", action="store_true", help="List stored role permission overrides")
    args = parser.parse_args(argv)

    configure_logging()
    repo = SqlRepository(create_engine_for_url(args.url) if args.url else None)

    if args.status:
        overrides = repo.get_policy_overrides()
        if not overrides:
            print("No role permission overrides stored (defaults in force).")
        for override in overrides:
            flag = "enabled" if override.enabled else "disabled"
            print(f"  {override.role.value:<22} {override.action.value:<22} {flag}")
        return 0

    repo.create_schema()
    logger.info("Schema created on %s", repo.engine.url.render_as_string(hide_password=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
