#!/usr/bin/env python3
"""
Create or drop the approval workflow tables.

The database URL comes from --database-url, else from the active settings
(``database_url`` in the settings file or APPROVAL_DATABASE_URL).

Usage:
    python3 scripts/init_approval_db.py create --database-url sqlite:///approvals.db
    python3 scripts/init_approval_db.py drop --yes
"""

import argparse
import logging
import sys
from pathlib import Path

# ---------------------------------------------------------------------------
# Project root on sys.path
# ---------------------------------------------------------------------------
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Create or drop the approval workflow schema.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("action", choices=("create", "drop"))
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="SQLAlchemy URL (overrides settings)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Settings YAML (default: packaged defaults.yaml)",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Required for drop",
    )
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    from approval_config import get_active_settings
    from approval_kernel.db.engine import (
        create_tables,
        drop_tables,
        init_engine_from_url,
        reset_engine,
    )
    from approval_kernel.logging_config import configure_logging

    configure_logging(level=logging.DEBUG if args.verbose else logging.INFO)

    settings = get_active_settings(args.config)
    database_url = args.database_url or settings.database_url
    if not database_url:
        print(
            "No database URL: pass --database-url or set APPROVAL_DATABASE_URL",
            file=sys.stderr,
        )
        return 2

    if args.action == "drop" and not args.yes:
        print("Refusing to drop tables without --yes", file=sys.stderr)
        return 2

    engine = init_engine_from_url(database_url)
    try:
        if args.action == "create":
            create_tables(engine)
            print(f"Created approval tables at {engine.url.render_as_string(hide_password=True)}")
        else:
            drop_tables(engine)
            print(f"Dropped approval tables at {engine.url.render_as_string(hide_password=True)}")
    finally:
        reset_engine()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
