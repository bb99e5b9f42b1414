"""
Create the bookmark tables and the (owner, parent, title) unique index.
"""

from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence

from sqlalchemy import inspect

from startpage.config import get_settings
from startpage.db import SqlNodeStore, StoreError

logger = logging.getLogger(__name__)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Initialise the bookmark database")
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="SQLAlchemy URL (defaults to DATABASE_URL)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
    )

    database_url = args.database_url or get_settings().database_url
    if not database_url:
        logger.error("No database URL given and DATABASE_URL is not set")
        return 2

    try:
        store = SqlNodeStore(database_url)
    except StoreError as exc:
        logger.error("Could not initialise database: %s", exc)
        return 1

    tables = inspect(store.engine).get_table_names()
    logger.info("Database ready, tables: %s", ", ".join(sorted(tables)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
