"""Create the session service tables in PostgreSQL.

Usage: ``python -m tabletop.backend.migrate [--database-url URL]``. The schema
only uses ``CREATE TABLE IF NOT EXISTS`` so running it twice is harmless.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from tabletop.backend.config import load_settings

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("db_schema.sql")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply the tabletop database schema")
    parser.add_argument("--database-url", default=load_settings().database_url)
    return parser.parse_args(argv)


def apply_schema(database_url: str, schema_path: Path = SCHEMA_PATH) -> None:
    import psycopg

    schema_sql = schema_path.read_text(encoding="utf-8")
    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(schema_sql)
        conn.commit()
    logger.info("Applied %s", schema_path.name)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    if not args.database_url:
        raise SystemExit("TABLETOP_DATABASE_URL or --database-url is required for migration")
    logging.basicConfig(level=load_settings().log_level)
    apply_schema(args.database_url)


if __name__ == "__main__":
    main()
