"""Apply a SQL migration file to the configured database.

    taskfortime-migrate migrations/0002_add_index.sql --database-url sqlite:///taskfortime.db
"""
import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from . import db

logger = logging.getLogger(__name__)


def split_statements(sql: str) -> List[str]:
    """Split on semicolons that end a line, dropping ``--`` comment lines."""
    statements = []
    current: List[str] = []
    for line in sql.splitlines():
        if line.strip().startswith("--"):
            continue
        current.append(line)
        if line.rstrip().endswith(";"):
            statement = "\n".join(current).strip().rstrip(";").strip()
            if statement:
                statements.append(statement)
            current = []
    tail = "\n".join(current).strip()
    if tail:
        statements.append(tail)
    return statements


def apply_migration(path: Path, database_url: Optional[str] = None) -> int:
    statements = split_statements(path.read_text(encoding="utf-8"))
    if not statements:
        raise ValueError(f"{path} contains no SQL statements")
    engine = db.make_engine(database_url) if database_url else db.engine
    with engine.begin() as conn:
        for statement in statements:
            conn.execute(text(statement))
    return len(statements)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskfortime-migrate", description="Apply a SQL migration file in one transaction."
    )
    parser.add_argument("path", type=Path, help="SQL file to apply")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy URL; defaults to DATABASE_URL or the local SQLite file",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    args = build_parser().parse_args(argv)
    if not args.path.is_file():
        logger.error("Migration file not found: %s", args.path)
        return 1
    try:
        count = apply_migration(args.path, args.database_url)
    except (SQLAlchemyError, ValueError) as exc:
        logger.error("Migration %s failed and was rolled back: %s", args.path.name, exc)
        print(args.path.read_text(encoding="utf-8"), file=sys.stderr)
        return 1
    logger.info("Applied %s statement(s) from %s", count, args.path.name)
    return 0


if __name__ == "__main__":
    sys.exit(main())
