from contextlib import contextmanager
from pathlib import Path

import psycopg

from config import settings

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


@contextmanager
def get_conn(dsn: str = None):
    """
    simple context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    """
    with psycopg.connect(dsn or settings.DATABASE_URL) as conn:
        conn.autocommit = False
        yield conn


def apply_schema(dsn: str = None):
    """create the tables if they are missing (idempotent)."""
    with get_conn(dsn) as conn:
        try:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_PATH.read_text())
            conn.commit()
        except Exception:
            conn.rollback()
            raise
