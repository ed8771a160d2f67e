"""
Additive schema migrations for the local collection store.

Databases created before a column existed get it through SQLite's
ALTER TABLE ADD COLUMN. get_engine() runs these right after create_all(),
so a fresh database passes through as a no-op.
"""
from typing import List, Set, Tuple

from sqlalchemy import text

# (table, column, SQLite type), applied in order
COLUMN_MIGRATIONS: List[Tuple[str, str, str]] = [
    # CollectionRecord: updatedAt lifted out of the payload for merge lookups
    ("collectionrecord", "updated_at", "VARCHAR"),
    # SyncLog: per-table actions and the user they ran for
    ("synclog", "table_name", "VARCHAR"),
    ("synclog", "user_id", "VARCHAR"),
]


def run_migrations(engine) -> None:
    """Add every missing column listed in COLUMN_MIGRATIONS.

    Idempotent. Tables that don't exist yet are skipped; create_all()
    builds them with the full column set.

    Args:
        engine: SQLAlchemy engine bound to a SQLite database.
    """
    with engine.connect() as conn:
        columns_by_table = {}
        for table, column, col_type in COLUMN_MIGRATIONS:
            if table not in columns_by_table:
                columns_by_table[table] = _table_columns(conn, table)
            existing = columns_by_table[table]
            if existing and column not in existing:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
                existing.add(column)
        conn.commit()


def _table_columns(conn, table: str) -> Set[str]:
    """Column names of table (lowercase, as SQLite stores it); empty if absent."""
    return {row[1] for row in conn.execute(text(f"PRAGMA table_info({table})"))}
