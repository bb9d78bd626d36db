"""
Database migrations for the budgeting store.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Pockets and transactions existed before bank linking, so databases created
by older versions lack the link columns. Called automatically from
get_engine() after create_all() so both fresh installs and existing DBs are
handled without manual steps.
"""
from sqlalchemy import text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; checks column existence before altering.
    Supports SQLite only (uses PRAGMA table_info).

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        # Pocket: link to a vendor account
        _add_column_if_missing(conn, "pockets", "revolut_account_id", "VARCHAR")
        _add_column_if_missing(conn, "pockets", "last_synced_at", "DATETIME")

        # Transaction: vendor dedup key and import marker
        _add_column_if_missing(conn, "transactions", "revolut_transaction_id", "VARCHAR")
        _add_column_if_missing(conn, "transactions", "is_imported", "BOOLEAN DEFAULT 0")

        # Connection: sync window anchor
        _add_column_if_missing(conn, "revolut_connections", "last_synced_at", "DATETIME")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "REAL", "TEXT".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
