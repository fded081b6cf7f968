from __future__ import annotations

from psycopg import sql as psql

HEALTH = "SELECT 1"

# Column order used by inserts and the diagnostic select
INSERT_COLS = ["time", "source_addr", "data_size", "raw_data"]
SELECT_COLS = ["time", "source_addr", "data_size", "raw_data", "created_at"]


def create_table(table: str) -> psql.Composed:
    return psql.SQL(
        """
        CREATE TABLE IF NOT EXISTS {} (
            time        TIMESTAMPTZ NOT NULL,
            source_addr VARCHAR(50),
            data_size   INTEGER,
            raw_data    BYTEA,
            created_at  TIMESTAMPTZ DEFAULT NOW()
        )
        """
    ).format(psql.Identifier(table))


def create_hypertable(table: str) -> psql.Composed:
    # Errors here (already a hypertable, extension missing) are not fatal
    return psql.SQL("SELECT create_hypertable({}, 'time', if_not_exists => TRUE)").format(
        psql.Literal(table)
    )


def insert_row(table: str) -> psql.Composed:
    """INSERT with positional parameters in INSERT_COLS order."""
    return psql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
        psql.Identifier(table),
        psql.SQL(", ").join(psql.Identifier(c) for c in INSERT_COLS),
        psql.SQL(", ").join(psql.Placeholder() for _ in INSERT_COLS),
    )


def recent_rows(table: str) -> psql.Composed:
    """Most recent rows first; one %s parameter for the limit."""
    return psql.SQL("SELECT {} FROM {} ORDER BY time DESC LIMIT %s").format(
        psql.SQL(", ").join(psql.Identifier(c) for c in SELECT_COLS),
        psql.Identifier(table),
    )
