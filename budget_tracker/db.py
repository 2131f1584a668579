import logging
import re
import sqlite3
from pathlib import Path
from urllib.parse import urlparse

try:
    import psycopg
    from psycopg.rows import tuple_row
except ImportError:  # pragma: no cover - dependency optional for sqlite-only environments
    psycopg = None
    tuple_row = None


logger = logging.getLogger(__name__)

DATABASE_ERRORS = (sqlite3.Error,) + ((psycopg.Error,) if psycopg is not None else ())
POSTGRES_SCHEMES = ("postgres://", "postgresql://")
TABLE_INFO_PATTERN = re.compile(r"\s*PRAGMA\s+table_info\(([^)]+)\)", re.IGNORECASE)
TABLE_COLUMNS_SQL = (
    "SELECT column_name AS name "
    "FROM information_schema.columns "
    "WHERE table_schema = current_schema() AND table_name = %s "
    "ORDER BY ordinal_position"
)


class CompatRow:
    """Postgres row readable by column name, like ``sqlite3.Row``."""

    def __init__(self, columns, values):
        self._values = tuple(values)
        self._index = {name: position for position, name in enumerate(columns)}

    def __getitem__(self, key):
        if isinstance(key, str):
            key = self._index[key]
        return self._values[key]

    def __iter__(self):
        return iter(self._values)


class CompatCursor:
    def __init__(self, cursor, named_rows):
        self._cursor = cursor
        self._named_rows = named_rows

    @property
    def rowcount(self):
        return self._cursor.rowcount

    def _wrap(self, row):
        if row is None or not self._named_rows:
            return row
        columns = [column.name for column in self._cursor.description]
        return CompatRow(columns, row)

    def fetchone(self):
        return self._wrap(self._cursor.fetchone())

    def fetchall(self):
        return [self._wrap(row) for row in self._cursor.fetchall()]


class CompatConnection:
    """Connection speaking the sqlite dialect on either backend."""

    def __init__(self, conn, backend):
        self._conn = conn
        self.backend = backend

    def execute(self, sql, params=()):
        sql, params = rewrite_sql(self.backend, sql, params)
        return CompatCursor(self._conn.execute(sql, params or ()), named_rows=self.backend == "postgres")

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def rewrite_sql(backend, sql, params):
    """Translate qmark placeholders and ``PRAGMA table_info`` for Postgres."""
    if backend != "postgres":
        return sql, params

    table_info = TABLE_INFO_PATTERN.match(sql)
    if table_info:
        return TABLE_COLUMNS_SQL, (table_info.group(1).strip().strip("'\""),)
    return sql.replace("?", "%s"), tuple(params or ())


def parse_database_config(database_path=None, database_url=None):
    db_url = (database_url or "").strip()
    if db_url.startswith(POSTGRES_SCHEMES):
        return {
            "backend": "postgres",
            "database_url": db_url,
            "database_name": urlparse(db_url).path.lstrip("/") or "postgres",
            "database_path": database_path,
        }

    return {
        "backend": "sqlite",
        "database_url": None,
        "database_name": Path(database_path).name if database_path else "sqlite",
        "database_path": database_path,
    }


def connect_db(config):
    if config["backend"] == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required when DATABASE_URL points to Postgres")
        logger.debug("Connecting to Postgres database %s", config["database_name"])
        return CompatConnection(psycopg.connect(config["database_url"], row_factory=tuple_row), "postgres")

    db_path = config["database_path"]
    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    return CompatConnection(conn, "sqlite")
