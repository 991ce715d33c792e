"""Backend stores.

Both stores expose the same small surface (query, schema, table columns, DDL,
transactional batch insert) on top of a SQLAlchemy engine. The engine is built
lazily, once per process, under a lock; steady-state calls never take it.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine

from errors import BackendError

logger = logging.getLogger("copilot.stores")

DEMO_TABLE = "sample_data"
DEMO_ROWS = [
    {"name": "Item 1", "value": 100, "category": "A"},
    {"name": "Item 2", "value": 200, "category": "B"},
    {"name": "Item 3", "value": 150, "category": "A"},
    {"name": "Item 4", "value": 300, "category": "C"},
    {"name": "Item 5", "value": 250, "category": "B"},
]

_IDENT_RE = re.compile(r"^[A-Za-z0-9_]+$")


@dataclass
class SchemaColumn:
    table_name: str
    column_name: str
    data_type: str
    is_nullable: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


def quote_ident(name: str) -> str:
    """Double-quote an identifier that has already been sanitized to [A-Za-z0-9_]."""
    if not isinstance(name, str) or not _IDENT_RE.match(name):
        raise BackendError(f"Refusing unsanitized identifier: {name!r}")
    return f'"{name}"'


def _rows(result) -> List[Dict[str, Any]]:
    if not result.returns_rows:
        return []
    cols = list(result.keys())
    return [dict(zip(cols, r)) for r in result.fetchall()]


class BackendStore:
    name = "store"
    dialect = ""
    demo_ddl = ""
    # seconds to fail fast after a connect/seed failure
    retry_cooldown = 2.0

    def __init__(self) -> None:
        self._engine: Optional[Engine] = None
        self._init_lock = threading.Lock()
        self._failed_at: Optional[float] = None

    # -------------------------
    # Lazy, guarded initialization
    # -------------------------
    def _check_cooldown(self) -> None:
        failed_at = self._failed_at
        if failed_at is not None and time.monotonic() - failed_at < self.retry_cooldown:
            raise BackendError(f"{self.name} store unavailable (recent connection failure)")

    @property
    def engine(self) -> Engine:
        engine = self._engine
        if engine is not None:
            return engine
        self._check_cooldown()
        with self._init_lock:
            if self._engine is None:
                self._check_cooldown()
                engine = self._create_engine()
                try:
                    self._seed_demo_table(engine)
                except Exception:
                    engine.dispose()
                    self._failed_at = time.monotonic()
                    raise
                self._failed_at = None
                self._engine = engine
                logger.info("store_ready", extra={"store": self.name})
        return self._engine

    def _create_engine(self) -> Engine:
        raise NotImplementedError

    def _seed_demo_table(self, engine: Engine) -> None:
        if inspect(engine).has_table(DEMO_TABLE):
            return
        with engine.begin() as conn:
            conn.execute(text(self.demo_ddl))
            conn.execute(
                text(f"INSERT INTO {DEMO_TABLE} (name, value, category) VALUES (:name, :value, :category)"),
                DEMO_ROWS,
            )
        logger.info("demo_table_seeded", extra={"store": self.name, "table": DEMO_TABLE})

    def dispose(self) -> None:
        with self._init_lock:
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None

    # -------------------------
    # Capability surface
    # -------------------------
    def query(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            if params:
                return _rows(conn.execute(text(sql), params))
            # generated SQL runs as-is: ":word" and "%" inside literals stay literal
            return _rows(conn.exec_driver_sql(sql, execution_options={"no_parameters": True}))

    def schema(self, table: Optional[str] = None) -> List[SchemaColumn]:
        raise NotImplementedError

    def table_columns(self, table: str) -> List[SchemaColumn]:
        return self.schema(table)

    def execute_ddl(self, stmt: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(text(stmt))

    def batch_insert(self, table: str, columns: Sequence[str], rows: Sequence[Dict[str, Any]]) -> int:
        """Insert all rows in one transaction; any failure rolls the whole batch back."""
        if not rows:
            return 0
        col_sql = ", ".join(quote_ident(c) for c in columns)
        bind_sql = ", ".join(f":p{i}" for i in range(len(columns)))
        stmt = text(f"INSERT INTO {quote_ident(table)} ({col_sql}) VALUES ({bind_sql})")
        params = [{f"p{i}": r.get(c, "") for i, c in enumerate(columns)} for r in rows]
        with self.engine.begin() as conn:
            conn.execute(stmt, params)
        return len(params)


class PrimaryStore(BackendStore):
    """Server-side relational store addressed by a connection string (PostgreSQL)."""

    name = "primary"
    dialect = "postgresql"
    demo_ddl = f"""
        CREATE TABLE {DEMO_TABLE} (
            id SERIAL PRIMARY KEY,
            name TEXT,
            value INTEGER,
            category TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """

    _SCHEMA_SQL = (
        "SELECT table_name, column_name, data_type, is_nullable "
        "FROM information_schema.columns "
        "WHERE table_schema = 'public'{table_filter} "
        "ORDER BY table_name, ordinal_position"
    )

    def __init__(self, url: str) -> None:
        super().__init__()
        self.url = (url or "").strip()

    def _create_engine(self) -> Engine:
        if not self.url:
            raise BackendError("Primary store is not configured (set PRIMARY_DATABASE_URL).")
        return create_engine(self.url, pool_pre_ping=True)

    def schema(self, table: Optional[str] = None) -> List[SchemaColumn]:
        if table:
            rows = self.query(self._SCHEMA_SQL.format(table_filter=" AND table_name = :table"), {"table": table})
        else:
            rows = self.query(self._SCHEMA_SQL.format(table_filter=""))
        return [
            SchemaColumn(
                table_name=r["table_name"],
                column_name=r["column_name"],
                data_type=r["data_type"],
                is_nullable=r["is_nullable"],
            )
            for r in rows
        ]


class EmbeddedStore(BackendStore):
    """Local SQLite file. Fallback for every operation and home of dataset tables."""

    name = "embedded"
    dialect = "sqlite"
    demo_ddl = f"""
        CREATE TABLE {DEMO_TABLE} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT,
            value INTEGER,
            category TEXT,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
    """

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = str(path)

    def _create_engine(self) -> Engine:
        Path(self.path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        return create_engine(f"sqlite:///{self.path}")

    def _table_names(self) -> List[str]:
        rows = self.query(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        names = []
        for r in rows:
            if _IDENT_RE.match(r["name"] or ""):
                names.append(r["name"])
            else:
                logger.warning("skipping_unsanitized_table", extra={"table": r["name"]})
        return names

    def table_columns(self, table: str) -> List[SchemaColumn]:
        rows = self.query(f"PRAGMA table_info({quote_ident(table)})")
        return [
            SchemaColumn(
                table_name=table,
                column_name=r["name"],
                data_type=r["type"] or "TEXT",
                is_nullable="YES" if int(r["notnull"] or 0) == 0 else "NO",
            )
            for r in rows
        ]

    def schema(self, table: Optional[str] = None) -> List[SchemaColumn]:
        names = self._table_names()
        if table:
            names = [n for n in names if n == table]
        out: List[SchemaColumn] = []
        for name in names:
            out.extend(self.table_columns(name))
        return out
