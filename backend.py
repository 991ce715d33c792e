from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from errors import BackendUnavailable
from metrics import BACKEND_FALLBACKS_TOTAL
from stores import BackendStore, EmbeddedStore, PrimaryStore, SchemaColumn

logger = logging.getLogger("copilot.backend")

T = TypeVar("T")


@dataclass
class SchemaSnapshot:
    columns: List[SchemaColumn] = field(default_factory=list)
    dialect: str = ""

    @property
    def table_names(self) -> List[str]:
        seen: Dict[str, None] = {}
        for c in self.columns:
            seen.setdefault(c.table_name, None)
        return list(seen)


class BackendRouter:
    """Primary-first dispatch with a single fallback to the embedded store.

    Nothing is remembered between calls: every operation starts on the primary
    store again.
    """

    def __init__(self, primary: BackendStore, embedded: BackendStore) -> None:
        self.primary = primary
        self.embedded = embedded

    @classmethod
    def from_settings(cls, settings) -> "BackendRouter":
        return cls(PrimaryStore(settings.primary_database_url), EmbeddedStore(settings.embedded_db_path))

    def _dispatch(self, operation: str, fn: Callable[[BackendStore], T]) -> Tuple[T, BackendStore]:
        try:
            return fn(self.primary), self.primary
        except Exception as e:
            BACKEND_FALLBACKS_TOTAL.labels(operation=operation).inc()
            logger.warning(
                "primary_failed_falling_back",
                extra={"operation": operation, "reason": str(e)[:300]},
            )

        try:
            return fn(self.embedded), self.embedded
        except Exception as e:
            logger.error("embedded_failed", extra={"operation": operation, "reason": str(e)[:300]})
            raise BackendUnavailable(f"{operation} failed on both stores: {e}") from e

    def run_query(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        rows, _ = self._dispatch("query", lambda s: s.query(sql, params))
        return rows

    def get_schema(self, filter_table: Optional[str] = None) -> List[SchemaColumn]:
        return self.describe_schema(filter_table).columns

    def describe_schema(self, filter_table: Optional[str] = None) -> SchemaSnapshot:
        cols, store = self._dispatch("schema", lambda s: s.schema(filter_table))
        return SchemaSnapshot(columns=cols, dialect=store.dialect)

    def run_ddl(self, stmt: str) -> None:
        self._dispatch("ddl", lambda s: s.execute_ddl(stmt))

    def run_batch_insert(self, table: str, columns: Sequence[str], rows: Sequence[Dict[str, Any]]) -> int:
        inserted, _ = self._dispatch("batch_insert", lambda s: s.batch_insert(table, columns, rows))
        return inserted


class SchemaCatalog:
    """Live (table, column, type, nullability) tuples. Never cached."""

    def __init__(self, router: BackendRouter) -> None:
        self.router = router

    def read(self, table: Optional[str] = None) -> List[SchemaColumn]:
        return self.router.get_schema(table)

    def snapshot(self, table: Optional[str] = None) -> SchemaSnapshot:
        return self.router.describe_schema(table)

    def dataset_columns(self, dataset_id: str) -> List[SchemaColumn]:
        """Columns of one dataset table.

        The routed catalog read usually answers from the primary store, which
        never holds dataset tables; an empty slice falls back to the embedded
        store's native per-table introspection.
        """
        try:
            cols = [c for c in self.read(dataset_id) if c.table_name == dataset_id]
        except BackendUnavailable:
            cols = []
        if cols:
            return cols
        return self.router.embedded.table_columns(dataset_id)
