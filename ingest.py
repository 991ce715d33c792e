"""Dataset ingestion.

Uploaded delimited text becomes a new table in the embedded store:
parse → infer advisory column types → sanitize headers → CREATE TABLE (all
TEXT) → insert in fixed-size batches, each batch in its own transaction.

Batches are not wrapped in an enclosing transaction: a failure halfway leaves
earlier batches committed. The raised IngestError reports how many rows made
it in.
"""

from __future__ import annotations

import csv
import io
import logging
import math
import re
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from errors import InputError, IngestError
from metrics import INGESTED_ROWS_TOTAL
from stores import BackendStore, quote_ident

logger = logging.getLogger("copilot.ingest")

PLACEHOLDER_COLUMN = "col"
DATASET_PREFIX = "csv_"

_BASE36 = string.digits + string.ascii_lowercase
_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
)


@dataclass
class ParsedCSV:
    headers: List[str]
    rows: List[List[str]]

    def row_dicts(self, limit: Optional[int] = None) -> List[Dict[str, str]]:
        rows = self.rows if limit is None else self.rows[:limit]
        return [dict(zip(self.headers, r)) for r in rows]


@dataclass
class ColumnSummary:
    name: str
    type: str
    sample_values: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type, "sampleValues": list(self.sample_values)}


@dataclass
class Dataset:
    dataset_id: str
    filename: str
    sanitized_columns: List[str]
    columns: List[ColumnSummary]
    row_count: int
    sample_data: List[Dict[str, str]]

    @property
    def column_count(self) -> int:
        return len(self.columns)

    @property
    def analysis(self) -> str:
        top = ", ".join(c.name for c in self.columns[:3])
        return f"Detected {self.row_count} rows and {self.column_count} columns. Top columns: {top}."


# ------------------------------------------------------------
# Parsing
# ------------------------------------------------------------
def parse_csv_text(content: str) -> ParsedCSV:
    txt = (content or "").lstrip("\ufeff")
    records = [r for r in csv.reader(io.StringIO(txt)) if r]
    if not records:
        raise InputError("Empty CSV")

    headers = [h.strip() for h in records[0]]
    width = len(headers)
    rows = [(r + [""] * width)[:width] for r in records[1:]]
    return ParsedCSV(headers=headers, rows=rows)


# ------------------------------------------------------------
# Type inference (advisory only; storage is always TEXT)
# ------------------------------------------------------------
def _parse_number(value: str) -> Optional[float]:
    try:
        n = float(value)
    except ValueError:
        return None
    if math.isnan(n):
        return None
    return n


def _is_date(value: str) -> bool:
    s = value.strip()
    try:
        datetime.fromisoformat(s)
        return True
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            datetime.strptime(s, fmt)
            return True
        except ValueError:
            continue
    return False


def detect_type(value: Optional[str]) -> str:
    if value is None or value == "":
        return "string"
    n = _parse_number(value)
    if n is not None:
        return "integer" if math.isfinite(n) and n.is_integer() else "float"
    if _is_date(value):
        return "date"
    return "string"


def resolve_column_type(samples: Sequence[str]) -> str:
    types = {detect_type(s) for s in samples}
    for t in ("string", "float", "integer", "date"):
        if t in types:
            return t
    return "string"


def summarize_columns(parsed: ParsedCSV, sample_rows: int = 5) -> List[ColumnSummary]:
    out = []
    for i, header in enumerate(parsed.headers):
        samples = [r[i] for r in parsed.rows[:sample_rows]]
        out.append(ColumnSummary(name=header, type=resolve_column_type(samples), sample_values=samples))
    return out


# ------------------------------------------------------------
# Naming
# ------------------------------------------------------------
def sanitize_identifier(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_]", "_", name or "") or PLACEHOLDER_COLUMN


def sanitize_headers(headers: Sequence[str]) -> List[str]:
    """Sanitize headers order-preservingly; later duplicates get _2, _3, ..."""
    out: List[str] = []
    seen = set()
    for h in headers:
        base = sanitize_identifier(h)
        name, n = base, 1
        while name.lower() in seen:
            n += 1
            name = f"{base}_{n}"
        seen.add(name.lower())
        out.append(name)
    return out


def _base36(n: int) -> str:
    digits = []
    while n:
        n, r = divmod(n, 36)
        digits.append(_BASE36[r])
    return "".join(reversed(digits)) or "0"


def new_dataset_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(5))
    return f"{DATASET_PREFIX}{_base36(int(time.time() * 1000))}_{suffix}"


# ------------------------------------------------------------
# Ingestor
# ------------------------------------------------------------
class DatasetIngestor:
    def __init__(self, store: BackendStore, *, batch_size: int = 200, sample_rows: int = 5) -> None:
        self.store = store
        self.batch_size = max(1, int(batch_size))
        self.sample_rows = sample_rows

    def create_table(self, table: str, headers: Sequence[str]) -> List[str]:
        cols = sanitize_headers(headers)
        ddl = f"CREATE TABLE IF NOT EXISTS {quote_ident(table)} ({', '.join(f'{quote_ident(c)} TEXT' for c in cols)})"
        self.store.execute_ddl(ddl)
        return cols

    def bulk_load(self, table: str, columns: Sequence[str], rows: Sequence[Sequence[str]]) -> int:
        normalized = [dict(zip(columns, r)) for r in rows]
        loaded = 0
        for start in range(0, len(normalized), self.batch_size):
            batch = normalized[start:start + self.batch_size]
            try:
                loaded += self.store.batch_insert(table, columns, batch)
            except Exception as e:
                logger.error(
                    "ingest_batch_failed",
                    extra={"table": table, "batch_start": start, "rows_loaded": loaded, "reason": str(e)[:300]},
                )
                raise IngestError(
                    f"Failed to load rows {start + 1}-{start + len(batch)}: {e}",
                    dataset_id=table,
                    rows_loaded=loaded,
                ) from e
            INGESTED_ROWS_TOTAL.inc(len(batch))
        return loaded

    def ingest(self, content: str, filename: str = "upload.csv") -> Dataset:
        parsed = parse_csv_text(content)
        if not any(parsed.headers):
            raise InputError("CSV header row is empty")

        columns = summarize_columns(parsed, self.sample_rows)
        dataset_id = new_dataset_id()

        try:
            sanitized = self.create_table(dataset_id, parsed.headers)
        except Exception as e:
            raise IngestError(f"Failed to create table for {filename}: {e}") from e

        self.bulk_load(dataset_id, sanitized, parsed.rows)
        logger.info(
            "dataset_ingested",
            extra={"dataset_id": dataset_id, "upload_name": filename, "rows": len(parsed.rows), "columns": len(sanitized)},
        )
        return Dataset(
            dataset_id=dataset_id,
            filename=filename,
            sanitized_columns=sanitized,
            columns=columns,
            row_count=len(parsed.rows),
            sample_data=parsed.row_dicts(self.sample_rows),
        )
