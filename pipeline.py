"""Ask / dataset-ask / upload / schema flows.

Generation, validation and execution are independent stages. A later stage
only accepts or rejects what an earlier one produced; outcomes downstream of
input validation are returned in an ``error`` field, not raised.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from backend import BackendRouter, SchemaCatalog
from errors import BackendError, BackendUnavailable, ExecutionError, InputError, IngestError, SafetyRejection
from guardrails import strip_sql, validate_sql
from infra import safe_error
from ingest import DatasetIngestor
from llm import ScriptSynthesizer, SQLGenerator, build_llm
from metrics import DB_LATENCY_SECONDS
from settings import Settings

logger = logging.getLogger("copilot.pipeline")

_DATASET_ID_RE = re.compile(r"^[A-Za-z0-9_]+$")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _require_text(value: Any, message: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InputError(message)
    return value.strip()


# ------------------------------------------------------------
# Query execution
# ------------------------------------------------------------
@dataclass
class QueryResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    error: Optional[str] = None


class QueryExecutor:
    def __init__(self, router: BackendRouter) -> None:
        self.router = router

    def run(self, sql: str, *, embedded_only: bool = False) -> List[Dict[str, Any]]:
        verdict = validate_sql(sql)
        if not verdict.valid:
            raise SafetyRejection(verdict.error)

        final_sql = strip_sql(sql)
        t0 = time.time()
        try:
            if embedded_only:
                return self.router.embedded.query(final_sql)
            return self.router.run_query(final_sql)
        except (BackendUnavailable, BackendError, SQLAlchemyError) as e:
            raise ExecutionError(f"SQL execution failed: {safe_error(str(e))}") from e
        finally:
            DB_LATENCY_SECONDS.observe(max(0.0, time.time() - t0))

    def execute(self, sql: str, *, preview: Optional[int] = None, embedded_only: bool = False) -> QueryResult:
        try:
            rows = self.run(sql, embedded_only=embedded_only)
        except (SafetyRejection, ExecutionError) as e:
            logger.info("query_not_executed", extra={"reason": str(e)[:300]})
            return QueryResult(error=str(e))
        total = len(rows)
        if preview is not None:
            rows = rows[:preview]
        return QueryResult(rows=rows, row_count=total)


# ------------------------------------------------------------
# Service
# ------------------------------------------------------------
class CopilotService:
    def __init__(self, settings: Settings, router: BackendRouter, llm=None) -> None:
        self.settings = settings
        self.router = router
        self.catalog = SchemaCatalog(router)
        self.ingestor = DatasetIngestor(
            router.embedded,
            batch_size=settings.ingest_batch_size,
            sample_rows=settings.sample_rows,
        )
        self.generator = SQLGenerator(llm)
        self.executor = QueryExecutor(router)
        self.synthesizer = ScriptSynthesizer(llm, settings.embedded_db_path)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CopilotService":
        return cls(settings, BackendRouter.from_settings(settings), build_llm(settings))

    def ask(self, question: Any, generate_only: bool = False) -> Dict[str, Any]:
        question = _require_text(question, "Question is required")
        out: Dict[str, Any] = {
            "question": question,
            "sql": "",
            "explanation": "",
            "executed": False,
            "timestamp": _now_iso(),
        }

        try:
            snapshot = self.catalog.snapshot()
        except BackendUnavailable as e:
            out["error"] = safe_error(str(e))
            return out

        gen = self.generator.generate(question, snapshot.columns, snapshot.dialect)
        out["explanation"] = gen.explanation
        if not gen.ok:
            out["error"] = gen.error or "Failed to generate SQL"
            return out
        out["sql"] = gen.sql

        if generate_only:
            out["explanation"] = gen.explanation or self.generator.explain(gen.sql)
            return out

        verdict = validate_sql(gen.sql)
        if not verdict.valid:
            out["error"] = verdict.error
            return out

        result = self.executor.execute(gen.sql)
        out["explanation"] = gen.explanation or self.generator.explain(gen.sql)
        if result.error:
            out["error"] = result.error
            return out

        out.update({"executed": True, "result": result.rows, "rowCount": result.row_count})
        return out

    def ask_dataset(self, dataset_id: Any, question: Any) -> Dict[str, Any]:
        if not (isinstance(dataset_id, str) and dataset_id.strip()) or not (isinstance(question, str) and question.strip()):
            raise InputError("datasetId and question are required")
        dataset_id, question = dataset_id.strip(), question.strip()
        if not _DATASET_ID_RE.match(dataset_id):
            raise InputError("No dataset found. Please upload a CSV first.")

        try:
            columns = self.catalog.dataset_columns(dataset_id)
        except (BackendError, SQLAlchemyError) as e:
            logger.info("dataset_lookup_failed", extra={"dataset_id": dataset_id, "reason": str(e)[:300]})
            columns = []
        if not columns:
            raise InputError("No dataset found. Please upload a CSV first.")

        out: Dict[str, Any] = {"datasetId": dataset_id, "tableName": dataset_id, "question": question, "sql": ""}

        gen = self.generator.generate(question, columns, self.router.embedded.dialect)
        if not gen.ok:
            out["error"] = gen.error or "Failed to generate SQL"
            return out
        out["sql"] = gen.sql

        verdict = validate_sql(gen.sql)
        if not verdict.valid:
            out["error"] = verdict.error
            return out

        result = self.executor.execute(gen.sql, preview=self.settings.preview_rows, embedded_only=True)
        if result.error:
            out["error"] = result.error
            return out

        out.update(
            {
                "python": self.synthesizer.synthesize(dataset_id, gen.sql),
                "explanation": gen.explanation or self.generator.explain(gen.sql),
                "preview": result.rows,
            }
        )
        return out

    def upload(self, filename: Optional[str], content: Any) -> Dict[str, Any]:
        if not isinstance(content, str) or not content.strip():
            raise InputError("No file provided")
        if filename is not None and not isinstance(filename, str):
            raise InputError("filename must be a string")
        filename = (filename or "upload.csv").strip() or "upload.csv"

        try:
            ds = self.ingestor.ingest(content, filename)
        except IngestError as e:
            out: Dict[str, Any] = {
                "filename": filename,
                "error": safe_error(str(e)),
                "rowsLoaded": e.rows_loaded,
                "timestamp": _now_iso(),
            }
            if e.dataset_id:
                out.update({"datasetId": e.dataset_id, "tableName": e.dataset_id})
            return out

        return {
            "filename": ds.filename,
            "rowCount": ds.row_count,
            "columnCount": ds.column_count,
            "columns": [c.to_dict() for c in ds.columns],
            "sanitizedColumns": ds.sanitized_columns,
            "analysis": ds.analysis,
            "sampleData": ds.sample_data,
            "datasetId": ds.dataset_id,
            "tableName": ds.dataset_id,
            "timestamp": _now_iso(),
        }

    def schema(self) -> Dict[str, Any]:
        columns = self.catalog.read()
        out: Dict[str, Any] = {
            "schema": [c.to_dict() for c in columns],
            "tableCount": len({c.table_name for c in columns}),
            "columnCount": len(columns),
            "timestamp": _now_iso(),
        }
        if not columns:
            out["error"] = "No database schema available"
        return out
