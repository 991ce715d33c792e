"""Language-model stages: question → SQL, SQL explanation, script synthesis.

Model replies are free text. Everything provider-specific stops at
``parse_generation_reply`` / ``strip_code_fences``; downstream stages only see
plain SQL strings.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate
from langchain_core.runnables import Runnable
from langchain_google_genai import ChatGoogleGenerativeAI
from pydantic import BaseModel, ValidationError

from errors import ModelError
from infra import safe_error
from metrics import LLM_LATENCY_SECONDS
from stores import SchemaColumn

logger = logging.getLogger("copilot.llm")

DIALECTS = ("postgresql", "sqlite")

_SQL_START_RE = re.compile(
    r"^[ \t]*(?:SELECT\b|WITH\s+(?:RECURSIVE\s+)?\w+\s*(?:\([^)]*\)\s*)?AS\s*\(|(?:INSERT|UPDATE|DELETE|DROP|ALTER|TRUNCATE|CREATE)\b).*",
    flags=re.IGNORECASE | re.DOTALL | re.MULTILINE,
)
_LABEL_RE = re.compile(r"^[ \t]*(?:SQL\s*Query|SQLQuery|PostgreSQL|SQLite|SQL)\s*:\s*", flags=re.IGNORECASE | re.MULTILINE)


def build_llm(settings) -> Optional[ChatGoogleGenerativeAI]:
    """Gemini chat model, or None when no credential is configured."""
    if not settings.llm_configured:
        return None
    return ChatGoogleGenerativeAI(
        model=settings.gemini_model,
        temperature=0,
        google_api_key=settings.google_api_key,
    )


# ------------------------------------------------------------
# Reply parsing
# ------------------------------------------------------------
class GeneratedSQL(BaseModel):
    sql: str = ""
    explanation: str = ""


@dataclass
class GenerationResult:
    sql: str = ""
    explanation: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return bool(self.sql) and not self.error


def strip_code_fences(text_: str) -> str:
    t = (text_ or "").strip()
    m = re.search(r"```[\w+\-]*[ \t]*\n?(.*?)```", t, flags=re.DOTALL)
    if m:
        return m.group(1).strip()
    # unterminated fence
    return re.sub(r"^```[\w+\-]*\s*|\s*```$", "", t).strip()


def clean_sql_query(text_: str) -> str:
    text_ = _LABEL_RE.sub("", strip_code_fences(text_))
    # SQL starts at the beginning of a line; write keywords are kept so the validator can reject them visibly
    m = _SQL_START_RE.search(text_)
    if m:
        text_ = m.group(0)
    return text_.strip()


def parse_generation_reply(raw: str) -> GeneratedSQL:
    """Parse a model reply into SQL + explanation.

    Expected shape is a JSON object ``{"sql": ..., "explanation": ...}``,
    optionally fenced. Anything else is treated as bare SQL.
    """
    body = strip_code_fences(raw)
    start, end = body.find("{"), body.rfind("}")
    if start != -1 and end > start:
        try:
            data = json.loads(body[start:end + 1])
            parsed = GeneratedSQL.model_validate(data)
            return GeneratedSQL(sql=clean_sql_query(parsed.sql), explanation=parsed.explanation.strip())
        except (ValueError, ValidationError):
            pass
    if not _SQL_START_RE.search(_LABEL_RE.sub("", body)):
        # prose only, e.g. a refusal
        return GeneratedSQL(sql="", explanation=body)
    return GeneratedSQL(sql=clean_sql_query(body))


def format_schema(columns: Sequence[SchemaColumn]) -> str:
    tables: Dict[str, List[str]] = {}
    for c in columns:
        null = "NULL" if str(c.is_nullable).upper() == "YES" else "NOT NULL"
        tables.setdefault(c.table_name, []).append(f"{c.column_name} ({c.data_type}, {null})")
    if not tables:
        return "(no tables available)"
    return "\n".join(f"Table {t}: {', '.join(cols)}" for t, cols in tables.items())


# ------------------------------------------------------------
# Prompts
# ------------------------------------------------------------
generation_prompt = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "You are a {dialect} expert. Convert the user's question into ONE valid {dialect} SQL query.\n\n"
            "Rules (STRICT):\n"
            "- ONLY generate a single SELECT (or WITH ... SELECT) statement\n"
            "- Never generate INSERT/UPDATE/DELETE or DDL (CREATE/ALTER/DROP/TRUNCATE)\n"
            "- Use table/column names exactly as listed in the schema; quote them with double quotes when needed\n"
            "- Prefer explicit columns; avoid SELECT * unless asked\n"
            "- Apply LIMIT 100 unless the user asks for all rows or an aggregate\n\n"
            "Schema:\n{schema}\n\n"
            'Return ONLY a JSON object: {{"sql": "<the query>", "explanation": "<one or two plain sentences>"}}. '
            "No markdown.",
        ),
        ("human", "{question}"),
    ]
)

explain_prompt = ChatPromptTemplate.from_messages(
    [
        ("system", "Explain in one to three plain sentences what the following SQL query returns. No markdown."),
        ("human", "{sql}"),
    ]
)

script_prompt = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "Write a short standalone Python script that connects to the SQLite database file '{db_path}' "
            "with the sqlite3 module, runs the given SQL against table {table} and prints the first rows. "
            "Return ONLY the code.",
        ),
        ("human", "{sql}"),
    ]
)


def _invoke(llm: Optional[Runnable], prompt: ChatPromptTemplate, purpose: str, inputs: Dict[str, Any]) -> str:
    if llm is None:
        raise ModelError("Language model is not configured (set GOOGLE_API_KEY).")
    chain = prompt | llm | StrOutputParser()
    t0 = time.time()
    try:
        return chain.invoke(inputs) or ""
    except Exception as e:
        raise ModelError(f"{purpose} call failed: {safe_error(str(e))}") from e
    finally:
        LLM_LATENCY_SECONDS.labels(purpose=purpose).observe(max(0.0, time.time() - t0))


# ------------------------------------------------------------
# Question → SQL
# ------------------------------------------------------------
class SQLGenerator:
    def __init__(self, llm: Optional[Runnable]) -> None:
        self.llm = llm

    def generate(self, question: str, schema: Sequence[SchemaColumn], dialect: str) -> GenerationResult:
        """Never raises: model failures come back as ``GenerationResult.error``."""
        dialect = dialect if dialect in DIALECTS else "postgresql"
        try:
            raw = _invoke(
                self.llm,
                generation_prompt,
                "generate",
                {"dialect": dialect, "schema": format_schema(schema), "question": question},
            )
        except ModelError as e:
            logger.warning("sql_generation_failed", extra={"reason": str(e)[:300]})
            return GenerationResult(error=str(e))

        parsed = parse_generation_reply(raw)
        if not parsed.sql:
            return GenerationResult(explanation=parsed.explanation, error="The model did not return a SQL query.")
        return GenerationResult(sql=parsed.sql, explanation=parsed.explanation)

    def explain(self, sql: str) -> str:
        try:
            return _invoke(self.llm, explain_prompt, "explain", {"sql": sql}).strip()
        except ModelError as e:
            logger.info("sql_explain_failed", extra={"reason": str(e)[:300]})
            return ""


# ------------------------------------------------------------
# Script synthesis (best-effort)
# ------------------------------------------------------------
class ScriptSynthesizer:
    def __init__(self, llm: Optional[Runnable], db_path: str) -> None:
        self.llm = llm
        self.db_path = db_path

    def synthesize(self, table: str, sql: str) -> str:
        script = ""
        if self.llm is not None:
            try:
                raw = _invoke(self.llm, script_prompt, "script", {"db_path": self.db_path, "table": table, "sql": sql})
                script = strip_code_fences(raw)
            except ModelError as e:
                logger.info("script_synthesis_failed", extra={"reason": str(e)[:300]})
        return script or self.template(sql)

    def template(self, sql: str) -> str:
        literal = (sql or "").replace("\\", "\\\\").replace('"""', '\\"\\"\\"')
        return "\n".join(
            [
                "# Auto-generated Python script",
                "import sqlite3",
                "import pandas as pd",
                "",
                f"conn = sqlite3.connect({self.db_path!r})",
                f'sql = """{literal}"""',
                "df = pd.read_sql_query(sql, conn)",
                "print(df.head(10))",
                "",
            ]
        )
