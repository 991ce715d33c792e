"""Static safety checks for generated SQL.

Generated SQL is untrusted input. Only a single read-only statement may run:
it has to start with SELECT/WITH and may not mention any keyword that writes
data or changes schema, anywhere in the text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from metrics import SAFETY_REJECTIONS_TOTAL

READ_KEYWORDS = ("SELECT", "WITH")

BLOCKED_KEYWORDS = (
    "INSERT", "UPDATE", "DELETE", "DROP", "ALTER", "TRUNCATE", "CREATE",
    "ATTACH", "DETACH", "PRAGMA", "VACUUM", "REINDEX", "GRANT", "REVOKE",
    "MERGE", "INTO", "COPY",
)

_BLOCKED_RE = re.compile(r"\b(" + "|".join(BLOCKED_KEYWORDS) + r")\b", re.IGNORECASE)
_LEADING_NOISE_RE = re.compile(r"^(?:\s+|--[^\n]*(?:\n|$)|/\*.*?\*/|\()*", re.DOTALL)


@dataclass
class SafetyVerdict:
    valid: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"valid": self.valid}
        if self.error:
            out["error"] = self.error
        return out


def strip_sql(sql: str) -> str:
    sql = (sql or "").strip()
    if sql.endswith(";"):
        sql = sql[:-1].strip()
    return sql


def split_sql_statements(sql: str) -> List[str]:
    """Split on semicolons outside quotes and comments (good enough for LLM SQL).

    Comments stay in the statement text; only their contents are opaque.
    """
    s = (sql or "").strip()
    if not s:
        return []
    stmts, buf = [], []
    quote: Optional[str] = None
    i, n = 0, len(s)
    while i < n:
        ch = s[i]
        if quote:
            if ch == quote:
                quote = None
            buf.append(ch)
            i += 1
            continue
        if s.startswith("--", i):
            end = s.find("\n", i)
            end = n if end == -1 else end
            buf.append(s[i:end])
            i = end
            continue
        if s.startswith("/*", i):
            end = s.find("*/", i + 2)
            end = n if end == -1 else end + 2
            buf.append(s[i:end])
            i = end
            continue
        if ch in ("'", '"'):
            quote = ch
        if ch == ";":
            stmt = "".join(buf).strip()
            if stmt:
                stmts.append(stmt)
            buf = []
        else:
            buf.append(ch)
        i += 1
    tail = "".join(buf).strip()
    if tail:
        stmts.append(tail)
    return stmts


def first_keyword(sql: str) -> str:
    s = _LEADING_NOISE_RE.sub("", sql or "", count=1)
    m = re.match(r"[A-Za-z]+", s)
    return m.group(0).upper() if m else ""


def sql_kind(sql: str) -> str:
    """SELECT, DML, DDL, OTHER"""
    first = first_keyword(strip_sql(sql))
    if first in READ_KEYWORDS:
        return "SELECT"
    if first in ("INSERT", "UPDATE", "DELETE", "MERGE"):
        return "DML"
    if first in ("CREATE", "ALTER", "DROP", "TRUNCATE", "GRANT", "REVOKE"):
        return "DDL"
    return "OTHER"


def _reject(reason: str) -> SafetyVerdict:
    SAFETY_REJECTIONS_TOTAL.inc()
    return SafetyVerdict(valid=False, error=reason)


def validate_sql(sql: str) -> SafetyVerdict:
    """Accept only a single, read-only (SELECT-shaped) statement."""
    if not (sql or "").strip():
        return _reject("Empty SQL is not allowed.")

    statements = split_sql_statements(sql)
    if len(statements) != 1:
        return _reject("Multi-statement SQL is not allowed. Submit a single SELECT statement.")

    if sql_kind(statements[0]) != "SELECT":
        return _reject("Only SELECT queries are allowed.")

    m = _BLOCKED_RE.search(sql)
    if m:
        return _reject(f"Query contains a forbidden keyword: {m.group(1).upper()}. Only read-only queries are allowed.")

    return SafetyVerdict(valid=True)
