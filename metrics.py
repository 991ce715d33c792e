from __future__ import annotations

from prometheus_client import Counter, Histogram

# Labels kept small to avoid cardinality explosions
API_REQUESTS_TOTAL = Counter(
    "copilot_api_requests_total",
    "Total API requests",
    ["path", "method", "status"],
)

API_LATENCY_SECONDS = Histogram(
    "copilot_api_latency_seconds",
    "API request latency (seconds)",
    ["path"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 3, 5, 8, 13, 21),
)

DB_LATENCY_SECONDS = Histogram(
    "copilot_db_latency_seconds",
    "Query execution latency (seconds)",
    buckets=(0.01, 0.02, 0.05, 0.1, 0.2, 0.35, 0.5, 0.8, 1.3, 2.1, 3.4, 5.5),
)

LLM_LATENCY_SECONDS = Histogram(
    "copilot_llm_latency_seconds",
    "LLM call latency (seconds)",
    ["purpose"],  # generate | explain | script
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 3, 5, 8, 13, 21),
)

BACKEND_FALLBACKS_TOTAL = Counter(
    "copilot_backend_fallbacks_total",
    "Operations that fell back from the primary to the embedded store",
    ["operation"],
)

SAFETY_REJECTIONS_TOTAL = Counter(
    "copilot_safety_rejections_total",
    "Generated SQL rejected by the safety validator",
)

INGESTED_ROWS_TOTAL = Counter(
    "copilot_ingested_rows_total",
    "Rows committed into dataset tables",
)
