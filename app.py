from __future__ import annotations

import os
import time
from typing import Optional
from uuid import uuid4

from flask import Blueprint, Flask, current_app, g, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from errors import BackendUnavailable, InputError
from infra import configure_logging, safe_error
from metrics import API_LATENCY_SECONDS, API_REQUESTS_TOTAL
from pipeline import CopilotService
from settings import Settings

limiter = Limiter(get_remote_address)
api = Blueprint("api", __name__)

CORS_RESOURCES = {
    r"/ask": {"origins": "*", "methods": ["POST", "OPTIONS"]},
    r"/csv/ask": {"origins": "*", "methods": ["POST", "OPTIONS"]},
    r"/upload": {"origins": "*", "methods": ["POST", "OPTIONS"]},
    r"/schema": {"origins": "*", "methods": ["GET", "OPTIONS"]},
}


def _service() -> CopilotService:
    return current_app.extensions["copilot"]


def _log():
    return current_app.extensions["copilot_log"]


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InputError("Request body must be a JSON object")
    return data


def _flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return value is True or value == 1


# ------------------------------------------------------------
# Discovery endpoints
# ------------------------------------------------------------
@api.route("/", methods=["GET"])
@limiter.exempt
def home():
    svc = _service()
    return jsonify(
        {
            "name": "SQL Copilot",
            "status": "running",
            "endpoints": {
                "POST /ask": {"question": "How many items per category?", "generateOnly": False},
                "POST /upload": "multipart 'file' or JSON {filename, content}",
                "POST /csv/ask": {"datasetId": "csv_...", "question": "Average age?"},
                "GET /schema": None,
            },
            "features": {
                "primary_configured": bool(svc.settings.primary_database_url),
                "llm_configured": svc.settings.llm_configured,
            },
        }
    )


@api.route("/health", methods=["GET"])
@limiter.exempt
def health():
    return jsonify({"status": "ok"})


@api.route("/metrics", methods=["GET"])
@limiter.exempt
def metrics():
    return generate_latest(), 200, {"Content-Type": CONTENT_TYPE_LATEST}


# ------------------------------------------------------------
# Main API
# ------------------------------------------------------------
@api.route("/schema", methods=["GET"])
@limiter.exempt
def schema():
    try:
        return jsonify(_service().schema())
    except BackendUnavailable as e:
        _log().error("schema_unavailable", extra={"request_id": getattr(g, "request_id", "")})
        return jsonify({"error": safe_error(str(e))}), 503
    except Exception:
        _log().exception("schema_failed", extra={"request_id": getattr(g, "request_id", "")})
        return jsonify({"error": "Failed to retrieve schema"}), 500


@api.route("/ask", methods=["POST"])
@limiter.limit(lambda: current_app.config["ASK_RATE_LIMIT"])
def ask():
    try:
        data = _json_body()
        generate_only = _flag(data.get("generateOnly"))
        return jsonify(_service().ask(data.get("question"), generate_only=generate_only))
    except InputError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        _log().exception("ask_failed", extra={"request_id": getattr(g, "request_id", "")})
        return jsonify({"error": "Internal error"}), 500


@api.route("/csv/ask", methods=["POST"])
@limiter.limit(lambda: current_app.config["ASK_RATE_LIMIT"])
def csv_ask():
    try:
        data = _json_body()
        return jsonify(_service().ask_dataset(data.get("datasetId"), data.get("question")))
    except InputError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        _log().exception("csv_ask_failed", extra={"request_id": getattr(g, "request_id", "")})
        return jsonify({"error": "CSV ask failed"}), 500


@api.route("/upload", methods=["POST"])
@limiter.limit(lambda: current_app.config["UPLOAD_RATE_LIMIT"])
def upload():
    try:
        file = request.files.get("file")
        if file is not None:
            filename = file.filename
            content = file.read().decode("utf-8", errors="replace")
        else:
            data = _json_body()
            filename = data.get("filename")
            content = data.get("content")
        return jsonify(_service().upload(filename, content))
    except InputError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        _log().exception("upload_failed", extra={"request_id": getattr(g, "request_id", "")})
        return jsonify({"error": "Upload failed"}), 500


# ------------------------------------------------------------
# Request lifecycle: request id + security headers + structured logs + metrics
# ------------------------------------------------------------
def _before_request():
    g.request_id = (request.headers.get("X-Request-ID") or str(uuid4())).strip()
    g.start_time = time.time()


def _after_request(resp):
    resp.headers["X-Request-ID"] = getattr(g, "request_id", "")
    resp.headers["X-Content-Type-Options"] = "nosniff"
    resp.headers["X-Frame-Options"] = "DENY"
    resp.headers["Referrer-Policy"] = "no-referrer"

    latency_s = max(0.0, time.time() - getattr(g, "start_time", time.time()))
    path = request.url_rule.rule if request.url_rule else "unmatched"
    API_REQUESTS_TOTAL.labels(path=path, method=request.method, status=str(resp.status_code)).inc()
    API_LATENCY_SECONDS.labels(path=path).observe(latency_s)

    _log().info(
        "request",
        extra={
            "request_id": getattr(g, "request_id", ""),
            "path": request.path,
            "method": request.method,
            "status": resp.status_code,
            "latency_ms": int(latency_s * 1000),
        },
    )
    return resp


# ------------------------------------------------------------
# App factory
# ------------------------------------------------------------
def create_app(settings: Optional[Settings] = None, service: Optional[CopilotService] = None) -> Flask:
    settings = settings or Settings.from_env()

    app = Flask(__name__)
    app.config.update(
        MAX_CONTENT_LENGTH=settings.max_content_length,
        RATELIMIT_ENABLED=settings.rate_limit_enabled,
        RATELIMIT_DEFAULT=settings.rate_limit_default,
        RATELIMIT_STORAGE_URI=settings.rate_limit_storage_uri,
        ASK_RATE_LIMIT=settings.ask_rate_limit,
        UPLOAD_RATE_LIMIT=settings.upload_rate_limit,
    )

    app.extensions["copilot_log"] = configure_logging(settings.log_level)
    app.extensions["copilot"] = service or CopilotService.from_settings(settings)

    CORS(app, resources=CORS_RESOURCES, allow_headers=["Content-Type"], send_wildcard=True)
    limiter.init_app(app)

    app.before_request(_before_request)
    app.after_request(_after_request)
    app.register_blueprint(api)
    return app


app = create_app()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=os.getenv("FLASK_DEBUG", "0") == "1")
