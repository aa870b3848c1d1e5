"""
Structured JSON Logging
========================
Configures Python's logging to emit JSON-structured log lines in
production and a human-readable format elsewhere.

Usage:
    from claimflow.core.logging import init_logging
    init_logging(app)

Each JSON log line contains:
  - timestamp (ISO-8601 UTC)
  - level
  - logger (module name)
  - message
  - request_id (when emitted while serving an HTTP request)

Uses stdlib ``logging`` with a custom ``Formatter``.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request

from claimflow.core.config import settings

_request_id: ContextVar[Optional[str]] = ContextVar("claimflow_request_id", default=None)


def current_request_id() -> Optional[str]:
    return _request_id.get()


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = current_request_id()
        if request_id:
            payload["request_id"] = request_id

        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging(*, level: Optional[str] = None, json_lines: Optional[bool] = None) -> None:
    """Install a single stdout handler on the root logger."""
    if level is None:
        level = settings.log_level
    if json_lines is None:
        json_lines = settings.log_json or settings.is_production

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicate output
    for handler in root.handlers[:]:
        root.handlers.remove(handler)

    handler = logging.StreamHandler(sys.stdout)
    if json_lines:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    root.addHandler(handler)


def init_logging(app: FastAPI, *, level: Optional[str] = None) -> None:
    """Configure logging and attach request-id middleware to *app*."""
    configure_logging(level=level)
    http_logger = logging.getLogger("claimflow.http")

    @app.middleware("http")
    async def _request_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        token = _request_id.set(request_id)
        try:
            http_logger.info("request_start %s %s", request.method, request.url.path)
            response = await call_next(request)
            http_logger.info(
                "request_end %s %s status=%d",
                request.method,
                request.url.path,
                response.status_code,
            )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            _request_id.reset(token)

    logging.getLogger("claimflow").info(
        "Structured logging initialised (env=%s, json=%s)",
        settings.app_env,
        settings.log_json or settings.is_production,
    )
