"""
Structured logging with structlog.

JSON output for batch/service runs, colored console output for local use.
Every entry carries the pipeline version and, when set, the request id and stage.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)

PIPELINE_VERSION = "0.1.0"


def add_pipeline_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add version, request id and stage to every log entry."""
    event_dict["version"] = PIPELINE_VERSION
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id
    stage = stage_var.get()
    if stage:
        event_dict.setdefault("stage", stage)
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def setup_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure stdlib logging + structlog.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_format: JSON lines if True, colored console output otherwise
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Model downloads are chatty.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("filelock").setLevel(logging.WARNING)

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_pipeline_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager binding a request id (and optionally a stage) for logging.

    Usage:
        with LogContext(request_id="abc123"):
            logger.info("pipeline_started")
    """

    def __init__(self, request_id: Optional[str] = None, stage: Optional[str] = None):
        self.request_id = request_id
        self.stage = stage
        self._request_token = None
        self._stage_token = None

    def __enter__(self):
        if self.request_id:
            self._request_token = request_id_var.set(self.request_id)
        if self.stage:
            self._stage_token = stage_var.set(self.stage)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._stage_token:
            stage_var.reset(self._stage_token)
        if self._request_token:
            request_id_var.reset(self._request_token)
        return False

    def set_stage(self, stage: str) -> None:
        if self._stage_token:
            stage_var.reset(self._stage_token)
        self._stage_token = stage_var.set(stage)
