# Structured logging with per-search correlation IDs

import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar(
    "correlation_id", default=None
)


def get_correlation_id() -> str:
    """Get or create correlation ID for the current context"""
    corr_id = correlation_id_ctx.get()
    if corr_id is None:
        corr_id = str(uuid.uuid4())
        correlation_id_ctx.set(corr_id)
    return corr_id


def set_correlation_id(corr_id: str) -> None:
    correlation_id_ctx.set(corr_id)


@contextmanager
def correlation_scope(corr_id: Optional[str] = None) -> Iterator[str]:
    """
    Bind a correlation ID for the duration of one search.

    A fresh UUID is used unless ``corr_id`` is given. The previous value is
    restored on exit, so sequential searches in one task never share an ID.
    """
    bound = corr_id or str(uuid.uuid4())
    token = correlation_id_ctx.set(bound)
    try:
        yield bound
    finally:
        correlation_id_ctx.reset(token)


def add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    corr_id = correlation_id_ctx.get()
    if corr_id:
        event_dict["correlation_id"] = corr_id
    return event_dict


def setup_logging(log_level: Optional[str] = None, stderr: Optional[bool] = None) -> None:
    """
    Configure structlog JSON output on top of stdlib logging.

    Args:
        log_level: Level name; defaults to ``LOG_LEVEL`` from the environment
        stderr: Write to stderr instead of stdout; defaults to
            ``RETRIEVAL_LOG_STDERR``
    """
    if log_level is None or stderr is None:
        from gruenerator_retrieval.shared.config import Settings

        settings = Settings()
        log_level = settings.log_level if log_level is None else log_level
        stderr = settings.log_stderr if stderr is None else stderr

    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr if stderr else sys.stdout,
        level=level,
    )
    # basicConfig is a no-op once handlers exist; the level must still apply
    logging.getLogger().setLevel(level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            add_correlation_id,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
