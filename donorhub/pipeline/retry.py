"""
Bounded exponential backoff for database work.
"""

from __future__ import annotations

import time
from typing import Callable, TypeVar

from botocore.exceptions import ConnectionClosedError, ConnectTimeoutError, EndpointConnectionError, ReadTimeoutError
from flask import current_app, has_app_context
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from donorhub.models import db

from .errors import TransientPipelineError, truncate_error
from .metrics import record_batch_retry
from .settings import PipelineSettings

T = TypeVar("T")

_RETRYABLE = (
    TransientPipelineError,
    TimeoutError,
    ConnectionError,
    EndpointConnectionError,
    ConnectTimeoutError,
    ConnectionClosedError,
    ReadTimeoutError,
)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, _RETRYABLE):
        return True
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


def backoff_delay_ms(attempt: int, settings: PipelineSettings) -> int:
    """Delay before retrying after ``attempt`` (1-based) failed."""

    return min(settings.retry_base_ms * 2 ** (attempt - 1), settings.retry_max_ms)


def retry_with_backoff(
    fn: Callable[[], T],
    *,
    settings: PipelineSettings,
    label: str,
    session: Session | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``fn`` until it succeeds or ``settings.max_retries`` attempts fail.

    Only transient errors are retried; the session is rolled back before each
    new attempt so uncommitted work from the failed one is discarded. After the
    last attempt a ``TransientPipelineError`` is raised, chained to the cause.
    """

    session = session or db.session
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as exc:
            if not is_transient(exc):
                raise
            session.rollback()
            if attempt >= settings.max_retries:
                raise TransientPipelineError(
                    f"{label} failed after {attempt} attempts: {truncate_error(exc)}"
                ) from exc
            delay = backoff_delay_ms(attempt, settings)
            record_batch_retry(label.split(":", 1)[0])
            if has_app_context():
                current_app.logger.warning(
                    "%s failed (attempt %s/%s), retrying in %sms: %s",
                    label,
                    attempt,
                    settings.max_retries,
                    delay,
                    truncate_error(exc, 160),
                    extra={"pipeline_retry_label": label, "pipeline_retry_attempt": attempt},
                )
            if delay:
                sleep(delay / 1000.0)
