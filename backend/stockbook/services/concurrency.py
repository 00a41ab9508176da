# Overview: Bounded retry for record-store writes that can hit lock or version conflicts.

from __future__ import annotations

import logging
import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 3


def configured_attempts() -> int:
    """Retry budget from STOCK_WRITE_ATTEMPTS, never below one attempt."""
    try:
        attempts = int(current_app.config.get("STOCK_WRITE_ATTEMPTS", DEFAULT_ATTEMPTS))
    except (TypeError, ValueError):
        attempts = DEFAULT_ATTEMPTS
    return max(1, attempts)


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). The session is rolled back between
    attempts, so func must redo all of its work.
    """
    if attempts is None:
        attempts = configured_attempts()

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            logger.warning(
                "Write conflict on attempt %d/%d, retrying: %s", attempt + 1, attempts, exc
            )
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
