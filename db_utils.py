"""Transaction and resilience helpers for the SQLAlchemy session."""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Callable, Iterator, List, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app_logging import get_logger
from errors import ConflictError

T = TypeVar("T")

_logger = get_logger("attendance.db")


@contextmanager
def atomic(session: Session, conflict_detail: str = "Conflicting concurrent write") -> Iterator[Session]:
    """Run the enclosed block as one unit of work.

    Commits when the block finishes and rolls back on any exception. A
    unique-constraint violation, whether raised inside the block or at
    commit, surfaces as :class:`ConflictError` with ``conflict_detail``.
    """

    try:
        yield session
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        _logger.info("unique constraint violated", extra={"error": str(exc.orig)})
        raise ConflictError(conflict_detail) from exc
    except BaseException:
        session.rollback()
        raise


def backoff_delays(attempts: int, base_delay: float, max_total_delay: float) -> List[float]:
    """Sleeps between ``attempts`` tries: doubling, capped so their sum stays within ``max_total_delay``."""

    delays: List[float] = []
    budget = max_total_delay
    for attempt in range(attempts - 1):
        delay = min(base_delay * 2 ** attempt, budget)
        if delay <= 0:
            break
        delays.append(delay)
        budget -= delay
    return delays


def retry_with_backoff(
    func: Callable[[], T],
    attempts: int = 3,
    base_delay: float = 0.1,
    max_total_delay: float = 2.0,
) -> T:
    """Call ``func`` until it succeeds, sleeping per :func:`backoff_delays` between tries.

    Used for start-up work such as table creation. The last failure is
    re-raised once the delays are used up.
    """

    delays = backoff_delays(attempts, base_delay, max_total_delay)
    for attempt, delay in enumerate(delays, start=1):
        try:
            return func()
        except SQLAlchemyError as exc:
            _logger.warning("transient database failure", extra={"attempt": attempt, "error": str(exc)})
            time.sleep(delay)
    return func()


__all__ = ["atomic", "backoff_delays", "retry_with_backoff"]
