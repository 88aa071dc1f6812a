from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session


log = logging.getLogger(__name__)

T = TypeVar("T")

CERTIFICATE_NUMBER_CONSTRAINT = "certificate_number"


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit everything written inside the block, or nothing."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def is_certificate_number_conflict(exc: IntegrityError) -> bool:
    return CERTIFICATE_NUMBER_CONSTRAINT in str(getattr(exc, "orig", None) or exc)


def run_atomic(db: Session, work: Callable[[], T], *, retries: int = 0) -> T:
    """Run ``work`` as one unit of work.

    A certificate number collision means another transaction issued the same
    serial first; the whole unit is replayed so the serial is recomputed from
    fresh counts. Any other integrity error propagates.
    """
    attempt = 0
    while True:
        try:
            with atomic(db):
                return work()
        except IntegrityError as e:
            if attempt >= int(retries) or not is_certificate_number_conflict(e):
                raise
            attempt += 1
            log.warning("certificate number conflict, retrying unit of work (attempt %s/%s)", attempt, retries)
