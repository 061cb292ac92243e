from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.orm import Session


# Single writer for everything that reads occupancy and then writes assignments
# or asset status. Re-entrant so a lifecycle transition can call into
# allocation helpers that open the same boundary.
_ALLOCATION_LOCK = threading.RLock()
_STATE = threading.local()


@contextmanager
def allocation_transaction(db: Session) -> Iterator[Session]:
    with _ALLOCATION_LOCK:
        depth = getattr(_STATE, "depth", 0)
        if depth:
            _STATE.depth = depth + 1
            try:
                yield db
            finally:
                _STATE.depth = depth
            return

        _STATE.depth = 1
        try:
            db.expire_all()
            try:
                yield db
                db.commit()
            except Exception:
                db.rollback()
                raise
        finally:
            _STATE.depth = 0


@contextmanager
def write_transaction(db: Session) -> Iterator[Session]:
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
