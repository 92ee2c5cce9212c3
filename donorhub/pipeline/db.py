"""
Statement timeout helper shared by every stage.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session

from donorhub.models import db


@contextmanager
def statement_timeout(seconds: float, session: Session | None = None) -> Iterator[None]:
    """
    Bound every statement issued inside the block.

    PostgreSQL gets ``SET LOCAL statement_timeout`` for the surrounding
    transaction. SQLite has no server-side timeout, so a progress handler
    interrupts the running statement once the deadline has passed; the driver
    surfaces that as ``OperationalError: interrupted``.
    """

    session = session or db.session
    connection = session.connection()
    name = connection.dialect.name

    if name == "postgresql":
        connection.exec_driver_sql(f"SET LOCAL statement_timeout = {int(seconds * 1000)}")
        yield
        return

    if name == "sqlite":
        raw = connection.connection.dbapi_connection
        deadline = time.monotonic() + seconds

        def _check_deadline() -> int:
            return 1 if time.monotonic() > deadline else 0

        raw.set_progress_handler(_check_deadline, 10000)
        try:
            yield
        finally:
            raw.set_progress_handler(None, 0)
        return

    yield
