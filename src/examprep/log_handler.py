import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from typing import Optional

from .database import get_connection, init_db


class SQLiteHandler(logging.Handler):
    """Writes log records into the `logs` table of the service database."""

    def __init__(self, path: Optional[str] = None, level=logging.NOTSET):
        super().__init__(level)
        self.path = path
        self._ready = False

    def emit(self, record: logging.LogRecord):
        try:
            if not self._ready:
                init_db(self.path)
                self._ready = True
            with closing(get_connection(self.path)) as conn, conn:
                conn.execute(
                    "INSERT INTO logs (created_at, level, logger, message) VALUES (?, ?, ?, ?)",
                    (
                        datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
                        record.levelname,
                        record.name,
                        self.format(record),
                    ),
                )
        except sqlite3.Error:
            self.handleError(record)
