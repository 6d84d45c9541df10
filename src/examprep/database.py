import os
import sqlite3
from contextlib import closing
from typing import Optional

from .config import settings

SCHEMA = """
CREATE TABLE IF NOT EXISTS logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    level TEXT NOT NULL,
    logger TEXT NOT NULL,
    message TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS attempts (
    session_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    completed_at TEXT NOT NULL,
    payload TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_attempts_user_completed
    ON attempts (user_id, completed_at DESC);
"""


def get_db_path() -> str:
    return os.path.join(settings.DB_DIR, settings.DB_FILE)


def get_connection(path: Optional[str] = None) -> sqlite3.Connection:
    path = path or get_db_path()
    directory = os.path.dirname(path)
    if directory and not os.path.exists(directory):
        os.makedirs(directory)
    return sqlite3.connect(path, timeout=5)


def init_db(path: Optional[str] = None):
    with closing(get_connection(path)) as conn, conn:
        conn.executescript(SCHEMA)
