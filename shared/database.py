# shared/database.py

import copy
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional, Protocol

from shared.errors import StorageError
from shared.models import Credential, ScheduledMessage
from shared.utils import parse_send_at, utcnow

logger = logging.getLogger(__name__)

# Global lock for SQLite (request handlers and the dispatcher share the file)
_db_lock = threading.RLock()


class MessageStore(Protocol):
    def load(self) -> List[ScheduledMessage]: ...

    def save(self, messages: List[ScheduledMessage]) -> None: ...


class CredentialStore(Protocol):
    def load(self) -> Optional[Credential]: ...

    def save(self, credential: Credential) -> None: ...


@contextmanager
def get_db_connection(path: str) -> Iterator[sqlite3.Connection]:
    """Context manager for a serialized SQLite connection.

    Any sqlite3.Error raised inside the block surfaces as StorageError.
    """
    with _db_lock:
        try:
            conn = sqlite3.connect(path, check_same_thread=False, timeout=20)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {path}: {e}") from e
        try:
            conn.execute('PRAGMA busy_timeout = 20000;')
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Database error: {e}") from e
        finally:
            conn.close()


def init_db(path: str):
    """Creates the queue and credential tables if needed."""
    with get_db_connection(path) as conn:
        conn.execute('PRAGMA journal_mode=WAL;')
        conn.execute('''
            CREATE TABLE IF NOT EXISTS scheduled_messages (
                position INTEGER PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                channel TEXT NOT NULL,
                text TEXT NOT NULL,
                send_at TEXT NOT NULL,
                sent BOOLEAN NOT NULL DEFAULT 0
            )
        ''')
        conn.execute('''
            CREATE TABLE IF NOT EXISTS slack_credential (
                slot INTEGER PRIMARY KEY CHECK (slot = 1),
                access_token TEXT NOT NULL,
                refresh_token TEXT,
                team TEXT,
                authed_user TEXT,
                updated_at TEXT NOT NULL
            )
        ''')
        conn.commit()
        logger.info(f"Database initialized at {path}")


class SqliteMessageStore:
    """Scheduled messages persisted as one ordered snapshot."""

    def __init__(self, path: str):
        self.path = path
        self._initialized = False

    def _ensure_schema(self):
        if not self._initialized:
            init_db(self.path)
            self._initialized = True

    def load(self) -> List[ScheduledMessage]:
        self._ensure_schema()
        with get_db_connection(self.path) as conn:
            cursor = conn.execute('''
                SELECT id, channel, text, send_at, sent
                FROM scheduled_messages
                ORDER BY position
            ''')
            rows = cursor.fetchall()
        logger.debug(f"Loaded {len(rows)} scheduled messages")
        return [
            ScheduledMessage(
                id=row[0],
                channel=row[1],
                text=row[2],
                send_at=parse_send_at(row[3]),
                sent=bool(row[4]),
            )
            for row in rows
        ]

    def save(self, messages: List[ScheduledMessage]) -> None:
        self._ensure_schema()
        with get_db_connection(self.path) as conn:
            # `with conn` commits the delete and inserts as one transaction
            with conn:
                conn.execute("DELETE FROM scheduled_messages")
                conn.executemany('''
                    INSERT INTO scheduled_messages (position, id, channel, text, send_at, sent)
                    VALUES (?, ?, ?, ?, ?, ?)
                ''', [
                    (i, m.id, m.channel, m.text, m.send_at.isoformat(), m.sent)
                    for i, m in enumerate(messages)
                ])
        logger.debug(f"Saved {len(messages)} scheduled messages")


class SqliteCredentialStore:
    """Single-row holder of the current Slack credential."""

    def __init__(self, path: str):
        self.path = path
        self._initialized = False

    def _ensure_schema(self):
        if not self._initialized:
            init_db(self.path)
            self._initialized = True

    def load(self) -> Optional[Credential]:
        self._ensure_schema()
        with get_db_connection(self.path) as conn:
            row = conn.execute('''
                SELECT access_token, refresh_token, team, authed_user
                FROM slack_credential
                WHERE slot = 1
            ''').fetchone()
        if not row:
            return None
        return Credential(
            access_token=row[0],
            refresh_token=row[1],
            team=json.loads(row[2]) if row[2] else None,
            authed_user=json.loads(row[3]) if row[3] else None,
        )

    def save(self, credential: Credential) -> None:
        self._ensure_schema()
        updated_at = utcnow().isoformat()
        with get_db_connection(self.path) as conn:
            with conn:
                conn.execute('''
                    INSERT OR REPLACE INTO slack_credential
                    (slot, access_token, refresh_token, team, authed_user, updated_at)
                    VALUES (1, ?, ?, ?, ?, ?)
                ''', (
                    credential.access_token,
                    credential.refresh_token,
                    json.dumps(credential.team) if credential.team is not None else None,
                    json.dumps(credential.authed_user) if credential.authed_user is not None else None,
                    updated_at,
                ))
        logger.info("Slack credential stored")


class InMemoryMessageStore:
    def __init__(self, messages: Optional[List[ScheduledMessage]] = None):
        self._messages = copy.deepcopy(messages or [])
        self.save_count = 0

    def load(self) -> List[ScheduledMessage]:
        return copy.deepcopy(self._messages)

    def save(self, messages: List[ScheduledMessage]) -> None:
        self._messages = copy.deepcopy(list(messages))
        self.save_count += 1


class InMemoryCredentialStore:
    def __init__(self, credential: Optional[Credential] = None):
        self._credential = copy.deepcopy(credential)
        self.save_count = 0

    def load(self) -> Optional[Credential]:
        return copy.deepcopy(self._credential)

    def save(self, credential: Credential) -> None:
        self._credential = copy.deepcopy(credential)
        self.save_count += 1
