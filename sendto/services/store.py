import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


@dataclass
class CredentialRecord:
    device_id: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token: Optional[str] = None


class CredentialStore:
    """Durable per-account storage for the device id and its tokens.

    Token values are Fernet-encrypted at rest. A value that no longer
    decrypts (e.g. the server key was rotated) reads back as absent.
    """

    FIELDS = ("device_id", "refresh_token", "access_token")
    ENCRYPTED = ("refresh_token", "access_token")

    def __init__(self, db_path, fernet: Fernet):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._fernet = fernet
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """One transaction on a fresh connection, closed afterwards."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS account_credentials (
                    auth_id TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (auth_id, key)
                )
                """
            )

    def get(self, auth_id: str, key: str) -> Optional[str]:
        self._check_key(key)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM account_credentials WHERE auth_id = ? AND key = ?",
                (auth_id, key),
            ).fetchone()
        if row is None:
            return None
        return self._decode(auth_id, key, row["value"])

    def put(self, auth_id: str, key: str, value: str) -> None:
        self._check_key(key)
        stored = self._fernet.encrypt(value.encode()).decode() if key in self.ENCRYPTED else value
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO account_credentials (auth_id, key, value)
                VALUES (?, ?, ?)
                ON CONFLICT(auth_id, key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (auth_id, key, stored),
            )

    def load(self, auth_id: str) -> CredentialRecord:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT key, value FROM account_credentials WHERE auth_id = ?",
                (auth_id,),
            ).fetchall()
        record = CredentialRecord()
        for row in rows:
            if row["key"] in self.FIELDS:
                setattr(record, row["key"], self._decode(auth_id, row["key"], row["value"]))
        return record

    def delete(self, auth_id: str, key: str) -> None:
        self._check_key(key)
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM account_credentials WHERE auth_id = ? AND key = ?",
                (auth_id, key),
            )

    def delete_all(self, auth_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM account_credentials WHERE auth_id = ?", (auth_id,))

    def _decode(self, auth_id, key, value):
        if key not in self.ENCRYPTED:
            return value
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken:
            logger.warning("Stored %s for %s could not be decrypted; ignoring it", key, auth_id)
            return None

    def _check_key(self, key):
        if key not in self.FIELDS:
            raise ValueError(f"Unknown credential field: {key}")
