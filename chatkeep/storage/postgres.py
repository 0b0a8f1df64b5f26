from __future__ import annotations

import json
from typing import Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from chatkeep.logging import get_logger
from chatkeep.storage.common import deserialize_user, serialize_user
from chatkeep.storage.errors import ConstraintViolation, RecordMissing
from chatkeep.storage.models import User


class PostgresStore:
    """Postgres-backed user document store.

    Each user is one row: the digest is a real column so the unique index
    enforces one account per email, and the rest of the aggregate (ledgers
    included) lives in a JSONB document.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id TEXT PRIMARY KEY,
                    email_digest TEXT NOT NULL UNIQUE,
                    doc JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def insert_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email_digest, doc, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email_digest,
                        json.dumps(serialize_user(user)),
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email_digest"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def get_user_by_digest(self, email_digest: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc FROM app_user WHERE email_digest = %s", (email_digest,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def save_user(self, user: User) -> User:
        """Overwrite the whole document; concurrent writers race, last one wins."""
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    UPDATE app_user
                    SET email_digest = %s, doc = %s, updated_at = %s
                    WHERE id = %s
                    """,
                    (
                        user.email_digest,
                        json.dumps(serialize_user(user)),
                        user.updated_at,
                        user.id,
                    ),
                )
                if cur.rowcount == 0:
                    raise RecordMissing("user not found", {"user_id": user.id})
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email_digest"})
        return user

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        doc = row["doc"]
        if isinstance(doc, str):
            doc = json.loads(doc)
        return deserialize_user(doc)
