from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import RefreshToken, User

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        secret_hash CHAR(64) NOT NULL,
        subject TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        rotated_at TIMESTAMPTZ,
        successor_id UUID REFERENCES refresh_token(id) ON DELETE SET NULL,
        client_ip VARCHAR(45),
        client_agent VARCHAR(500)
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS refresh_token_secret_hash_idx ON refresh_token (secret_hash)",
    "CREATE INDEX IF NOT EXISTS refresh_token_successor_idx ON refresh_token (successor_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_subject_idx ON refresh_token (subject)",
)

# Walks successor links forward from one row
_CHAIN_FORWARD_CTE = """
WITH RECURSIVE chain AS (
    SELECT id, successor_id, 0 AS depth FROM refresh_token WHERE id = %s
    UNION ALL
    SELECT t.id, t.successor_id, c.depth + 1
    FROM refresh_token t JOIN chain c ON t.id = c.successor_id
    WHERE c.depth < 10000
)
"""

# Rows whose entire forward chain expired before the cutoff; the purge set
_EXPIRED_CHAIN_CTE = """
WITH RECURSIVE chain AS (
    SELECT id AS start_id, id, successor_id, expires_at, 0 AS depth
    FROM refresh_token WHERE expires_at < %s
    UNION ALL
    SELECT c.start_id, t.id, t.successor_id, t.expires_at, c.depth + 1
    FROM refresh_token t JOIN chain c ON t.id = c.successor_id
    WHERE c.depth < 10000
),
expired AS (
    SELECT start_id AS id FROM chain GROUP BY start_id HAVING MAX(expires_at) < %s
)
"""


class PostgresStore:
    """Postgres-backed refresh-token and user store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the token tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            created_at=row["created_at"],
            is_active=row.get("is_active", True),
        )

    @staticmethod
    def _row_to_refresh_token(row: dict) -> RefreshToken:
        successor = row.get("successor_id")
        return RefreshToken(
            id=str(row["id"]),
            secret_hash=row["secret_hash"].strip(),
            subject=row["subject"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            rotated_at=row.get("rotated_at"),
            successor_id=str(successor) if successor else None,
            client_ip=row.get("client_ip"),
            client_agent=row.get("client_agent"),
        )

    # users
    def create_user(self, email: str) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO app_user (id, email) VALUES (gen_random_uuid(), %s) RETURNING *",
                    (email.strip().lower(),),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id::text = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id::text = %s", (user_id,))
            return result.rowcount > 0

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id::text = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # refresh tokens
    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, secret_hash, subject, issued_at, expires_at, client_ip, client_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.secret_hash,
                        token.subject,
                        token.issued_at,
                        token.expires_at,
                        token.client_ip,
                        token.client_agent,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token hash collision", {"field": "secret_hash"}
            )
        return token

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def get_refresh_token_by_hash(self, secret_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE secret_hash = %s", (secret_hash,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def mark_rotated(
        self, token_id: str, successor_id: str, rotated_at: datetime
    ) -> bool:
        """Single conditional update; exactly one concurrent caller sees rowcount 1."""
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET rotated_at = %s, successor_id = %s
                WHERE id = %s AND rotated_at IS NULL AND revoked_at IS NULL
                """,
                (rotated_at, successor_id, token_id),
            )
            return result.rowcount == 1

    def revoke_refresh_token(self, token_id: str, revoked_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_token SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL",
                (revoked_at, token_id),
            )
            return result.rowcount > 0

    def revoke_chain(self, token_id: str, revoked_at: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                _CHAIN_FORWARD_CTE
                + """
                UPDATE refresh_token SET revoked_at = %s
                WHERE id IN (SELECT id FROM chain) AND revoked_at IS NULL
                """,
                (token_id, revoked_at),
            )
            return result.rowcount

    def rotation_chain(self, token_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                WITH RECURSIVE back AS (
                    SELECT id, 0 AS depth FROM refresh_token WHERE id = %s
                    UNION ALL
                    SELECT t.id, b.depth + 1
                    FROM refresh_token t JOIN back b ON t.successor_id = b.id
                    WHERE b.depth < 10000
                ),
                root AS (SELECT id FROM back ORDER BY depth DESC LIMIT 1),
                fwd AS (
                    SELECT r.*, 0 AS depth FROM refresh_token r WHERE r.id = (SELECT id FROM root)
                    UNION ALL
                    SELECT t.*, f.depth + 1
                    FROM refresh_token t JOIN fwd f ON t.id = f.successor_id
                    WHERE f.depth < 10000
                )
                SELECT * FROM fwd ORDER BY depth
                """,
                (token_id,),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]

    def count_expired_refresh_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                _EXPIRED_CHAIN_CTE
                + "SELECT count(*) AS expired FROM refresh_token WHERE id IN (SELECT id FROM expired)",
                (before, before),
            ).fetchone()
        return int(row["expired"]) if row else 0

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                _EXPIRED_CHAIN_CTE
                + "DELETE FROM refresh_token WHERE id IN (SELECT id FROM expired)",
                (before, before),
            )
            deleted = result.rowcount
        self.logger.info("refresh_tokens_purged", deleted=deleted)
        return deleted
