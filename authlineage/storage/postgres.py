from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authlineage.logging import get_logger
from authlineage.storage.errors import ConstraintViolation, SchemaMissing
from authlineage.storage.models import TokenRecord, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        uuid UUID NOT NULL UNIQUE,
        email TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_lower_idx ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id BIGINT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id BIGSERIAL PRIMARY KEY,
        uuid UUID NOT NULL UNIQUE,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        version INTEGER NOT NULL DEFAULT 1,
        name TEXT,
        expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_user_idx ON auth_token (user_id)",
    "CREATE INDEX IF NOT EXISTS auth_token_expires_idx ON auth_token (expires_at) WHERE expires_at IS NOT NULL",
)

_REQUIRED_TABLES = ("app_user", "user_auth_credential", "auth_token")


class PostgresStore:
    """Postgres-backed user and token record store.

    Rotation relies on a conditional ``UPDATE ... WHERE version = %s`` so two
    requests racing on the same refresh token cannot both win.
    """

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _ensure_schema(self) -> None:
        """Create the auth tables and indexes when they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise SchemaMissing(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                ),
                {"tables": sorted(missing_tables)},
            )

    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> User:
        return User(
            id=int(row["id"]),
            uuid=str(row["uuid"]),
            email=row["email"],
            name=row.get("name") or "",
            is_admin=bool(row.get("is_admin", False)),
            email_verified_at=row.get("email_verified_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _token_record_from_row(row: dict[str, Any]) -> TokenRecord:
        return TokenRecord(
            id=int(row["id"]),
            uuid=str(row["uuid"]),
            user_id=int(row["user_id"]),
            version=int(row["version"]),
            name=row.get("name"),
            expires_at=row.get("expires_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def create_user(self, email: str, name: str, *, is_admin: bool = False) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (uuid, email, name, is_admin)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), email, name, is_admin),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return self._user_from_row(row)

    def _fetch_user(self, where: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM app_user WHERE {where}", (value,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: int) -> Optional[User]:
        return self._fetch_user("id = %s", user_id)

    def get_user_by_uuid(self, user_uuid: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_uuid))
        except ValueError:
            return None
        return self._fetch_user("uuid = %s", user_uuid)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("lower(email) = lower(%s)", email)

    def update_user_email(self, user_id: int, email: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET email = %s, email_verified_at = NULL, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (email, user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return self._user_from_row(row) if row else None

    def set_user_admin(self, user_id: int, is_admin: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_admin = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_admin, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_verified(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified_at = COALESCE(email_verified_at, now()), updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
                # Outstanding password-reset links are bound to updated_at
                conn.execute(
                    "UPDATE app_user SET updated_at = now() WHERE id = %s",
                    (user_id,),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            ) from exc

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # token records
    def create_token_record(
        self,
        user_id: int,
        *,
        version: int = 1,
        expiration_minutes: Optional[int] = None,
        name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TokenRecord:
        created_at = now or utcnow()
        expires_at = (
            created_at + timedelta(minutes=expiration_minutes)
            if expiration_minutes is not None
            else None
        )
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_token (uuid, user_id, version, name, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, version, name, expires_at, created_at),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "token owner does not exist", {"user_id": user_id}
            ) from exc
        return self._token_record_from_row(row)

    def get_token_record(self, user_uuid: str, record_uuid: str) -> Optional[TokenRecord]:
        try:
            uuid.UUID(str(user_uuid))
            uuid.UUID(str(record_uuid))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT t.* FROM auth_token t
                JOIN app_user u ON u.id = t.user_id
                WHERE u.uuid = %s AND t.uuid = %s
                """,
                (user_uuid, record_uuid),
            ).fetchone()
        return self._token_record_from_row(row) if row else None

    def advance_token_version(
        self, record_id: int, expected_version: int, expires_at: Optional[datetime]
    ) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_token
                SET version = version + 1, expires_at = %s
                WHERE id = %s AND version = %s
                RETURNING *
                """,
                (expires_at, record_id, expected_version),
            ).fetchone()
        return self._token_record_from_row(row) if row else None

    def delete_token_record(self, record_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_token WHERE id = %s", (record_id,))
            return cur.rowcount > 0

    def delete_user_token_records(self, user_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_token WHERE user_id = %s", (user_id,))
            return max(cur.rowcount, 0)

    def delete_expired_token_records(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_token WHERE expires_at IS NOT NULL AND expires_at <= %s",
                (now,),
            )
            return max(cur.rowcount, 0)

    def list_user_token_records(self, user_id: int) -> List[TokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_token WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._token_record_from_row(row) for row in rows]
