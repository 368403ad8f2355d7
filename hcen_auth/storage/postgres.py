from __future__ import annotations

from datetime import timedelta
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from hcen_auth.config import ClientType
from hcen_auth.logging import get_logger
from hcen_auth.storage.common import (
    ConstraintViolation,
    ensure_utc,
    safe_row_value,
    short_hash,
    validate_refresh_token,
)
from hcen_auth.storage.models import Clinic, InusUser, RefreshToken, utcnow


class PostgresStore:
    """Postgres-backed refresh-token, INUS user and clinic records."""

    _REQUIRED_TABLES = ("refresh_token", "inus_user", "clinic")

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            check=ConnectionPool.check_connection,
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the tables this service owns if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS refresh_token (
                    id TEXT PRIMARY KEY,
                    token_hash TEXT NOT NULL UNIQUE,
                    user_ci TEXT NOT NULL,
                    client_type TEXT NOT NULL,
                    device_id TEXT,
                    issued_at TIMESTAMPTZ NOT NULL,
                    expires_at TIMESTAMPTZ NOT NULL,
                    revoked_at TIMESTAMPTZ,
                    is_revoked BOOLEAN NOT NULL DEFAULT FALSE
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS refresh_token_user_ci_idx ON refresh_token (user_ci)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS refresh_token_expires_at_idx ON refresh_token (expires_at)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS inus_user (
                    ci TEXT PRIMARY KEY,
                    inus_id TEXT NOT NULL UNIQUE,
                    first_name TEXT,
                    last_name TEXT,
                    role TEXT NOT NULL DEFAULT 'PATIENT',
                    status TEXT NOT NULL DEFAULT 'ACTIVE',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS clinic (
                    clinic_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    api_key_hash TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'ACTIVE',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in self._REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    # refresh tokens
    @staticmethod
    def _refresh_token_from_row(row: Any) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            user_ci=row["user_ci"],
            client_type=ClientType(row["client_type"]),
            device_id=safe_row_value(row, "device_id"),
            issued_at=ensure_utc(row["issued_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            revoked_at=ensure_utc(safe_row_value(row, "revoked_at")),
            is_revoked=bool(safe_row_value(row, "is_revoked", False)),
        )

    def save(self, token: RefreshToken) -> RefreshToken:
        validate_refresh_token(token)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (
                        id, token_hash, user_ci, client_type, device_id,
                        issued_at, expires_at, revoked_at, is_revoked
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.token_hash,
                        token.user_ci,
                        token.client_type.value,
                        token.device_id,
                        token.issued_at,
                        token.expires_at,
                        token.revoked_at,
                        token.is_revoked,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token already stored", {"field": "token_hash"}
            ) from exc
        self.logger.debug(
            "refresh_token_saved",
            user_ci=token.user_ci,
            client_type=token.client_type.value,
        )
        return token

    def find_by_token_hash(self, token_hash: str) -> Optional[RefreshToken]:
        if not token_hash or not token_hash.strip():
            self.logger.warning("refresh_token_lookup_empty_hash")
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def find_by_user_ci(self, user_ci: str) -> List[RefreshToken]:
        if not user_ci or not user_ci.strip():
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_ci = %s ORDER BY issued_at",
                (user_ci,),
            ).fetchall()
        return [self._refresh_token_from_row(row) for row in rows]

    def find_valid_by_user_ci(self, user_ci: str) -> List[RefreshToken]:
        if not user_ci or not user_ci.strip():
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE user_ci = %s AND is_revoked = FALSE AND expires_at > %s
                ORDER BY issued_at
                """,
                (user_ci, utcnow()),
            ).fetchall()
        return [self._refresh_token_from_row(row) for row in rows]

    def revoke_all_for_user(self, user_ci: str) -> int:
        if not user_ci or not user_ci.strip():
            raise ValueError("User CI cannot be null or empty")
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                WHERE user_ci = %s AND is_revoked = FALSE
                """,
                (utcnow(), user_ci),
            )
            revoked = cur.rowcount or 0
        self.logger.info("refresh_tokens_revoked_for_user", user_ci=user_ci, count=revoked)
        return revoked

    def revoke_token(self, token_hash: str) -> bool:
        if not token_hash or not token_hash.strip():
            raise ValueError("Token hash cannot be null or empty")
        # conditional update: only one concurrent caller can flip the flag
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                WHERE token_hash = %s AND is_revoked = FALSE
                """,
                (utcnow(), token_hash),
            )
            updated = cur.rowcount == 1
        if updated:
            self.logger.info("refresh_token_revoked", token_hash=short_hash(token_hash))
        else:
            self.logger.debug("refresh_token_not_revoked", token_hash=short_hash(token_hash))
        return updated

    def delete_expired(self) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (utcnow(),)
            )
            deleted = cur.rowcount or 0
        if deleted:
            self.logger.info("expired_refresh_tokens_deleted", count=deleted)
        return deleted

    def delete_old_revoked_tokens(self, days_old: int) -> int:
        if days_old < 0:
            raise ValueError("days_old must be non-negative")
        cutoff = utcnow() - timedelta(days=days_old)
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE is_revoked = TRUE AND revoked_at < %s
                """,
                (cutoff,),
            )
            deleted = cur.rowcount or 0
        if deleted:
            self.logger.info(
                "old_revoked_refresh_tokens_deleted", count=deleted, days_old=days_old
            )
        return deleted

    def count_active_tokens_for_user(self, user_ci: str) -> int:
        if not user_ci or not user_ci.strip():
            return 0
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS active FROM refresh_token
                WHERE user_ci = %s AND is_revoked = FALSE AND expires_at > %s
                """,
                (user_ci, utcnow()),
            ).fetchone()
        return int(safe_row_value(row, "active", 0) or 0)

    # INUS users
    @staticmethod
    def _user_from_row(row: Any) -> InusUser:
        return InusUser(
            ci=row["ci"],
            inus_id=row["inus_id"],
            first_name=safe_row_value(row, "first_name"),
            last_name=safe_row_value(row, "last_name"),
            role=safe_row_value(row, "role", "PATIENT"),
            status=safe_row_value(row, "status", "ACTIVE"),
            created_at=ensure_utc(safe_row_value(row, "created_at")) or utcnow(),
            updated_at=ensure_utc(safe_row_value(row, "updated_at")) or utcnow(),
        )

    def get_inus_user(self, ci: str) -> Optional[InusUser]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM inus_user WHERE ci = %s", (ci,)).fetchone()
        return self._user_from_row(row) if row else None

    def create_inus_user(self, user: InusUser) -> InusUser:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO inus_user (
                        ci, inus_id, first_name, last_name, role, status, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.ci,
                        user.inus_id,
                        user.first_name,
                        user.last_name,
                        user.role,
                        user.status,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("user already exists", {"field": "ci"}) from exc
        return user

    def update_inus_user_names(
        self, ci: str, first_name: Optional[str], last_name: Optional[str]
    ) -> Optional[InusUser]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE inus_user
                SET first_name = COALESCE(%s, first_name),
                    last_name = COALESCE(%s, last_name),
                    updated_at = %s
                WHERE ci = %s
                RETURNING *
                """,
                (first_name, last_name, utcnow(), ci),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # clinics
    @staticmethod
    def _clinic_from_row(row: Any) -> Clinic:
        return Clinic(
            clinic_id=row["clinic_id"],
            name=row["name"],
            api_key_hash=row["api_key_hash"],
            status=safe_row_value(row, "status", "ACTIVE"),
            created_at=ensure_utc(safe_row_value(row, "created_at")) or utcnow(),
        )

    def get_clinic(self, clinic_id: str) -> Optional[Clinic]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM clinic WHERE clinic_id = %s", (clinic_id,)
            ).fetchone()
        return self._clinic_from_row(row) if row else None

    def create_clinic(self, clinic: Clinic) -> Clinic:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO clinic (clinic_id, name, api_key_hash, status, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        clinic.clinic_id,
                        clinic.name,
                        clinic.api_key_hash,
                        clinic.status,
                        clinic.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "clinic already exists", {"field": "clinic_id"}
            ) from exc
        return clinic

    def set_clinic_status(self, clinic_id: str, status: str) -> Optional[Clinic]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE clinic SET status = %s WHERE clinic_id = %s RETURNING *",
                (status, clinic_id),
            ).fetchone()
        return self._clinic_from_row(row) if row else None
