from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from psycopg import errors, OperationalError
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tenantauth.logging import get_logger
from tenantauth.storage.errors import (
    ConstraintViolation,
    PrincipalNotFound,
    StoreUnavailable,
)
from tenantauth.storage.models import Organization, Principal

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS organization (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        owner_id TEXT,
        member_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
        quotas JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        organization_id TEXT REFERENCES organization(id),
        is_email_verified BOOLEAN NOT NULL DEFAULT false,
        token_version INTEGER NOT NULL DEFAULT 0 CHECK (token_version >= 0),
        refresh_token_hash TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed principal store.

    Session-control mutations are single conditional statements so that the
    database row lock, not application code, decides concurrent rotations.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable(str(exc)) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    # -- accounts -------------------------------------------------------

    @staticmethod
    def _principal_from_row(row: Dict[str, Any]) -> Principal:
        return Principal(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            password_hash=row.get("password_hash"),
            role=row.get("role") or "user",
            organization_id=row.get("organization_id"),
            is_email_verified=bool(row.get("is_email_verified")),
            token_version=int(row.get("token_version") or 0),
            refresh_token_hash=row.get("refresh_token_hash"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _organization_from_row(row: Dict[str, Any]) -> Organization:
        member_ids = row.get("member_ids") or []
        quotas = row.get("quotas") or {}
        if isinstance(member_ids, str):
            member_ids = json.loads(member_ids)
        if isinstance(quotas, str):
            quotas = json.loads(quotas)
        return Organization(
            id=row["id"],
            name=row["name"],
            owner_id=row.get("owner_id"),
            member_ids=list(member_ids),
            quotas=dict(quotas),
            created_at=row["created_at"],
        )

    def create_principal_with_organization(
        self, principal: Principal, organization: Organization
    ) -> Principal:
        """Insert a principal and its organization in one transaction."""
        principal.organization_id = organization.id
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        """
                        INSERT INTO organization (id, name, owner_id, member_ids, quotas, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (
                            organization.id,
                            organization.name,
                            organization.owner_id,
                            json.dumps(organization.member_ids),
                            json.dumps(organization.quotas),
                            organization.created_at,
                        ),
                    )
                    conn.execute(
                        """
                        INSERT INTO principal (
                            id, username, email, password_hash, role, organization_id,
                            is_email_verified, token_version, refresh_token_hash, created_at
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            principal.id,
                            principal.username,
                            principal.email,
                            principal.password_hash,
                            principal.role,
                            principal.organization_id,
                            principal.is_email_verified,
                            principal.token_version,
                            principal.refresh_token_hash,
                            principal.created_at,
                        ),
                    )
        except errors.UniqueViolation as exc:
            field = "email"
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", "") or ""
            if "username" in constraint:
                field = "username"
            elif "organization" in constraint:
                field = "organization_id"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_principal_by_identifier(self, identifier: str) -> Optional[Principal]:
        needle = identifier.lower()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE email = %s OR username = %s LIMIT 1",
                (needle, needle),
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE id = %s", (org_id,)
            ).fetchone()
        return self._organization_from_row(row) if row else None

    def update_password_hash(self, principal_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE principal SET password_hash = %s WHERE id = %s RETURNING id",
                (password_hash, principal_id),
            ).fetchone()
        if not row:
            raise PrincipalNotFound(principal_id)

    # -- session control --------------------------------------------------

    def read_token_version(self, principal_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT token_version FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        if not row:
            raise PrincipalNotFound(principal_id)
        return int(row["token_version"])

    def read_current_refresh_hash(self, principal_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT refresh_token_hash FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        if not row:
            raise PrincipalNotFound(principal_id)
        return row["refresh_token_hash"]

    def cas_rotate(self, principal_id: str, expected_hash: str, new_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal SET refresh_token_hash = %s
                WHERE id = %s AND refresh_token_hash = %s
                RETURNING id
                """,
                (new_hash, principal_id, expected_hash),
            ).fetchone()
        return row is not None

    def invalidate_all(self, principal_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE principal
                SET token_version = token_version + 1, refresh_token_hash = NULL
                WHERE id = %s
                """,
                (principal_id,),
            )

    def set_initial_session(self, principal_id: str, refresh_hash: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE principal SET refresh_token_hash = %s WHERE id = %s RETURNING id",
                (refresh_hash, principal_id),
            ).fetchone()
        if not row:
            raise PrincipalNotFound(principal_id)
