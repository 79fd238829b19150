from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from showcase.logging import get_logger
from showcase.storage.errors import ConstraintViolation, StoreError
from showcase.storage.models import (
    ADMIN_ROLE,
    AnalyticsEvent,
    Identity,
    SecurityLogEntry,
    utcnow,
)


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS admin_users (
        id SERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        name TEXT,
        role TEXT NOT NULL DEFAULT 'admin',
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_logs (
        id SERIAL PRIMARY KEY,
        event_type TEXT NOT NULL,
        event_data JSONB NOT NULL DEFAULT '{}'::jsonb,
        user_id INTEGER,
        user_agent TEXT,
        ip_address TEXT,
        url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS security_logs_event_type_idx ON security_logs (event_type, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS analytics (
        id SERIAL PRIMARY KEY,
        event_type TEXT NOT NULL,
        event_data JSONB NOT NULL DEFAULT '{}'::jsonb,
        user_agent TEXT,
        ip_address TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed credential, security log and analytics store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.UniqueViolation, ConstraintViolation):
            raise
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreError(str(exc)) from exc

    def _ensure_schema(self) -> None:
        """Create the admin tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _identity_from_row(row: dict) -> Identity:
        return Identity(
            id=int(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            name=row.get("name"),
            role=row.get("role", ADMIN_ROLE),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # identities
    def create_identity(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        role: str = ADMIN_ROLE,
    ) -> Identity:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO admin_users (email, password_hash, name, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (email, password_hash, name, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._identity_from_row(row)

    def get_identity(self, identity_id: int) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_users WHERE id = %s", (identity_id,)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_users WHERE email = %s", (email,)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def update_password(self, identity_id: int, password_hash: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE admin_users SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, identity_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "identity not found", {"identity_id": identity_id}
                )

    def update_role(self, identity_id: int, role: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE admin_users SET role = %s, updated_at = now() WHERE id = %s",
                (role, identity_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "identity not found", {"identity_id": identity_id}
                )

    def touch_last_login(self, identity_id: int, when: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE admin_users SET last_login = %s WHERE id = %s",
                (when or utcnow(), identity_id),
            )

    def delete_identity(self, identity_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM admin_users WHERE id = %s", (identity_id,))
            return cur.rowcount > 0

    # security log / analytics
    def append_security_log(
        self,
        event_type: str,
        event_data: Optional[dict] = None,
        *,
        user_id: Optional[int] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        url: Optional[str] = None,
    ) -> SecurityLogEntry:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO security_logs (event_type, event_data, user_id, user_agent, ip_address, url)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id, created_at
                """,
                (
                    event_type,
                    json.dumps(event_data or {}),
                    user_id,
                    user_agent,
                    ip_address,
                    url,
                ),
            ).fetchone()
        return SecurityLogEntry(
            id=int(row["id"]),
            event_type=event_type,
            event_data=dict(event_data or {}),
            user_id=user_id,
            user_agent=user_agent,
            ip_address=ip_address,
            url=url,
            created_at=row["created_at"],
        )

    def list_security_logs(
        self, *, event_type: Optional[str] = None, limit: int = 100
    ) -> List[SecurityLogEntry]:
        query = "SELECT * FROM security_logs"
        params: list = []
        if event_type:
            query += " WHERE event_type = %s"
            params.append(event_type)
        query += " ORDER BY created_at DESC, id DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            SecurityLogEntry(
                id=int(row["id"]),
                event_type=row["event_type"],
                event_data=row.get("event_data") or {},
                user_id=row.get("user_id"),
                user_agent=row.get("user_agent"),
                ip_address=row.get("ip_address"),
                url=row.get("url"),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def append_analytics_event(
        self,
        event_type: str,
        event_data: Optional[dict] = None,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AnalyticsEvent:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO analytics (event_type, event_data, user_agent, ip_address)
                VALUES (%s, %s, %s, %s)
                RETURNING id, created_at
                """,
                (event_type, json.dumps(event_data or {}), user_agent, ip_address),
            ).fetchone()
        return AnalyticsEvent(
            id=int(row["id"]),
            event_type=event_type,
            event_data=dict(event_data or {}),
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=row["created_at"],
        )

    def list_analytics_events(
        self, *, event_type: Optional[str] = None
    ) -> List[AnalyticsEvent]:
        query = "SELECT * FROM analytics"
        params: list = []
        if event_type:
            query += " WHERE event_type = %s"
            params.append(event_type)
        query += " ORDER BY created_at, id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            AnalyticsEvent(
                id=int(row["id"]),
                event_type=row["event_type"],
                event_data=row.get("event_data") or {},
                user_agent=row.get("user_agent"),
                ip_address=row.get("ip_address"),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def health_check(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def close(self) -> None:
        self.pool.close()
