from __future__ import annotations

from datetime import datetime
from typing import List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from schoolgate.logging import get_logger
from schoolgate.storage.errors import ConstraintViolation, StoreUnavailable
from schoolgate.storage.models import (
    Membership,
    Organization,
    PASSWORD_LOGIN_ROLES,
    User,
)

_USER_COLUMNS = (
    "id, role, org_id, full_name, phone_number, username, register_number, "
    "parent_id, is_active, password_hash, failed_attempts, locked_until, "
    "created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed credential store for users, organizations and memberships."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = ["organizations", "users", "user_organizations"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def _fetchone(self, query: str, params: tuple) -> Optional[dict]:
        try:
            with self._connect() as conn:
                return conn.execute(query, params).fetchone()
        except psycopg.Error as exc:
            self.logger.error("store_query_failed", error=str(exc))
            raise StoreUnavailable("credential store query failed", {"error": str(exc)}) from exc

    def _fetchall(self, query: str, params: tuple) -> List[dict]:
        try:
            with self._connect() as conn:
                return conn.execute(query, params).fetchall()
        except psycopg.Error as exc:
            self.logger.error("store_query_failed", error=str(exc))
            raise StoreUnavailable("credential store query failed", {"error": str(exc)}) from exc

    def _execute(self, query: str, params: tuple) -> None:
        try:
            with self._connect() as conn:
                conn.execute(query, params)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("duplicate value", {"error": str(exc)}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("unknown reference", {"error": str(exc)}) from exc
        except psycopg.Error as exc:
            self.logger.error("store_write_failed", error=str(exc))
            raise StoreUnavailable("credential store write failed", {"error": str(exc)}) from exc

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            role=row["role"],
            org_id=int(row["org_id"]),
            full_name=row.get("full_name"),
            phone_number=row.get("phone_number"),
            username=row.get("username"),
            register_number=row.get("register_number"),
            parent_id=str(row["parent_id"]) if row.get("parent_id") else None,
            is_active=row.get("is_active", True),
            password_hash=row.get("password_hash"),
            failed_attempts=row.get("failed_attempts") or 0,
            locked_until=row.get("locked_until"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def ping(self) -> bool:
        return self._fetchone("SELECT 1 AS ok", ()) is not None

    # organizations
    def create_organization(self, org_id: int, name: str, *, is_active: bool = True) -> Organization:
        self._execute(
            "INSERT INTO organizations (id, name, is_active) VALUES (%s, %s, %s)",
            (org_id, name, is_active),
        )
        return Organization(id=org_id, name=name, is_active=is_active)

    def get_organization(self, org_id: int) -> Optional[Organization]:
        row = self._fetchone("SELECT * FROM organizations WHERE id = %s", (org_id,))
        if not row:
            return None
        return Organization(
            id=int(row["id"]),
            name=row["name"],
            is_active=row.get("is_active", True),
            created_at=row.get("created_at"),
        )

    # users
    def create_user(self, user: User) -> User:
        if user.username:
            user.username = user.username.lower()
        self._execute(
            f"""
            INSERT INTO users ({_USER_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                user.id,
                user.role,
                user.org_id,
                user.full_name,
                user.phone_number,
                user.username,
                user.register_number,
                user.parent_id,
                user.is_active,
                user.password_hash,
                user.failed_attempts,
                user.locked_until,
                user.created_at,
                user.updated_at,
            ),
        )
        return user

    def add_membership(self, user_id: str, org_id: int, role: str) -> None:
        self._execute(
            """
            INSERT INTO user_organizations (user_id, org_id, role)
            VALUES (%s, %s, %s)
            ON CONFLICT (user_id, org_id) DO UPDATE SET role = EXCLUDED.role
            """,
            (user_id, org_id, role),
        )

    def get_user(self, user_id: str) -> Optional[User]:
        row = self._fetchone(f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,))
        return self._user_from_row(row) if row else None

    def get_active_user(self, user_id: str) -> Optional[User]:
        row = self._fetchone(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s AND is_active = true",
            (user_id,),
        )
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE users SET is_active = %s, updated_at = now() WHERE id = %s RETURNING {_USER_COLUMNS}",
                    (is_active, user_id),
                ).fetchone()
        except psycopg.Error as exc:
            raise StoreUnavailable("credential store write failed", {"error": str(exc)}) from exc
        return self._user_from_row(row) if row else None

    def list_memberships(self, user_id: str) -> List[Membership]:
        rows = self._fetchall(
            """
            SELECT u.org_id, u.role, true AS is_primary, o.name AS org_name, 0 AS ord
            FROM users u LEFT JOIN organizations o ON o.id = u.org_id
            WHERE u.id = %s
            UNION ALL
            SELECT uo.org_id, uo.role, false AS is_primary, o.name AS org_name, 1 AS ord
            FROM user_organizations uo
            JOIN organizations o ON o.id = uo.org_id
            JOIN users u ON u.id = uo.user_id
            WHERE uo.user_id = %s AND o.is_active = true AND uo.org_id <> u.org_id
            ORDER BY ord, org_id
            """,
            (user_id, user_id),
        )
        return [
            Membership(
                organization_id=int(row["org_id"]),
                role=row["role"],
                is_primary=bool(row["is_primary"]),
                organization_name=row.get("org_name"),
            )
            for row in rows
        ]

    def list_active_children(self, parent_id: str, org_id: Optional[int] = None) -> List[User]:
        if org_id is None:
            rows = self._fetchall(
                f"SELECT {_USER_COLUMNS} FROM users WHERE parent_id = %s AND is_active = true ORDER BY created_at",
                (parent_id,),
            )
        else:
            rows = self._fetchall(
                f"""
                SELECT {_USER_COLUMNS} FROM users
                WHERE parent_id = %s AND org_id = %s AND is_active = true
                ORDER BY created_at
                """,
                (parent_id, org_id),
            )
        return [self._user_from_row(row) for row in rows]

    def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        row = self._fetchone(
            f"SELECT {_USER_COLUMNS} FROM users WHERE phone_number = %s", (phone_number,)
        )
        return self._user_from_row(row) if row else None

    def get_staff_by_username(self, username: str) -> Optional[User]:
        row = self._fetchone(
            f"SELECT {_USER_COLUMNS} FROM users WHERE username = %s AND role = ANY(%s)",
            (username.lower(), list(PASSWORD_LOGIN_ROLES)),
        )
        return self._user_from_row(row) if row else None

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        self._execute(
            "UPDATE users SET password_hash = %s, updated_at = now() WHERE id = %s",
            (password_hash, user_id),
        )

    def record_failed_login(
        self, user_id: str, failed_attempts: int, locked_until: Optional[datetime]
    ) -> None:
        self._execute(
            """
            UPDATE users
            SET failed_attempts = %s,
                locked_until = COALESCE(%s, locked_until),
                updated_at = now()
            WHERE id = %s
            """,
            (failed_attempts, locked_until, user_id),
        )

    def reset_failed_logins(self, user_id: str) -> None:
        self._execute(
            "UPDATE users SET failed_attempts = 0, locked_until = NULL, updated_at = now() WHERE id = %s",
            (user_id,),
        )

    def close(self) -> None:
        self.pool.close()


__all__ = ["PostgresStore"]
