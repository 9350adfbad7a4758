from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from asphaltworks.logging import get_logger
from asphaltworks.storage.errors import ConstraintViolation
from asphaltworks.storage.models import ContentItem, ListQuery, Page, User, utcnow

_SCHEMA = """
CREATE TABLE IF NOT EXISTS app_user (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL,
    email TEXT NOT NULL,
    first_name TEXT NOT NULL DEFAULT '',
    last_name TEXT NOT NULL DEFAULT '',
    role TEXT NOT NULL DEFAULT 'user',
    permissions JSONB NOT NULL DEFAULT '[]'::jsonb,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    phone_number TEXT,
    timezone TEXT NOT NULL DEFAULT 'Europe/Paris',
    language TEXT NOT NULL DEFAULT 'fr',
    email_verification_token TEXT,
    email_verification_expires TIMESTAMPTZ,
    reset_password_token TEXT,
    reset_password_expires TIMESTAMPTZ,
    refresh_token TEXT,
    refresh_token_expires TIMESTAMPTZ,
    login_attempts INTEGER NOT NULL DEFAULT 0,
    lock_until TIMESTAMPTZ,
    last_login TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (email);
CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_key ON app_user (lower(username));
CREATE INDEX IF NOT EXISTS app_user_refresh_token_idx ON app_user (refresh_token);
CREATE INDEX IF NOT EXISTS app_user_reset_token_idx ON app_user (reset_password_token);
CREATE INDEX IF NOT EXISTS app_user_verification_token_idx ON app_user (email_verification_token);

CREATE TABLE IF NOT EXISTS user_auth_credential (
    user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
    password_hash TEXT NOT NULL,
    password_algo TEXT NOT NULL,
    last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS content_item (
    id BIGSERIAL PRIMARY KEY,
    kind TEXT NOT NULL,
    slug TEXT,
    author_id TEXT REFERENCES app_user(id) ON DELETE SET NULL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS content_item_kind_slug_key ON content_item (kind, slug)
    WHERE slug IS NOT NULL;
CREATE INDEX IF NOT EXISTS content_item_kind_idx ON content_item (kind, created_at DESC);
"""

_USER_COLUMNS = (
    "username",
    "email",
    "first_name",
    "last_name",
    "role",
    "permissions",
    "is_active",
    "is_email_verified",
    "phone_number",
    "timezone",
    "language",
    "email_verification_token",
    "email_verification_expires",
    "reset_password_token",
    "reset_password_expires",
    "refresh_token",
    "refresh_token_expires",
    "login_attempts",
    "lock_until",
    "last_login",
)
_USER_SORT_COLUMNS = {
    "created_at",
    "updated_at",
    "username",
    "email",
    "first_name",
    "last_name",
    "role",
    "last_login",
}
_USER_SEARCH_COLUMNS = ("username", "email", "first_name", "last_name")


def _like_pattern(term: str) -> str:
    """Substring pattern for ILIKE with the wildcards in ``term`` taken literally."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _violated_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", "") or ""
    if "username" in constraint:
        return "username"
    if "slug" in constraint:
        return "slug"
    return "email"


class PostgresStore:
    """Postgres-backed users, credentials and content.

    Conditional state changes (refresh rotation, lock counter, token
    consumption) are single ``UPDATE ... WHERE ... RETURNING`` statements so
    concurrent requests cannot both win.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
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
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        permissions = row.get("permissions") or []
        if isinstance(permissions, str):
            permissions = json.loads(permissions)
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            role=row.get("role", "user"),
            permissions=list(permissions),
            is_active=row.get("is_active", True),
            is_email_verified=row.get("is_email_verified", False),
            phone_number=row.get("phone_number"),
            timezone=row.get("timezone") or "Europe/Paris",
            language=row.get("language") or "fr",
            email_verification_token=row.get("email_verification_token"),
            email_verification_expires=row.get("email_verification_expires"),
            reset_password_token=row.get("reset_password_token"),
            reset_password_expires=row.get("reset_password_expires"),
            refresh_token=row.get("refresh_token"),
            refresh_token_expires=row.get("refresh_token_expires"),
            login_attempts=row.get("login_attempts", 0),
            lock_until=row.get("lock_until"),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _content_from_row(row: Dict[str, Any]) -> ContentItem:
        data = row.get("data") or {}
        if isinstance(data, str):
            data = json.loads(data)
        return ContentItem(
            id=int(row["id"]),
            kind=row["kind"],
            slug=row.get("slug"),
            author_id=row.get("author_id"),
            data=data,
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _column_value(name: str, value: Any) -> Any:
        if name == "permissions":
            return json.dumps(list(value or []))
        return value

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "user",
        permissions: Optional[Sequence[str]] = None,
        is_active: bool = True,
        is_email_verified: bool = False,
        verification_token: Optional[str] = None,
        verification_expires: Optional[datetime] = None,
        **profile: Any,
    ) -> User:
        values: Dict[str, Any] = {
            "username": username,
            "email": email,
            "role": role,
            "permissions": list(permissions or []),
            "is_active": is_active,
            "is_email_verified": is_email_verified,
            "email_verification_token": verification_token,
            "email_verification_expires": verification_expires,
        }
        unknown = set(profile) - set(_USER_COLUMNS)
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        values.update(profile)
        columns = ["id", *values.keys()]
        params = [str(uuid.uuid4()), *(self._column_value(k, v) for k, v in values.items())]
        query = sql.SQL("INSERT INTO app_user ({}) VALUES ({}) RETURNING *").format(
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
        except errors.UniqueViolation as exc:
            field = _violated_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._user_from_row(row)

    def _fetch_user(self, where: str, params: Sequence[Any]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM app_user WHERE {where}", params).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email = %s", (email,))

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("lower(username) = lower(%s)", (username,))

    def get_user_by_refresh_token(self, token_digest: str) -> Optional[User]:
        return self._fetch_user("refresh_token = %s", (token_digest,))

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        unknown = set(changes) - set(_USER_COLUMNS)
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        if not changes:
            return self.get_user(user_id)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder())
            for name in changes
        )
        query = sql.SQL(
            "UPDATE app_user SET {}, updated_at = now() WHERE id = %s RETURNING *"
        ).format(assignments)
        params = [self._column_value(k, v) for k, v in changes.items()] + [user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
        except errors.UniqueViolation as exc:
            field = _violated_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    def delete_users(self, user_ids: Iterable[str]) -> int:
        ids = list(set(user_ids))
        if not ids:
            return 0
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = ANY(%s)", (ids,))
            return cur.rowcount

    def set_users_active(self, user_ids: Iterable[str], active: bool) -> int:
        ids = list(set(user_ids))
        if not ids:
            return 0
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET is_active = %s,
                    refresh_token = CASE WHEN %s THEN refresh_token ELSE NULL END,
                    refresh_token_expires = CASE WHEN %s THEN refresh_token_expires ELSE NULL END,
                    updated_at = now()
                WHERE id = ANY(%s)
                """,
                (active, active, active, ids),
            )
            return cur.rowcount

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
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
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            ) from exc

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def replace_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> Optional[User]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET refresh_token = NULL, refresh_token_expires = NULL,
                        reset_password_token = NULL, reset_password_expires = NULL,
                        updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (user_id,),
                ).fetchone()
                if not row:
                    return None
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
        return self._user_from_row(row)

    def rotate_refresh_token(
        self,
        user_id: str,
        expected_digest: str,
        new_digest: str,
        expires_at: datetime,
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET refresh_token = %s, refresh_token_expires = %s, updated_at = now()
                WHERE id = %s AND refresh_token = %s
                """,
                (new_digest, expires_at, user_id, expected_digest),
            )
            return cur.rowcount == 1

    def clear_refresh_token(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET refresh_token = NULL, refresh_token_expires = NULL, updated_at = now()
                WHERE id = %s AND refresh_token IS NOT NULL
                """,
                (user_id,),
            )

    def record_login_failure(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_for: timedelta,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH base AS (
                    SELECT id,
                           CASE WHEN lock_until IS NOT NULL AND lock_until <= %(now)s
                                THEN 0 ELSE login_attempts END AS attempts,
                           CASE WHEN lock_until IS NOT NULL AND lock_until <= %(now)s
                                THEN NULL ELSE lock_until END AS current_lock
                    FROM app_user WHERE id = %(id)s FOR UPDATE
                )
                UPDATE app_user u
                SET login_attempts = base.attempts + 1,
                    lock_until = CASE
                        WHEN base.attempts + 1 >= %(max)s AND base.current_lock IS NULL
                        THEN %(lock_until)s ELSE base.current_lock END,
                    updated_at = %(now)s
                FROM base
                WHERE u.id = base.id
                RETURNING u.*
                """,
                {
                    "id": user_id,
                    "now": now,
                    "max": max_attempts,
                    "lock_until": now + lock_for,
                },
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_login_success(
        self,
        user_id: str,
        *,
        refresh_digest: str,
        refresh_expires: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET login_attempts = 0, lock_until = NULL, last_login = %s,
                    refresh_token = %s, refresh_token_expires = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, refresh_digest, refresh_expires, now, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def consume_verification_token(
        self, token_digest: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET is_email_verified = TRUE, email_verification_token = NULL,
                    email_verification_expires = NULL, updated_at = %s
                WHERE email_verification_token = %s AND email_verification_expires > %s
                RETURNING *
                """,
                (now, token_digest, now),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def complete_password_reset(
        self,
        token_digest: str,
        password_hash: str,
        password_algo: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or utcnow()
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET reset_password_token = NULL, reset_password_expires = NULL,
                        refresh_token = NULL, refresh_token_expires = NULL,
                        login_attempts = 0, lock_until = NULL, updated_at = %s
                    WHERE reset_password_token = %s AND reset_password_expires > %s
                    RETURNING *
                    """,
                    (now, token_digest, now),
                ).fetchone()
                if not row:
                    return None
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (row["id"], password_hash, password_algo),
                )
        return self._user_from_row(row)

    def list_users(self, query: ListQuery) -> Page[User]:
        clauses = []
        params: list[Any] = []
        if query.search:
            clauses.append(
                sql.SQL("({})").format(
                    sql.SQL(" OR ").join(
                        sql.SQL("{} ILIKE %s").format(sql.Identifier(c))
                        for c in _USER_SEARCH_COLUMNS
                    )
                )
            )
            params.extend([_like_pattern(query.search)] * len(_USER_SEARCH_COLUMNS))
        for name, value in query.filters.items():
            if name not in _USER_COLUMNS:
                continue
            clauses.append(sql.SQL("{} = %s").format(sql.Identifier(name)))
            params.append(value)
        where = (
            sql.SQL("WHERE ") + sql.SQL(" AND ").join(clauses) if clauses else sql.SQL("")
        )
        sort_by = query.sort_by if query.sort_by in _USER_SORT_COLUMNS else "created_at"
        order = sql.SQL("DESC NULLS LAST" if query.descending else "ASC NULLS LAST")
        with self._connect() as conn:
            total = conn.execute(
                sql.SQL("SELECT count(*) AS n FROM app_user {}").format(where), params
            ).fetchone()["n"]
            rows = conn.execute(
                sql.SQL("SELECT * FROM app_user {} ORDER BY {} {} LIMIT %s OFFSET %s").format(
                    where, sql.Identifier(sort_by), order
                ),
                [*params, query.limit, query.offset],
            ).fetchall()
        return Page(
            items=[self._user_from_row(r) for r in rows],
            total=int(total),
            page=query.page,
            limit=query.limit,
        )

    def user_stats(self, *, recent_since: datetime) -> Dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS total,
                       count(*) FILTER (WHERE is_active) AS active,
                       count(*) FILTER (WHERE is_email_verified) AS verified,
                       count(*) FILTER (WHERE created_at >= %s) AS recent
                FROM app_user
                """,
                (recent_since,),
            ).fetchone()
            roles = conn.execute(
                "SELECT role, count(*) AS n FROM app_user GROUP BY role"
            ).fetchall()
        total = int(row["total"])
        return {
            "total": total,
            "active": int(row["active"]),
            "inactive": total - int(row["active"]),
            "verified": int(row["verified"]),
            "unverified": total - int(row["verified"]),
            "recent": int(row["recent"]),
            "by_role": {r["role"]: int(r["n"]) for r in roles},
        }

    # ------------------------------------------------------------------
    # content
    # ------------------------------------------------------------------

    def create_content(
        self,
        kind: str,
        data: Dict[str, Any],
        *,
        slug: Optional[str] = None,
        author_id: Optional[str] = None,
    ) -> ContentItem:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO content_item (kind, slug, author_id, data)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (kind, slug, author_id, json.dumps(data)),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("slug already exists", {"field": "slug"}) from exc
        return self._content_from_row(row)

    def get_content(self, kind: str, item_id: int) -> Optional[ContentItem]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM content_item WHERE kind = %s AND id = %s", (kind, item_id)
            ).fetchone()
        return self._content_from_row(row) if row else None

    def get_content_by_slug(self, kind: str, slug: str) -> Optional[ContentItem]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM content_item WHERE kind = %s AND slug = %s", (kind, slug)
            ).fetchone()
        return self._content_from_row(row) if row else None

    def slug_exists(self, kind: str, slug: str, *, exclude_id: Optional[int] = None) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM content_item
                WHERE kind = %s AND slug = %s AND (%s::bigint IS NULL OR id <> %s::bigint)
                """,
                (kind, slug, exclude_id, exclude_id),
            ).fetchone()
        return row is not None

    def update_content(
        self,
        kind: str,
        item_id: int,
        changes: Dict[str, Any],
        *,
        slug: Optional[str] = None,
    ) -> Optional[ContentItem]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE content_item
                    SET data = data || %s::jsonb,
                        slug = COALESCE(%s, slug),
                        updated_at = now()
                    WHERE kind = %s AND id = %s
                    RETURNING *
                    """,
                    (json.dumps(changes), slug, kind, item_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("slug already exists", {"field": "slug"}) from exc
        return self._content_from_row(row) if row else None

    def delete_content(self, kind: str, item_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM content_item WHERE kind = %s AND id = %s", (kind, item_id)
            )
            return cur.rowcount > 0

    def list_content(
        self, kind: str, query: ListQuery, *, search_fields: Sequence[str] = ()
    ) -> Page[ContentItem]:
        clauses = [sql.SQL("kind = %s")]
        params: list[Any] = [kind]
        if query.search and search_fields:
            clauses.append(
                sql.SQL("({})").format(
                    sql.SQL(" OR ").join(
                        sql.SQL("data->>{} ILIKE %s").format(sql.Literal(f))
                        for f in search_fields
                    )
                )
            )
            params.extend([_like_pattern(query.search)] * len(search_fields))
        for name, value in query.filters.items():
            clauses.append(sql.SQL("data->{} = %s::jsonb").format(sql.Literal(name)))
            params.append(json.dumps(value))
        where = sql.SQL(" AND ").join(clauses)
        if query.sort_by in {"id", "created_at", "updated_at"}:
            sort_expr = sql.Identifier(query.sort_by)
        else:
            sort_expr = sql.SQL("data->{}").format(sql.Literal(query.sort_by))
        order = sql.SQL("DESC NULLS LAST" if query.descending else "ASC NULLS LAST")
        with self._connect() as conn:
            total = conn.execute(
                sql.SQL("SELECT count(*) AS n FROM content_item WHERE {}").format(where),
                params,
            ).fetchone()["n"]
            rows = conn.execute(
                sql.SQL(
                    "SELECT * FROM content_item WHERE {} ORDER BY {} {} LIMIT %s OFFSET %s"
                ).format(where, sort_expr, order),
                [*params, query.limit, query.offset],
            ).fetchall()
        return Page(
            items=[self._content_from_row(r) for r in rows],
            total=int(total),
            page=query.page,
            limit=query.limit,
        )

    def count_content_by(self, kind: str, field_name: str) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT coalesce(data->>%s, 'None') AS value, count(*) AS n
                FROM content_item WHERE kind = %s GROUP BY 1
                """,
                (field_name, kind),
            ).fetchall()
        counts = {}
        for r in rows:
            value = r["value"]
            # jsonb booleans come back as 'true'/'false'; match str(True) in memory
            if value in {"true", "false"}:
                value = value.capitalize()
            counts[value] = int(r["n"])
        return counts
