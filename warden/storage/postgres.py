from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from warden.logging import get_logger
from warden.service.roles import Role, RoleAssignment, RoleTemplate
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    Account,
    AccountStatus,
    ApiKey,
    IdentityLink,
    PasskeyChallenge,
    PasskeyChallengeType,
    PasskeyCredential,
    Session,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS warden_account (
        id TEXT PRIMARY KEY,
        username TEXT,
        email TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        password_hash TEXT,
        status TEXT NOT NULL,
        locked_until TIMESTAMPTZ,
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        must_reset_password BOOLEAN NOT NULL DEFAULT FALSE,
        is_anonymous BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL,
        last_login_at TIMESTAMPTZ,
        last_failed_login_at TIMESTAMPTZ,
        grants JSONB NOT NULL DEFAULT '[]'::jsonb,
        role_assignments JSONB NOT NULL DEFAULT '[]'::jsonb,
        CONSTRAINT warden_account_username_key UNIQUE (username),
        CONSTRAINT warden_account_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS warden_identity_link (
        provider TEXT NOT NULL,
        subject TEXT NOT NULL,
        account_id TEXT NOT NULL REFERENCES warden_account(id) ON DELETE CASCADE,
        email TEXT,
        linked_at TIMESTAMPTZ,
        CONSTRAINT warden_identity_link_pkey PRIMARY KEY (provider, subject)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS warden_role (
        id TEXT PRIMARY KEY,
        code TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        is_system BOOLEAN NOT NULL DEFAULT FALSE,
        templates JSONB NOT NULL DEFAULT '[]'::jsonb,
        CONSTRAINT warden_role_code_key UNIQUE (code)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS warden_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES warden_account(id) ON DELETE CASCADE,
        refresh_token_hash TEXT NOT NULL,
        previous_refresh_token_hash TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        rotated_at TIMESTAMPTZ,
        revoked_at TIMESTAMPTZ,
        generation INTEGER NOT NULL DEFAULT 0,
        device_name TEXT,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS warden_session_user_idx ON warden_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS warden_refresh_hash (
        token_hash TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES warden_session(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS warden_passkey_challenge (
        id TEXT PRIMARY KEY,
        challenge BYTEA NOT NULL,
        user_id TEXT,
        type TEXT NOT NULL,
        options_json TEXT NOT NULL,
        credential_name TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS warden_passkey (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES warden_account(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        credential_id BYTEA NOT NULL,
        public_key BYTEA NOT NULL,
        sign_count BIGINT NOT NULL DEFAULT 0,
        aaguid TEXT NOT NULL,
        user_handle BYTEA NOT NULL,
        attestation_format TEXT NOT NULL DEFAULT 'none',
        credential_type TEXT NOT NULL DEFAULT 'public-key',
        registered_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ,
        CONSTRAINT warden_passkey_credential_id_key UNIQUE (credential_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS warden_api_key (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES warden_account(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        scope JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS warden_api_key_user_idx ON warden_api_key (user_id)",
)

_CONSTRAINT_FIELDS = {
    "warden_account_username_key": "username",
    "warden_account_email_key": "email",
    "warden_identity_link_pkey": "identity",
    "warden_role_code_key": "code",
    "warden_passkey_credential_id_key": "credential_id",
    "warden_refresh_hash_pkey": "refresh_token_hash",
}


def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    name = getattr(exc.diag, "constraint_name", None) or ""
    field = _CONSTRAINT_FIELDS.get(name, name or "unknown")
    return ConstraintViolation(f"{field} already exists", {"field": field})


def _json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError:
            return default
    return value


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresStore:
    """Postgres-backed auth store. Schema is created by ``ensure_schema``."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create tables and indexes if they are missing. Safe to run repeatedly."""
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ensured", tables=7)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    # -- accounts ------------------------------------------------------

    def _account_from_row(self, row: Dict[str, Any], links: List[Dict[str, Any]]) -> Account:
        return Account.reconstruct(
            grants=_json(row.get("grants"), []),
            role_assignments=[
                RoleAssignment.create(entry["role_id"], entry.get("bindings"))
                for entry in _json(row.get("role_assignments"), [])
            ],
            identity_links=[
                IdentityLink(
                    provider=link["provider"],
                    subject=link["subject"],
                    email=link.get("email"),
                    linked_at=_aware(link.get("linked_at")),
                )
                for link in links
            ],
            id=str(row["id"]),
            username=row.get("username"),
            email=row.get("email"),
            email_verified=bool(row.get("email_verified")),
            password_hash=row.get("password_hash"),
            status=row["status"],
            locked_until=_aware(row.get("locked_until")),
            failed_login_count=int(row.get("failed_login_count") or 0),
            must_reset_password=bool(row.get("must_reset_password")),
            is_anonymous=bool(row.get("is_anonymous")),
            created_at=_aware(row["created_at"]),
            last_login_at=_aware(row.get("last_login_at")),
            last_failed_login_at=_aware(row.get("last_failed_login_at")),
        )

    def _fetch_account(self, where: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM warden_account WHERE {where}", params).fetchone()
            if not row:
                return None
            links = conn.execute(
                "SELECT * FROM warden_identity_link WHERE account_id = %s", (row["id"],)
            ).fetchall()
        return self._account_from_row(row, links)

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("id = %s", (account_id,))

    def get_account_by_username(self, username: str) -> Optional[Account]:
        return self._fetch_account("username = %s", (Account.normalize_username(username),))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = Account.normalize_email(email)
        if not normalized:
            return None
        return self._fetch_account("email = %s", (normalized,))

    def get_account_by_identity(self, provider: str, subject: str) -> Optional[Account]:
        return self._fetch_account(
            "id = (SELECT account_id FROM warden_identity_link WHERE provider = %s AND subject = %s)",
            (provider.strip().lower(), subject.strip()),
        )

    def list_stale_anonymous_accounts(self, cutoff: datetime) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM warden_account
                WHERE is_anonymous AND status <> %s
                  AND COALESCE(last_login_at, created_at) < %s
                """,
                (AccountStatus.DEACTIVATED.value, cutoff),
            ).fetchall()
            links: List[Dict[str, Any]] = []
            if rows:
                links = conn.execute(
                    "SELECT * FROM warden_identity_link WHERE account_id = ANY(%s)",
                    ([row["id"] for row in rows],),
                ).fetchall()
        return [
            self._account_from_row(row, [link for link in links if link["account_id"] == row["id"]])
            for row in rows
        ]

    def save_account(self, account: Account) -> Account:
        roles = [{"role_id": a.role_id, "bindings": a.params()} for a in account.role_assignments()]
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        """
                        INSERT INTO warden_account (
                            id, username, email, email_verified, password_hash, status,
                            locked_until, failed_login_count, must_reset_password, is_anonymous,
                            created_at, last_login_at, last_failed_login_at, grants, role_assignments
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb)
                        ON CONFLICT (id) DO UPDATE SET
                            username = EXCLUDED.username,
                            email = EXCLUDED.email,
                            email_verified = EXCLUDED.email_verified,
                            password_hash = EXCLUDED.password_hash,
                            status = EXCLUDED.status,
                            locked_until = EXCLUDED.locked_until,
                            failed_login_count = EXCLUDED.failed_login_count,
                            must_reset_password = EXCLUDED.must_reset_password,
                            last_login_at = EXCLUDED.last_login_at,
                            last_failed_login_at = EXCLUDED.last_failed_login_at,
                            grants = EXCLUDED.grants,
                            role_assignments = EXCLUDED.role_assignments
                        """,
                        (
                            account.id,
                            account.username,
                            account.email,
                            account.email_verified,
                            account.password_hash,
                            account.status.value,
                            account.locked_until,
                            account.failed_login_count,
                            account.must_reset_password,
                            account.is_anonymous,
                            account.created_at,
                            account.last_login_at,
                            account.last_failed_login_at,
                            json.dumps(account.permissions()),
                            json.dumps(roles),
                        ),
                    )
                    conn.execute("DELETE FROM warden_identity_link WHERE account_id = %s", (account.id,))
                    for link in account.identity_links():
                        conn.execute(
                            """
                            INSERT INTO warden_identity_link (provider, subject, account_id, email, linked_at)
                            VALUES (%s, %s, %s, %s, %s)
                            """,
                            (link.provider, link.subject, account.id, link.email, link.linked_at),
                        )
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return account

    # -- roles ---------------------------------------------------------

    def _role_from_row(self, row: Dict[str, Any]) -> Role:
        return Role(
            id=str(row["id"]),
            code=row["code"],
            name=row["name"],
            description=row.get("description"),
            is_system=bool(row.get("is_system")),
            templates=[RoleTemplate.parse(t) for t in _json(row.get("templates"), [])],
        )

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM warden_role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_code(self, code: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM warden_role WHERE code = %s", (code,)).fetchone()
        return self._role_from_row(row) if row else None

    def save_role(self, role: Role) -> Role:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO warden_role (id, code, name, description, is_system, templates)
                    VALUES (%s, %s, %s, %s, %s, %s::jsonb)
                    ON CONFLICT (id) DO UPDATE SET
                        code = EXCLUDED.code,
                        name = EXCLUDED.name,
                        description = EXCLUDED.description,
                        templates = EXCLUDED.templates
                    """,
                    (
                        role.id,
                        role.code,
                        role.name,
                        role.description,
                        role.is_system,
                        json.dumps([str(t) for t in role.templates]),
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return role

    def delete_role(self, role_id: str) -> bool:
        role = self.get_role(role_id)
        if role is None:
            return False
        if role.is_system:
            raise ConstraintViolation("system roles cannot be deleted", {"field": "role_id"})
        with self._connect() as conn:
            conn.execute("DELETE FROM warden_role WHERE id = %s", (role_id,))
        return True

    # -- sessions ------------------------------------------------------

    def _session_from_row(self, row: Dict[str, Any]) -> Session:
        return Session.reconstruct(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            previous_refresh_token_hash=row.get("previous_refresh_token_hash"),
            created_at=_aware(row["created_at"]),
            last_used_at=_aware(row["last_used_at"]),
            expires_at=_aware(row["expires_at"]),
            rotated_at=_aware(row.get("rotated_at")),
            revoked_at=_aware(row.get("revoked_at")),
            generation=int(row.get("generation") or 0),
            device_name=row.get("device_name"),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        """
                        INSERT INTO warden_session (
                            id, user_id, refresh_token_hash, created_at, last_used_at, expires_at,
                            device_name, user_agent, ip_addr
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            session.id,
                            session.user_id,
                            session.refresh_token_hash,
                            session.created_at,
                            session.last_used_at,
                            session.expires_at,
                            session.device_name,
                            session.user_agent,
                            session.ip_addr,
                        ),
                    )
                    conn.execute(
                        "INSERT INTO warden_refresh_hash (token_hash, session_id) VALUES (%s, %s)",
                        (session.refresh_token_hash, session.id),
                    )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id}) from exc
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM warden_session WHERE id = %s", (session_id,)).fetchone()
        return self._session_from_row(row) if row else None

    def find_session_by_hash(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT s.* FROM warden_session s
                JOIN warden_refresh_hash h ON h.session_id = s.id
                WHERE h.token_hash = %s
                """,
                (token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def save_session(self, session: Session) -> Session:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE warden_session SET
                    last_used_at = %s, expires_at = %s, revoked_at = %s,
                    device_name = %s, user_agent = %s, ip_addr = %s
                WHERE id = %s
                """,
                (
                    session.last_used_at,
                    session.expires_at,
                    session.revoked_at,
                    session.device_name,
                    session.user_agent,
                    session.ip_addr,
                    session.id,
                ),
            )
        return session

    def rotate_session_hash(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        new_expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[Session]:
        now = now or datetime.now(timezone.utc)
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        UPDATE warden_session SET
                            previous_refresh_token_hash = refresh_token_hash,
                            refresh_token_hash = %s,
                            expires_at = %s,
                            last_used_at = %s,
                            rotated_at = %s,
                            generation = generation + 1
                        WHERE id = %s AND refresh_token_hash = %s AND revoked_at IS NULL
                        RETURNING *
                        """,
                        (new_hash, new_expires_at, now, now, session_id, expected_hash),
                    ).fetchone()
                    if not row:
                        return None
                    conn.execute(
                        "INSERT INTO warden_refresh_hash (token_hash, session_id) VALUES (%s, %s)",
                        (new_hash, session_id),
                    )
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return self._session_from_row(row)

    def revoke_session(self, session_id: str, now: Optional[datetime] = None) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE warden_session SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL RETURNING id",
                (now or datetime.now(timezone.utc), session_id),
            ).fetchone()
        return row is not None

    def revoke_user_sessions(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        now = now or datetime.now(timezone.utc)
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE warden_session SET revoked_at = %s
                WHERE user_id = %s AND revoked_at IS NULL
                  AND (%s::text IS NULL OR id <> %s::text)
                RETURNING id
                """,
                (now, user_id, except_session_id, except_session_id),
            ).fetchall()
        return len(rows)

    def list_sessions(
        self, user_id: str, *, include_inactive: bool = False, now: Optional[datetime] = None
    ) -> List[Session]:
        now = now or datetime.now(timezone.utc)
        query = "SELECT * FROM warden_session WHERE user_id = %s"
        params: tuple = (user_id,)
        if not include_inactive:
            query += " AND revoked_at IS NULL AND expires_at > %s"
            params = (user_id, now)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at DESC", params).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM warden_session WHERE expires_at <= %s RETURNING id",
                (now or datetime.now(timezone.utc),),
            ).fetchall()
        return len(rows)

    # -- passkey challenges --------------------------------------------

    def _challenge_from_row(self, row: Dict[str, Any]) -> PasskeyChallenge:
        return PasskeyChallenge(
            id=str(row["id"]),
            challenge=bytes(row["challenge"]),
            user_id=row.get("user_id"),
            type=PasskeyChallengeType(row["type"]),
            options_json=row["options_json"],
            credential_name=row.get("credential_name"),
            created_at=_aware(row["created_at"]),
            expires_at=_aware(row["expires_at"]),
        )

    def save_passkey_challenge(self, challenge: PasskeyChallenge) -> PasskeyChallenge:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO warden_passkey_challenge (
                    id, challenge, user_id, type, options_json, credential_name, created_at, expires_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    challenge.id,
                    challenge.challenge,
                    challenge.user_id,
                    challenge.type.value,
                    challenge.options_json,
                    challenge.credential_name,
                    challenge.created_at,
                    challenge.expires_at,
                ),
            )
        return challenge

    def get_passkey_challenge(self, challenge_id: str) -> Optional[PasskeyChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM warden_passkey_challenge WHERE id = %s", (challenge_id,)
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def take_passkey_challenge(self, challenge_id: str) -> Optional[PasskeyChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM warden_passkey_challenge WHERE id = %s RETURNING *", (challenge_id,)
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def delete_passkey_challenge(self, challenge_id: str) -> bool:
        return self.take_passkey_challenge(challenge_id) is not None

    def delete_expired_passkey_challenges(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM warden_passkey_challenge WHERE expires_at < %s RETURNING id",
                (now or datetime.now(timezone.utc),),
            ).fetchall()
        return len(rows)

    # -- passkey credentials -------------------------------------------

    def _passkey_from_row(self, row: Dict[str, Any]) -> PasskeyCredential:
        return PasskeyCredential(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=row["name"],
            credential_id=bytes(row["credential_id"]),
            public_key=bytes(row["public_key"]),
            sign_count=int(row["sign_count"]),
            aaguid=row["aaguid"],
            user_handle=bytes(row["user_handle"]),
            attestation_format=row.get("attestation_format") or "none",
            credential_type=row.get("credential_type") or "public-key",
            registered_at=_aware(row["registered_at"]),
            last_used_at=_aware(row.get("last_used_at")),
        )

    def save_passkey(self, credential: PasskeyCredential) -> PasskeyCredential:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO warden_passkey (
                        id, user_id, name, credential_id, public_key, sign_count, aaguid,
                        user_handle, attestation_format, credential_type, registered_at, last_used_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        name = EXCLUDED.name,
                        sign_count = EXCLUDED.sign_count,
                        last_used_at = EXCLUDED.last_used_at
                    """,
                    (
                        credential.id,
                        credential.user_id,
                        credential.name,
                        credential.credential_id,
                        credential.public_key,
                        credential.sign_count,
                        credential.aaguid,
                        credential.user_handle,
                        credential.attestation_format,
                        credential.credential_type,
                        credential.registered_at,
                        credential.last_used_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("passkey user missing", {"user_id": credential.user_id}) from exc
        return credential

    def get_passkey(self, passkey_id: str) -> Optional[PasskeyCredential]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM warden_passkey WHERE id = %s", (passkey_id,)).fetchone()
        return self._passkey_from_row(row) if row else None

    def get_passkey_by_credential_id(self, credential_id: bytes) -> Optional[PasskeyCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM warden_passkey WHERE credential_id = %s", (credential_id,)
            ).fetchone()
        return self._passkey_from_row(row) if row else None

    def list_passkeys(self, user_id: str) -> List[PasskeyCredential]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM warden_passkey WHERE user_id = %s ORDER BY registered_at", (user_id,)
            ).fetchall()
        return [self._passkey_from_row(row) for row in rows]

    def update_passkey_sign_count(
        self,
        passkey_id: str,
        expected_count: int,
        new_count: int,
        now: Optional[datetime] = None,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE warden_passkey SET sign_count = %s, last_used_at = %s
                WHERE id = %s AND sign_count = %s AND %s > sign_count
                RETURNING id
                """,
                (new_count, now or datetime.now(timezone.utc), passkey_id, expected_count, new_count),
            ).fetchone()
        return row is not None

    def delete_passkey(self, passkey_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM warden_passkey WHERE id = %s RETURNING id", (passkey_id,)
            ).fetchone()
        return row is not None

    # -- api keys ------------------------------------------------------

    def _api_key_from_row(self, row: Dict[str, Any]) -> ApiKey:
        return ApiKey(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=row["name"],
            scope=tuple(_json(row.get("scope"), [])),
            created_at=_aware(row["created_at"]),
            expires_at=_aware(row["expires_at"]),
            last_used_at=_aware(row.get("last_used_at")),
            revoked_at=_aware(row.get("revoked_at")),
        )

    def save_api_key(self, api_key: ApiKey) -> ApiKey:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO warden_api_key (
                        id, user_id, name, scope, created_at, expires_at, last_used_at, revoked_at
                    )
                    VALUES (%s, %s, %s, %s::jsonb, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        last_used_at = EXCLUDED.last_used_at,
                        revoked_at = EXCLUDED.revoked_at
                    """,
                    (
                        api_key.id,
                        api_key.user_id,
                        api_key.name,
                        json.dumps(list(api_key.scope)),
                        api_key.created_at,
                        api_key.expires_at,
                        api_key.last_used_at,
                        api_key.revoked_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("api key user missing", {"user_id": api_key.user_id}) from exc
        return api_key

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM warden_api_key WHERE id = %s", (key_id,)).fetchone()
        return self._api_key_from_row(row) if row else None

    def list_api_keys(self, user_id: str) -> List[ApiKey]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM warden_api_key WHERE user_id = %s ORDER BY created_at DESC", (user_id,)
            ).fetchall()
        return [self._api_key_from_row(row) for row in rows]

    def count_active_api_keys(self, user_id: str, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS active FROM warden_api_key
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (user_id, now or datetime.now(timezone.utc)),
            ).fetchone()
        return int(row["active"]) if row else 0
