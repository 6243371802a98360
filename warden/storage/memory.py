from __future__ import annotations

import base64
import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

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
    utcnow,
)


class MemoryStore:
    """In-process backing store with JSON snapshots under ``fs_root/state``.

    Every read hands out a copy and every write stores a copy, so callers
    observe the same load/mutate/save cycle as with Postgres.
    """

    def __init__(self, fs_root: str = "/tmp/warden", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.roles: Dict[str, Role] = {}
        self.sessions: Dict[str, Session] = {}
        # Every refresh hash a session has ever carried, so replays resolve to their lineage
        self.token_index: Dict[str, str] = {}
        self.challenges: Dict[str, PasskeyChallenge] = {}
        self.passkeys: Dict[str, PasskeyCredential] = {}
        self.api_keys: Dict[str, ApiKey] = {}
        # RLock so helpers may nest acquisitions within one thread
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "warden_state.json"

    def verify_connection(self) -> None:
        return None

    # -- accounts ------------------------------------------------------

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return copy.deepcopy(self.accounts.get(account_id))

    def get_account_by_username(self, username: str) -> Optional[Account]:
        wanted = Account.normalize_username(username)
        with self._data_lock:
            for account in self.accounts.values():
                if account.username == wanted:
                    return copy.deepcopy(account)
        return None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        wanted = Account.normalize_email(email)
        if not wanted:
            return None
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == wanted:
                    return copy.deepcopy(account)
        return None

    def get_account_by_identity(self, provider: str, subject: str) -> Optional[Account]:
        key = (provider.strip().lower(), subject.strip())
        with self._data_lock:
            for account in self.accounts.values():
                if any((link.provider, link.subject) == key for link in account.identity_links()):
                    return copy.deepcopy(account)
        return None

    def save_account(self, account: Account) -> Account:
        with self._data_lock:
            for other in self.accounts.values():
                if other.id == account.id:
                    continue
                if account.username and other.username == account.username:
                    raise ConstraintViolation("username already exists", {"field": "username"})
                if account.email and other.email == account.email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                taken = {(link.provider, link.subject) for link in other.identity_links()}
                for link in account.identity_links():
                    if (link.provider, link.subject) in taken:
                        raise ConstraintViolation(
                            "identity already linked",
                            {"field": "identity", "provider": link.provider},
                        )
            self.accounts[account.id] = copy.deepcopy(account)
            self._persist_state()
            return copy.deepcopy(account)

    def list_stale_anonymous_accounts(self, cutoff: datetime) -> List[Account]:
        with self._data_lock:
            return [
                copy.deepcopy(account)
                for account in self.accounts.values()
                if account.is_anonymous
                and account.status is not AccountStatus.DEACTIVATED
                and (account.last_login_at or account.created_at) < cutoff
            ]

    # -- roles ---------------------------------------------------------

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return copy.deepcopy(self.roles.get(role_id))

    def get_role_by_code(self, code: str) -> Optional[Role]:
        with self._data_lock:
            for role in self.roles.values():
                if role.code == code:
                    return copy.deepcopy(role)
        return None

    def save_role(self, role: Role) -> Role:
        with self._data_lock:
            for other in self.roles.values():
                if other.id != role.id and other.code == role.code:
                    raise ConstraintViolation("role code already exists", {"field": "code"})
            self.roles[role.id] = copy.deepcopy(role)
            self._persist_state()
            return copy.deepcopy(role)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            role = self.roles.get(role_id)
            if role is None:
                return False
            if role.is_system:
                raise ConstraintViolation("system roles cannot be deleted", {"field": "role_id"})
            del self.roles[role_id]
            self._persist_state()
            return True

    # -- sessions ------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.refresh_token_hash in self.token_index:
                raise ConstraintViolation("refresh token hash collision", {"field": "refresh_token_hash"})
            self.sessions[session.id] = copy.deepcopy(session)
            self.token_index[session.refresh_token_hash] = session.id
            self._persist_state()
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return copy.deepcopy(self.sessions.get(session_id))

    def find_session_by_hash(self, token_hash: str) -> Optional[Session]:
        """Resolve current or superseded refresh hashes to their session."""
        with self._data_lock:
            session_id = self.token_index.get(token_hash)
            if session_id is None:
                return None
            return copy.deepcopy(self.sessions.get(session_id))

    def save_session(self, session: Session) -> Session:
        with self._data_lock:
            self.sessions[session.id] = copy.deepcopy(session)
            self.token_index.setdefault(session.refresh_token_hash, session.id)
            self._persist_state()
            return copy.deepcopy(session)

    def rotate_session_hash(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        new_expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[Session]:
        """Compare-and-swap the current refresh hash. ``None`` when it no longer matches."""
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or session.revoked or session.refresh_token_hash != expected_hash:
                return None
            if new_hash in self.token_index:
                raise ConstraintViolation("refresh token hash collision", {"field": "refresh_token_hash"})
            session.rotate_refresh_token(new_hash, new_expires_at, now)
            self.token_index[new_hash] = session_id
            self._persist_state()
            return copy.deepcopy(session)

    def revoke_session(self, session_id: str, now: Optional[datetime] = None) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None:
                return False
            changed = session.revoke(now)
            if changed:
                self._persist_state()
            return changed

    def revoke_user_sessions(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        now = now or utcnow()
        revoked = 0
        with self._data_lock:
            for session in self.sessions.values():
                if session.user_id != user_id or session.id == except_session_id:
                    continue
                if session.revoke(now):
                    revoked += 1
            if revoked:
                self._persist_state()
        return revoked

    def list_sessions(
        self, user_id: str, *, include_inactive: bool = False, now: Optional[datetime] = None
    ) -> List[Session]:
        now = now or utcnow()
        with self._data_lock:
            sessions = [
                copy.deepcopy(s)
                for s in self.sessions.values()
                if s.user_id == user_id and (include_inactive or s.is_active(now))
            ]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [sid for sid, s in self.sessions.items() if s.is_expired(now)]
            for sid in expired:
                del self.sessions[sid]
            if expired:
                dropped = set(expired)
                self.token_index = {h: sid for h, sid in self.token_index.items() if sid not in dropped}
                self._persist_state()
        return len(expired)

    # -- passkey challenges --------------------------------------------

    def save_passkey_challenge(self, challenge: PasskeyChallenge) -> PasskeyChallenge:
        with self._data_lock:
            self.challenges[challenge.id] = copy.deepcopy(challenge)
            self._persist_state()
            return copy.deepcopy(challenge)

    def get_passkey_challenge(self, challenge_id: str) -> Optional[PasskeyChallenge]:
        with self._data_lock:
            return copy.deepcopy(self.challenges.get(challenge_id))

    def take_passkey_challenge(self, challenge_id: str) -> Optional[PasskeyChallenge]:
        """Remove and return the challenge; only one caller can ever receive it."""
        with self._data_lock:
            challenge = self.challenges.pop(challenge_id, None)
            if challenge is not None:
                self._persist_state()
            return challenge

    def delete_passkey_challenge(self, challenge_id: str) -> bool:
        return self.take_passkey_challenge(challenge_id) is not None

    def delete_expired_passkey_challenges(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [cid for cid, c in self.challenges.items() if c.is_expired(now)]
            for cid in expired:
                del self.challenges[cid]
            if expired:
                self._persist_state()
        return len(expired)

    # -- passkey credentials -------------------------------------------

    def save_passkey(self, credential: PasskeyCredential) -> PasskeyCredential:
        with self._data_lock:
            for other in self.passkeys.values():
                if other.id != credential.id and other.credential_id == credential.credential_id:
                    raise ConstraintViolation("credential already registered", {"field": "credential_id"})
            self.passkeys[credential.id] = copy.deepcopy(credential)
            self._persist_state()
            return copy.deepcopy(credential)

    def get_passkey(self, passkey_id: str) -> Optional[PasskeyCredential]:
        with self._data_lock:
            return copy.deepcopy(self.passkeys.get(passkey_id))

    def get_passkey_by_credential_id(self, credential_id: bytes) -> Optional[PasskeyCredential]:
        with self._data_lock:
            for credential in self.passkeys.values():
                if credential.credential_id == credential_id:
                    return copy.deepcopy(credential)
        return None

    def list_passkeys(self, user_id: str) -> List[PasskeyCredential]:
        with self._data_lock:
            creds = [copy.deepcopy(c) for c in self.passkeys.values() if c.user_id == user_id]
        return sorted(creds, key=lambda c: c.registered_at)

    def update_passkey_sign_count(
        self,
        passkey_id: str,
        expected_count: int,
        new_count: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """Advance the counter only if nobody else advanced it first."""
        with self._data_lock:
            credential = self.passkeys.get(passkey_id)
            if credential is None or credential.sign_count != expected_count:
                return False
            credential.record_use(new_count, now)
            self._persist_state()
            return True

    def delete_passkey(self, passkey_id: str) -> bool:
        with self._data_lock:
            removed = self.passkeys.pop(passkey_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    # -- api keys ------------------------------------------------------

    def save_api_key(self, api_key: ApiKey) -> ApiKey:
        with self._data_lock:
            self.api_keys[api_key.id] = copy.deepcopy(api_key)
            self._persist_state()
            return copy.deepcopy(api_key)

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        with self._data_lock:
            return copy.deepcopy(self.api_keys.get(key_id))

    def list_api_keys(self, user_id: str) -> List[ApiKey]:
        with self._data_lock:
            keys = [copy.deepcopy(k) for k in self.api_keys.values() if k.user_id == user_id]
        return sorted(keys, key=lambda k: k.created_at, reverse=True)

    def count_active_api_keys(self, user_id: str, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            return sum(1 for k in self.api_keys.values() if k.user_id == user_id and k.is_valid(now))

    # -- persistence ---------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    @staticmethod
    def _b64(data: bytes) -> str:
        return base64.b64encode(data).decode("ascii")

    @staticmethod
    def _unb64(raw: str) -> bytes:
        return base64.b64decode(raw)

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "roles": [self._serialize_role(r) for r in self.roles.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "token_index": self.token_index,
            "challenges": [self._serialize_challenge(c) for c in self.challenges.values()],
            "passkeys": [self._serialize_passkey(p) for p in self.passkeys.values()],
            "api_keys": [self._serialize_api_key(k) for k in self.api_keys.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])}
        self.roles = {r["id"]: self._deserialize_role(r) for r in data.get("roles", [])}
        self.sessions = {s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])}
        self.token_index = dict(data.get("token_index", {}))
        for session in self.sessions.values():
            self.token_index.setdefault(session.refresh_token_hash, session.id)
        self.challenges = {
            c["id"]: self._deserialize_challenge(c) for c in data.get("challenges", [])
        }
        self.passkeys = {p["id"]: self._deserialize_passkey(p) for p in data.get("passkeys", [])}
        self.api_keys = {k["id"]: self._deserialize_api_key(k) for k in data.get("api_keys", [])}
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            sessions=len(self.sessions),
            path=str(path),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "username": account.username,
            "email": account.email,
            "email_verified": account.email_verified,
            "password_hash": account.password_hash,
            "status": account.status.value,
            "locked_until": self._serialize_datetime(account.locked_until),
            "failed_login_count": account.failed_login_count,
            "must_reset_password": account.must_reset_password,
            "is_anonymous": account.is_anonymous,
            "created_at": self._serialize_datetime(account.created_at),
            "last_login_at": self._serialize_datetime(account.last_login_at),
            "last_failed_login_at": self._serialize_datetime(account.last_failed_login_at),
            "grants": account.permissions(),
            "roles": [
                {"role_id": a.role_id, "bindings": a.params()} for a in account.role_assignments()
            ],
            "identity_links": [
                {
                    "provider": link.provider,
                    "subject": link.subject,
                    "email": link.email,
                    "linked_at": self._serialize_datetime(link.linked_at),
                }
                for link in account.identity_links()
            ],
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account.reconstruct(
            grants=data.get("grants", []),
            role_assignments=[
                RoleAssignment.create(r["role_id"], r.get("bindings")) for r in data.get("roles", [])
            ],
            identity_links=[
                IdentityLink(
                    provider=link["provider"],
                    subject=link["subject"],
                    email=link.get("email"),
                    linked_at=self._deserialize_datetime(link.get("linked_at")),
                )
                for link in data.get("identity_links", [])
            ],
            id=data["id"],
            username=data.get("username"),
            email=data.get("email"),
            email_verified=data.get("email_verified", False),
            password_hash=data.get("password_hash"),
            status=data.get("status", "pending_activation"),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            failed_login_count=data.get("failed_login_count", 0),
            must_reset_password=data.get("must_reset_password", False),
            is_anonymous=data.get("is_anonymous", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            last_failed_login_at=self._deserialize_datetime(data.get("last_failed_login_at")),
        )

    def _serialize_role(self, role: Role) -> dict:
        return {
            "id": role.id,
            "code": role.code,
            "name": role.name,
            "description": role.description,
            "is_system": role.is_system,
            "templates": [str(t) for t in role.templates],
        }

    def _deserialize_role(self, data: dict) -> Role:
        return Role(
            id=data["id"],
            code=data["code"],
            name=data.get("name", data["code"]),
            description=data.get("description"),
            is_system=data.get("is_system", False),
            templates=[RoleTemplate.parse(t) for t in data.get("templates", [])],
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token_hash": session.refresh_token_hash,
            "previous_refresh_token_hash": session.previous_refresh_token_hash,
            "created_at": self._serialize_datetime(session.created_at),
            "last_used_at": self._serialize_datetime(session.last_used_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "rotated_at": self._serialize_datetime(session.rotated_at),
            "revoked_at": self._serialize_datetime(session.revoked_at),
            "generation": session.generation,
            "device_name": session.device_name,
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session.reconstruct(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token_hash=data["refresh_token_hash"],
            previous_refresh_token_hash=data.get("previous_refresh_token_hash"),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_used_at=self._deserialize_datetime(data.get("last_used_at") or data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            rotated_at=self._deserialize_datetime(data.get("rotated_at")),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            generation=data.get("generation", 0),
            device_name=data.get("device_name"),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
        )

    def _serialize_challenge(self, challenge: PasskeyChallenge) -> dict:
        return {
            "id": challenge.id,
            "challenge": self._b64(challenge.challenge),
            "user_id": challenge.user_id,
            "type": challenge.type.value,
            "options_json": challenge.options_json,
            "credential_name": challenge.credential_name,
            "created_at": self._serialize_datetime(challenge.created_at),
            "expires_at": self._serialize_datetime(challenge.expires_at),
        }

    def _deserialize_challenge(self, data: dict) -> PasskeyChallenge:
        return PasskeyChallenge(
            id=data["id"],
            challenge=self._unb64(data["challenge"]),
            user_id=data.get("user_id"),
            type=PasskeyChallengeType(data["type"]),
            options_json=data.get("options_json", "{}"),
            credential_name=data.get("credential_name"),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )

    def _serialize_passkey(self, credential: PasskeyCredential) -> dict:
        return {
            "id": credential.id,
            "user_id": credential.user_id,
            "name": credential.name,
            "credential_id": self._b64(credential.credential_id),
            "public_key": self._b64(credential.public_key),
            "sign_count": credential.sign_count,
            "aaguid": credential.aaguid,
            "user_handle": self._b64(credential.user_handle),
            "attestation_format": credential.attestation_format,
            "credential_type": credential.credential_type,
            "registered_at": self._serialize_datetime(credential.registered_at),
            "last_used_at": self._serialize_datetime(credential.last_used_at),
        }

    def _deserialize_passkey(self, data: dict) -> PasskeyCredential:
        return PasskeyCredential(
            id=data["id"],
            user_id=data["user_id"],
            name=data["name"],
            credential_id=self._unb64(data["credential_id"]),
            public_key=self._unb64(data["public_key"]),
            sign_count=int(data.get("sign_count", 0)),
            aaguid=data.get("aaguid", ""),
            user_handle=self._unb64(data.get("user_handle", "")),
            attestation_format=data.get("attestation_format", "none"),
            credential_type=data.get("credential_type", "public-key"),
            registered_at=self._deserialize_datetime(data["registered_at"]),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
        )

    def _serialize_api_key(self, api_key: ApiKey) -> dict:
        return {
            "id": api_key.id,
            "user_id": api_key.user_id,
            "name": api_key.name,
            "scope": list(api_key.scope),
            "created_at": self._serialize_datetime(api_key.created_at),
            "expires_at": self._serialize_datetime(api_key.expires_at),
            "last_used_at": self._serialize_datetime(api_key.last_used_at),
            "revoked_at": self._serialize_datetime(api_key.revoked_at),
        }

    def _deserialize_api_key(self, data: dict) -> ApiKey:
        return ApiKey(
            id=data["id"],
            user_id=data["user_id"],
            name=data["name"],
            scope=tuple(data.get("scope", [])),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )
