from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from venuehub.logging import get_logger
from venuehub.storage.errors import ConstraintViolation
from venuehub.storage.models import (
    ANONYMOUS,
    Account,
    Anonymous,
    Authenticated,
    Identity,
    Pending,
    Role,
    Session,
    SessionState,
    utcnow,
)

# Fields callers may change through update_account / update_account_if
_MUTABLE_ACCOUNT_FIELDS = {
    "password_hash",
    "role",
    "two_factor_secret",
    "two_factor_enabled",
    "emergency_reset_codes",
}


class MemoryStore:
    """Thread-safe in-memory account and session store persisted as JSON."""

    def __init__(
        self, fs_root: str = "/tmp/venuehub", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can re-enter while a write holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY")
        if not material:
            key_path = self.fs_root / ".mfa_key"
            try:
                if key_path.exists():
                    material = key_path.read_text().strip()
            except OSError as exc:
                self.logger.warning("mfa_key_read_failed", error=str(exc), path=str(key_path))
            if not material:
                generated = secrets.token_urlsafe(64)
                try:
                    key_path.write_text(generated)
                    os.chmod(key_path, 0o600)
                    material = generated
                except OSError as exc:
                    raise RuntimeError("Unable to persist MFA encryption key") from exc
        try:
            return Fernet(self._derive_cipher_key(material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("mfa_secret_decrypt_failed")
            raise RuntimeError("stored 2FA secret cannot be decrypted with the configured key") from exc

    def _public_copy(self, stored: Account) -> Account:
        """Detached copy with the TOTP secret decrypted."""
        return replace(
            stored,
            two_factor_secret=self._decrypt_secret(stored.two_factor_secret),
            emergency_reset_codes=list(stored.emergency_reset_codes),
        )

    # accounts
    def create_account(
        self, username: str, password_hash: str, *, role: Role = Role.USER
    ) -> Account:
        with self._data_lock:
            if any(existing.username == username for existing in self.accounts.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            account = Account(
                id=str(uuid.uuid4()),
                username=username,
                password_hash=password_hash,
                role=Role(role),
            )
            self.accounts[account.id] = account
            self._persist_state()
            return self._public_copy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            stored = self.accounts.get(account_id)
            return self._public_copy(stored) if stored else None

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            stored = next(
                (a for a in self.accounts.values() if a.username == username), None
            )
            return self._public_copy(stored) if stored else None

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._data_lock:
            ordered = sorted(self.accounts.values(), key=lambda a: a.created_at)
            return [self._public_copy(a) for a in ordered[:limit]]

    def update_account_if(
        self, account_id: str, expected_version: Optional[int], **changes: Any
    ) -> Optional[Account]:
        """Apply ``changes`` only if the stored version still equals ``expected_version``.

        Returns the updated account, or None when another write got there first.
        ``expected_version=None`` applies the change unconditionally.
        """
        illegal = set(changes) - _MUTABLE_ACCOUNT_FIELDS
        if illegal:
            raise ConstraintViolation(
                "account fields are immutable", {"fields": sorted(illegal)}
            )
        with self._data_lock:
            stored = self.accounts.get(account_id)
            if not stored:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            if expected_version is not None and stored.version != expected_version:
                self.logger.info(
                    "account_update_version_mismatch",
                    account_id=account_id,
                    expected=expected_version,
                    actual=stored.version,
                )
                return None
            if "two_factor_secret" in changes:
                changes["two_factor_secret"] = self._encrypt_secret(changes["two_factor_secret"])
            if "role" in changes:
                changes["role"] = Role(changes["role"])
            if "emergency_reset_codes" in changes:
                changes["emergency_reset_codes"] = list(changes["emergency_reset_codes"])
            updated = replace(stored, version=stored.version + 1, **changes)
            if updated.two_factor_enabled and not updated.two_factor_secret:
                raise ConstraintViolation(
                    "two-factor cannot be enabled without a secret", {"account_id": account_id}
                )
            self.accounts[account_id] = updated
            self._persist_state()
            return self._public_copy(updated)

    def update_account(self, account_id: str, **changes: Any) -> Account:
        updated = self.update_account_if(account_id, None, **changes)
        if updated is None:
            raise ConstraintViolation("account update was not applied", {"account_id": account_id})
        return updated

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.accounts:
                return False
            self.accounts.pop(account_id, None)
            self._drop_account_sessions(account_id)
            self._persist_state()
            return True

    # sessions
    def create_session(
        self, ttl_minutes: int = 60 * 24, state: SessionState = ANONYMOUS
    ) -> Session:
        with self._data_lock:
            sess = Session.new(ttl_minutes=ttl_minutes, state=state)
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess and sess.is_expired():
                self.sessions.pop(session_id, None)
                self._persist_state()
                return None
            return replace(sess) if sess else None

    def save_session_state(self, session_id: str, state: SessionState) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            sess.state = state
            sess.promoted_to = None
            self._persist_state()
            return replace(sess)

    def retire_session(self, session_id: str, successor_id: str, grace_seconds: int) -> None:
        """Strip the state from ``session_id`` and link it to ``successor_id``.

        The retired id stays resolvable for at most ``grace_seconds``.
        """
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.state = ANONYMOUS
            sess.promoted_to = successor_id
            sess.expires_at = min(sess.expires_at, utcnow() + timedelta(seconds=grace_seconds))
            self._persist_state()

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None) is not None:
                self._persist_state()

    def revoke_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            revoked = self._drop_account_sessions(account_id, except_session_id)
            if revoked:
                self._persist_state()
            return revoked

    def purge_expired_sessions(self) -> int:
        with self._data_lock:
            now = utcnow()
            expired = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in expired:
                self.sessions.pop(sid, None)
            if expired:
                self._persist_state()
            return len(expired)

    def _drop_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int:
        stale = [
            sid
            for sid, sess in self.sessions.items()
            if sid != except_session_id and _state_account_id(sess.state) == account_id
        ]
        for sid in stale:
            self.sessions.pop(sid, None)
        return len(stale)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        return True

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "username": account.username,
            "password_hash": account.password_hash,
            "role": account.role.value,
            "two_factor_secret": account.two_factor_secret,
            "two_factor_enabled": account.two_factor_enabled,
            "emergency_reset_codes": list(account.emergency_reset_codes),
            "created_at": self._serialize_datetime(account.created_at),
            "version": account.version,
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=data["id"],
            username=data["username"],
            password_hash=data["password_hash"],
            role=Role(data.get("role", Role.USER.value)),
            two_factor_secret=data.get("two_factor_secret"),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            emergency_reset_codes=list(data.get("emergency_reset_codes") or []),
            created_at=self._deserialize_datetime(data["created_at"]),
            version=int(data.get("version", 1)),
        )

    def _serialize_state(self, state: SessionState) -> dict:
        if isinstance(state, Pending):
            return {
                "kind": state.kind,
                "account_id": state.account_id,
                "username": state.username,
                "since": self._serialize_datetime(state.since),
            }
        if isinstance(state, Authenticated):
            ident = state.identity
            return {
                "kind": state.kind,
                "account_id": ident.account_id,
                "username": ident.username,
                "role": ident.role.value,
                "login_at": self._serialize_datetime(ident.login_at),
            }
        return {"kind": "anonymous"}

    def _deserialize_state(self, data: dict) -> SessionState:
        kind = data.get("kind")
        if kind == "pending":
            return Pending(
                account_id=data["account_id"],
                username=data["username"],
                since=self._deserialize_datetime(data["since"]),
            )
        if kind == "authenticated":
            return Authenticated(
                identity=Identity(
                    account_id=data["account_id"],
                    username=data["username"],
                    role=Role(data["role"]),
                    login_at=self._deserialize_datetime(data["login_at"]),
                )
            )
        return Anonymous()

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "state": self._serialize_state(session.state),
            "promoted_to": session.promoted_to,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            state=self._deserialize_state(data.get("state") or {}),
            promoted_to=data.get("promoted_to"),
        )


def _state_account_id(state: SessionState) -> Optional[str]:
    if isinstance(state, Pending):
        return state.account_id
    if isinstance(state, Authenticated):
        return state.identity.account_id
    return None
