from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from venuehub.config import Settings
from venuehub.logging import get_logger
from venuehub.service.credentials import CredentialStore
from venuehub.service.errors import AuthenticationError, InvalidTokenError, RateLimitedError
from venuehub.storage.memory import MemoryStore
from venuehub.storage.models import (
    ANONYMOUS,
    Account,
    Authenticated,
    Identity,
    Pending,
    Session,
    SessionState,
    utcnow,
)

# Shared by every login failure so clients cannot tell which check failed
GENERIC_LOGIN_FAILURE = "invalid username or password"

STATUS_OK = "ok"
STATUS_2FA_REQUIRED = "2fa_required"


@dataclass
class LoginResult:
    status: str
    session: Session
    identity: Optional[Identity] = None

    @property
    def requires_2fa(self) -> bool:
        return self.status == STATUS_2FA_REQUIRED


class AuthService:
    """Drives a session through Anonymous -> Pending -> Authenticated.

    Every method takes the caller's ``Session`` and returns the session the
    caller should keep using; the id changes when a session is promoted to
    Authenticated.
    """

    def __init__(
        self, store: MemoryStore, credentials: CredentialStore, settings: Settings
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.settings = settings
        self.logger = get_logger(__name__)

    def _set_state(self, session: Session, state: SessionState) -> Session:
        updated = self.store.save_session_state(session.id, state)
        if updated is None:
            # Session expired or was revoked underneath us
            updated = self.store.create_session(self.settings.session_ttl_minutes, state)
        return updated

    def _establish(self, session: Session, account: Account) -> LoginResult:
        identity = Identity(
            account_id=account.id,
            username=account.username,
            role=account.role,
            login_at=utcnow(),
        )
        rotated = self.store.create_session(
            self.settings.session_ttl_minutes, Authenticated(identity=identity)
        )
        if isinstance(session.state, Pending):
            # A duplicate of the verifying request may still arrive on the old id
            self.store.retire_session(
                session.id, rotated.id, self.settings.pending_2fa_ttl_seconds
            )
        else:
            self.store.revoke_session(session.id)
        self.logger.info("login_succeeded", account_id=account.id, role=account.role.value)
        return LoginResult(status=STATUS_OK, session=rotated, identity=identity)

    def _pending_expired(self, pending: Pending) -> bool:
        ttl = timedelta(seconds=self.settings.pending_2fa_ttl_seconds)
        return pending.since + ttl <= utcnow()

    async def login(
        self,
        session: Session,
        username: str,
        password: str,
        code: Optional[str] = None,
    ) -> LoginResult:
        account = self.store.get_account_by_username(username)
        if account and self.credentials.throttle.is_locked(account.id):
            # Locked accounts fail identically for right and wrong passwords
            self._set_state(session, ANONYMOUS)
            self.logger.info("login_failed", account_id=account.id, reason="locked_out")
            raise AuthenticationError(GENERIC_LOGIN_FAILURE)
        if not account or not self.credentials.verify_password(account, password):
            self._set_state(session, ANONYMOUS)
            self.logger.info("login_failed", reason="bad_credentials")
            raise AuthenticationError(GENERIC_LOGIN_FAILURE)

        if not account.two_factor_enabled:
            return self._establish(session, account)

        pending_session = self._set_state(
            session, Pending(account_id=account.id, username=account.username)
        )
        if not code:
            self.logger.info("login_pending_2fa", account_id=account.id)
            return LoginResult(status=STATUS_2FA_REQUIRED, session=pending_session)

        try:
            accepted = self.credentials.verify_code(account, code)
        except RateLimitedError:
            self._set_state(pending_session, ANONYMOUS)
            self.logger.info("login_failed", account_id=account.id, reason="locked_out")
            raise AuthenticationError(GENERIC_LOGIN_FAILURE) from None
        if not accepted:
            self.logger.info("login_failed", account_id=account.id, reason="bad_code")
            raise InvalidTokenError(GENERIC_LOGIN_FAILURE, error_code="unauthorized")
        return self._establish(pending_session, account)

    async def _resume_promoted(self, session: Session, code: str) -> LoginResult:
        """Answer a repeat of a second-factor submission that already succeeded."""
        rotated = self.store.get_session(session.promoted_to)
        identity = rotated.identity if rotated else None
        account = self.store.get_account(identity.account_id) if identity else None
        if account is None:
            raise AuthenticationError("no login is awaiting verification")
        if not self.credentials.verify_code(account, code):
            self.logger.info("login_failed", account_id=account.id, reason="bad_code")
            raise InvalidTokenError(GENERIC_LOGIN_FAILURE, error_code="unauthorized")
        self.logger.info("login_verification_repeated", account_id=account.id)
        return LoginResult(status=STATUS_OK, session=rotated, identity=identity)

    async def verify_pending(self, session: Session, code: str) -> LoginResult:
        """Complete a login that is waiting on its second factor."""
        if isinstance(session.state, Authenticated):
            # Double submit of a code that already succeeded
            return LoginResult(status=STATUS_OK, session=session, identity=session.identity)
        if session.promoted_to:
            return await self._resume_promoted(session, code)

        pending = session.pending
        if pending is None:
            raise AuthenticationError("no login is awaiting verification")
        if self._pending_expired(pending):
            self._set_state(session, ANONYMOUS)
            self.logger.info("login_pending_expired", account_id=pending.account_id)
            raise AuthenticationError("login verification expired; sign in again")

        account = self.store.get_account(pending.account_id)
        if not account or not account.two_factor_enabled:
            self._set_state(session, ANONYMOUS)
            raise AuthenticationError(GENERIC_LOGIN_FAILURE)

        if not self.credentials.verify_code(account, code):
            self.logger.info("login_failed", account_id=account.id, reason="bad_code")
            raise InvalidTokenError(GENERIC_LOGIN_FAILURE, error_code="unauthorized")
        return self._establish(session, account)

    async def current_identity(self, session: Optional[Session]) -> Optional[Identity]:
        if session is None or not isinstance(session.state, Authenticated):
            return None
        identity = session.state.identity
        if self.store.get_account(identity.account_id) is None:
            self.store.revoke_session(session.id)
            return None
        return identity

    async def logout(self, session: Optional[Session]) -> None:
        if session is None:
            return
        self.store.revoke_session(session.id)
        self.logger.info("logout", had_identity=session.identity is not None)
