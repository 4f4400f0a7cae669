from __future__ import annotations

import threading
from typing import Optional

from venuehub.config import get_settings, reset_settings_cache
from venuehub.logging import get_logger
from venuehub.service.accounts import AccountService
from venuehub.service.auth import AuthService
from venuehub.service.credentials import CredentialStore
from venuehub.service.recovery import RecoveryService
from venuehub.service.totp import AttemptThrottle, TotpEngine
from venuehub.service.two_factor import TwoFactorService
from venuehub.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", fs_root=self.settings.shared_fs_root)

        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                mfa_encryption_key=self.settings.mfa_secret_key,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.totp = TotpEngine(
            self.settings.issuer, secret_length=self.settings.totp_secret_length
        )
        self.throttle = AttemptThrottle(
            max_attempts=self.settings.mfa_max_attempts,
            lockout_seconds=self.settings.mfa_lockout_seconds,
            window_seconds=self.settings.mfa_attempt_window_seconds,
        )
        self.credentials = CredentialStore(
            self.store, self.totp, self.throttle, self.settings
        )
        self.auth = AuthService(self.store, self.credentials, self.settings)
        self.two_factor = TwoFactorService(self.store, self.credentials)
        self.recovery = RecoveryService(self.store, self.credentials)
        self.accounts = AccountService(self.store, self.credentials, self.settings)
        logger.info("runtime_init_completed", issuer=self.settings.issuer)


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked check is the fast path, the
    locked one prevents two threads from both building a Runtime.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
