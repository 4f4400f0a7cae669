from __future__ import annotations

import base64
import io
import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import pyotp
import qrcode

from venuehub.logging import get_logger
from venuehub.service.errors import RateLimitedError

logger = get_logger(__name__)

_CODE_PATTERN = re.compile(r"[0-9]{6}")


class TotpEngine:
    """RFC 6238 codes (SHA1, 6 digits, 30s steps) compatible with authenticator apps."""

    def __init__(
        self, issuer: str, *, secret_length: int = 32, interval: int = 30, digits: int = 6
    ) -> None:
        self.issuer = issuer
        self.secret_length = secret_length
        self.interval = interval
        self.digits = digits

    def generate_secret(self) -> str:
        # 32 base32 chars carry 160 bits of entropy
        return pyotp.random_base32(length=self.secret_length)

    def provisioning_uri(self, secret: str, username: str) -> str:
        totp = pyotp.TOTP(secret, digits=self.digits, interval=self.interval)
        return totp.provisioning_uri(name=username, issuer_name=self.issuer)

    def verify(
        self,
        secret: str,
        code: Optional[str],
        window: int = 1,
        *,
        for_time: Optional[datetime] = None,
    ) -> bool:
        """Check ``code`` against the current step and ``window`` steps either side.

        Malformed codes are rejected before any HMAC is computed.
        """
        if not secret or not code or not _CODE_PATTERN.fullmatch(code):
            return False
        totp = pyotp.TOTP(secret, digits=self.digits, interval=self.interval)
        try:
            return totp.verify(code, for_time=for_time, valid_window=window)
        except (ValueError, TypeError):
            logger.warning("totp_secret_invalid")
            return False


def qr_data_uri(provisioning_uri: str) -> str:
    """Render a provisioning URI as a PNG data URI for the setup screen."""
    img = qrcode.make(provisioning_uri)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    data = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/png;base64,{data}"


class AttemptThrottle:
    """Per-account failed-code counter with a temporary lockout.

    Failures are counted inside a sliding window of ``window_seconds``; the
    ``max_attempts``-th failure locks the account for ``lockout_seconds``.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        lockout_seconds: int = 300,
        window_seconds: int = 300,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.lockout = timedelta(seconds=lockout_seconds)
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._state_lock = threading.Lock()
        self._attempts: dict[str, tuple[int, datetime]] = {}  # account_id -> (count, window_start)
        self._lockouts: dict[str, datetime] = {}  # account_id -> locked_until

    def check(self, account_id: str) -> None:
        """Raise RateLimitedError while the account is locked out."""
        now = self._clock()
        with self._state_lock:
            locked_until = self._lockouts.get(account_id)
            if locked_until and locked_until > now:
                retry_after = int((locked_until - now).total_seconds()) + 1
                logger.warning("mfa_locked_out", account_id=account_id, retry_after=retry_after)
                raise RateLimitedError(
                    "too many failed attempts; try again later",
                    detail={"retry_after": retry_after},
                )
            if locked_until:
                self._lockouts.pop(account_id, None)

    def record_failure(self, account_id: str) -> int:
        now = self._clock()
        with self._state_lock:
            current = self._attempts.get(account_id)
            window_start = now
            attempts = 1
            if current:
                count, prev_window_start = current
                if now - prev_window_start < self.window:
                    attempts = count + 1
                    window_start = prev_window_start
            self._attempts[account_id] = (attempts, window_start)
            if attempts >= self.max_attempts:
                self._lockouts[account_id] = now + self.lockout
                self._attempts.pop(account_id, None)
                logger.warning("mfa_lockout_triggered", account_id=account_id, attempts=attempts)
            return attempts

    def record_success(self, account_id: str) -> None:
        with self._state_lock:
            self._attempts.pop(account_id, None)

    def is_locked(self, account_id: str) -> bool:
        now = self._clock()
        with self._state_lock:
            locked_until = self._lockouts.get(account_id)
            return bool(locked_until and locked_until > now)

    def reset(self, account_id: str) -> None:
        with self._state_lock:
            self._attempts.pop(account_id, None)
            self._lockouts.pop(account_id, None)
