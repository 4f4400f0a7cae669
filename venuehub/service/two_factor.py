from __future__ import annotations

from typing import Optional

from venuehub.logging import get_logger
from venuehub.service.credentials import CredentialStore
from venuehub.service.errors import AuthenticationError, NotFoundError
from venuehub.service.totp import qr_data_uri
from venuehub.storage.memory import MemoryStore
from venuehub.storage.models import Account, Identity


class TwoFactorService:
    """Enrollment for the signed-in account: Disabled -> Provisioning -> Enabled."""

    def __init__(self, store: MemoryStore, credentials: CredentialStore) -> None:
        self.store = store
        self.credentials = credentials
        self.logger = get_logger(__name__)

    def _account_for(self, identity: Optional[Identity]) -> Account:
        if identity is None:
            raise AuthenticationError("authentication required")
        account = self.store.get_account(identity.account_id)
        if not account:
            raise NotFoundError("account not found")
        return account

    async def start_setup(self, identity: Optional[Identity]) -> dict:
        account = self._account_for(identity)
        provisioning = self.credentials.begin_two_factor_setup(account)
        payload = {
            "secret": provisioning.secret,
            "provisioning_uri": provisioning.provisioning_uri,
            "qr_code": qr_data_uri(provisioning.provisioning_uri),
        }
        if provisioning.emergency_code:
            payload["emergency_code"] = provisioning.emergency_code
        return payload

    async def confirm_setup(self, identity: Optional[Identity], code: str) -> bool:
        account = self._account_for(identity)
        return self.credentials.confirm_two_factor_enable(account, code)

    async def disable(self, identity: Optional[Identity], password: str, code: str) -> None:
        account = self._account_for(identity)
        self.credentials.disable_two_factor(account, password, code)

    async def status(self, identity: Optional[Identity]) -> dict:
        account = self._account_for(identity)
        return {
            "two_factor_enabled": account.two_factor_enabled,
            "provisioning": account.two_factor_provisioning,
        }
