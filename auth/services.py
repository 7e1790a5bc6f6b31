"""
auth/services.py -- Composition root for the account-security components.

build_services() wires stores and services once per process. The API
lifespan stores the bundle on app.state.services; the operator console
(main.py) builds its own. Tests pass a shared in-memory database URL and a
controllable clock.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from audit.store import AuditLog
from auth.accounts import AccountService
from auth.authenticator import CredentialAuthenticator
from auth.keys import SigningKeyManager
from auth.lockout import LockoutPolicyEngine
from auth.mfa import MfaEnrollment, MfaVerifier
from auth.store import AccountStore, SigningKeyStore
from core.clock import Clock, utcnow
from core.config import Settings

logger = logging.getLogger("qualibrite.auth")


@dataclass
class SecurityServices:
    audit: AuditLog
    account_store: AccountStore
    key_store: SigningKeyStore
    key_manager: SigningKeyManager
    lockout: LockoutPolicyEngine
    mfa_verifier: MfaVerifier
    mfa_enrollment: MfaEnrollment
    authenticator: CredentialAuthenticator
    accounts: AccountService

    def close(self) -> None:
        self.key_store.close()
        self.account_store.close()
        self.audit.close()


def build_services(settings: Settings, db_url: str | None = None, clock: Clock = utcnow) -> SecurityServices:
    url = db_url or settings.database_url
    audit = AuditLog(url, clock)
    account_store = AccountStore(url, clock)
    key_store = SigningKeyStore(url, settings.secret_key)
    key_manager = SigningKeyManager(key_store, audit, settings, clock)
    lockout = LockoutPolicyEngine(account_store, audit, settings, clock)
    verifier = MfaVerifier(account_store, settings, clock)
    enrollment = MfaEnrollment(account_store, verifier, audit, settings, clock)
    authenticator = CredentialAuthenticator(
        account_store, lockout, verifier, enrollment, key_manager, audit, settings
    )
    logger.info("Security services initialized (active signing key %s)", key_manager.status().active_key_id)
    return SecurityServices(
        audit=audit,
        account_store=account_store,
        key_store=key_store,
        key_manager=key_manager,
        lockout=lockout,
        mfa_verifier=verifier,
        mfa_enrollment=enrollment,
        authenticator=authenticator,
        accounts=AccountService(account_store, audit),
    )
