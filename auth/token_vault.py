"""
auth/token_vault.py -- Token Vault Controller: save, unlock, revoke, status.

Ties the EncryptionVault to the user directory and the live session:

  save(user, secret, password)   encrypt -> persist ciphertext -> decrypt again
                                 -> stage plaintext on the session
  unlock(user, password)         decrypt stored ciphertext -> stage plaintext
  revoke(user)                   clear ciphertext (+ salt when strict) and
                                 the session's plaintext; no password needed
  status(user)                   {hasToken, isDecrypted} -- booleans only

The only plaintext surface is SessionRecord.decrypted_secret. Storage sees
ciphertext, logs see neither.

PBKDF2 is deliberately slow, so encrypt/decrypt and the synchronous
directory calls run in Starlette's worker threadpool instead of on the event
loop.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from starlette.concurrency import run_in_threadpool

from auth import activity
from auth.models import SessionRecord, SessionUser, User
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.vault import DecryptionFailed, EncryptionVault, InvalidFormat
from core.errors import AuthorizationDenied, NotFound, ValidationError

logger = logging.getLogger("supportdesk.auth.token_vault")


class TokenVaultController:
    def __init__(
        self,
        vault: EncryptionVault,
        users: UserStore,
        sessions: SessionManager,
        strict_revoke: bool = False,
    ) -> None:
        self.vault = vault
        self.users = users
        self.sessions = sessions
        self.strict_revoke = strict_revoke

    async def _user(self, user_id: str) -> User:
        user = await run_in_threadpool(self.users.get_by_id, user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    async def save(
        self, session: SessionRecord, session_user: SessionUser, secret: str | None, password: str | None
    ) -> str:
        """Encrypt and store a credential, then stage it on the session. Returns the staged plaintext."""
        if not secret or not password:
            raise ValidationError("API token and password are required.")
        user = await self._user(session_user.id)
        salt = user.salt
        if not salt:
            salt = self.vault.generate_salt()
            await run_in_threadpool(self.users.update_salt, user.user_id, salt)

        serialized = await run_in_threadpool(self.vault.encrypt, secret, password, salt)
        await run_in_threadpool(self.users.save_encrypted_secret, user.user_id, serialized)
        # Round-trip the stored value so the session holds exactly what storage can reproduce.
        plaintext = await run_in_threadpool(self.vault.decrypt, serialized, password, salt)
        await self.sessions.stage_secret(session, plaintext)
        activity.record("vault.saved", session_user)
        return plaintext

    async def unlock(self, session: SessionRecord, session_user: SessionUser, password: str | None) -> str:
        if not password:
            raise ValidationError("Password is required.")
        user = await self._user(session_user.id)
        if not user.encrypted_secret:
            raise NotFound("No API token stored.")
        try:
            plaintext = await run_in_threadpool(self.vault.decrypt, user.encrypted_secret, password, user.salt)
        except (DecryptionFailed, InvalidFormat):
            logger.warning("Credential unlock denied for user %s", user.user_id)
            activity.record("vault.denied", session_user)
            raise AuthorizationDenied("Invalid password.") from None
        await self.sessions.stage_secret(session, plaintext)
        activity.record("vault.decrypted", session_user)
        return plaintext

    async def revoke(self, session: SessionRecord, session_user: SessionUser) -> None:
        user = await self._user(session_user.id)
        await run_in_threadpool(self.users.clear_encrypted_secret, user.user_id, self.strict_revoke)
        await self.sessions.stage_secret(session, None)
        activity.record("vault.revoked", session_user, strict=self.strict_revoke)

    async def status(self, session: SessionRecord, session_user: SessionUser) -> dict:
        stored = await run_in_threadpool(self.users.get_encrypted_secret, session_user.id)
        return {"hasToken": stored is not None, "isDecrypted": session.decrypted_secret is not None}
