"""
Auth Identity Provisioner
-------------------------
Accounts carry a foreign key to an auth identity, so an identity has to exist
before the account row can be inserted. Chat users have no real address yet,
so the identity is created against a synthetic placeholder derived from the
chat identity id. Creation is idempotent on that address.
"""
from __future__ import annotations

import hashlib
import re
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from accountlink.core.errors import CollaboratorError
from accountlink.observability.logging import log
from accountlink.settings import settings
from accountlink.store.database import SessionLocal, session_scope
from accountlink.store.models import AuthIdentityDB

_UNSAFE = re.compile(r"[^a-z0-9._-]+")


def placeholder_address(chat_identity_id: str, domain: Optional[str] = None) -> str:
    raw = str(chat_identity_id)
    local = _UNSAFE.sub("-", raw.strip().lower()).strip("-.")[:40] or "anon"
    # sanitising is lossy; the digest keeps distinct ids on distinct addresses
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:10]
    return f"chat-{local}-{digest}@{domain or settings.PLACEHOLDER_EMAIL_DOMAIN}"


class AuthIdentityProvisioner:
    """Interface of the external auth subsystem as seen by the resolver."""

    def create(self, address: str) -> str:
        raise NotImplementedError

    def delete(self, identity_id: str) -> None:
        raise NotImplementedError


class SqlAuthIdentityProvisioner(AuthIdentityProvisioner):
    """Provisioner backed by the auth_identities table."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def _find(self, address: str) -> Optional[str]:
        with session_scope(self.session_factory) as db:
            return db.scalar(select(AuthIdentityDB.id).where(AuthIdentityDB.email == address))

    def create(self, address: str) -> str:
        try:
            existing = self._find(address)
            if existing:
                return existing
            try:
                with session_scope(self.session_factory) as db:
                    identity = AuthIdentityDB(email=address)
                    db.add(identity)
                    db.flush()
                    identity_id = identity.id
            except IntegrityError:
                # concurrent create for the same placeholder won
                identity_id = self._find(address)
                if not identity_id:
                    raise
            log(event="auth_identity_created", identityId=identity_id, email=address)
            return identity_id
        except SQLAlchemyError as e:
            raise CollaboratorError("auth_identity_provisioner", str(e)[:200]) from e

    def delete(self, identity_id: str) -> None:
        try:
            with session_scope(self.session_factory) as db:
                identity = db.get(AuthIdentityDB, identity_id)
                if identity is not None:
                    db.delete(identity)
        except SQLAlchemyError as e:
            raise CollaboratorError("auth_identity_provisioner", str(e)[:200]) from e
        log(event="auth_identity_deleted", identityId=identity_id)
