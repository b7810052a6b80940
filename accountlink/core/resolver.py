"""
IdentityResolver: the account bound to a chat identity, provisioned on first
contact.

Provisioning is two-phase because accounts.id references auth_identities.id:
    1. AuthIdentityProvisioner.create(placeholder address)  -> identity id
    2. account_repo.create_bound_to(identity id, chat identity)
Phase two is insert-or-fetch on the UNIQUE(chat_identity_id) constraint, so
duplicate or concurrent /start events converge on one account.
"""
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import accountlink.observability.metrics as metrics
import accountlink.store.account_repo as account_repo
from accountlink.core.errors import CollaboratorError
from accountlink.observability.logging import log
from accountlink.store.auth_identity import AuthIdentityProvisioner, SqlAuthIdentityProvisioner, placeholder_address
from accountlink.store.database import SessionLocal, session_scope
from accountlink.store.models import AccountDB


def display_name_from_hints(profile_hints: Optional[Dict[str, Any]]) -> Optional[str]:
    hints = profile_hints or {}
    for k in ("display_name", "displayName", "first_name", "firstName", "username"):
        v = hints.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()[:255]
    return None


class IdentityResolver:
    def __init__(self, provisioner: Optional[AuthIdentityProvisioner] = None, session_factory=None):
        self.session_factory = session_factory or SessionLocal
        self.provisioner = provisioner or SqlAuthIdentityProvisioner(self.session_factory)

    def find(self, chat_identity_id: str) -> Optional[AccountDB]:
        try:
            with session_scope(self.session_factory) as db:
                return account_repo.get_by_chat_identity(db, chat_identity_id)
        except SQLAlchemyError as e:
            raise CollaboratorError("account_store", str(e)[:200]) from e

    def get_or_create(self, chat_identity_id: str, profile_hints: Optional[Dict[str, Any]] = None) -> AccountDB:
        existing = self.find(chat_identity_id)
        if existing is not None:
            return existing

        # Phase 1: shadow identity (idempotent on the placeholder address)
        identity_id = self.provisioner.create(placeholder_address(chat_identity_id))

        # Phase 2: account row bound to it
        try:
            with session_scope(self.session_factory) as db:
                account = account_repo.create_bound_to(
                    db, identity_id, chat_identity_id, display_name_from_hints(profile_hints)
                )
        except IntegrityError:
            account = self.find(chat_identity_id)
            if account is None:
                # conflict on something other than this chat identity (e.g. the
                # identity id is bound to a row that was re-linked); retryable
                raise CollaboratorError("account_store", "account insert conflict")
            log(event="account_insert_race_resolved", chatIdentityId=chat_identity_id, accountId=account.id)
            return account
        except SQLAlchemyError as e:
            raise CollaboratorError("account_store", str(e)[:200]) from e

        metrics.increment(metrics.ACCOUNT_PROVISIONED)
        log(event="account_provisioned", chatIdentityId=chat_identity_id, accountId=account.id)
        return account
