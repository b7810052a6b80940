"""
Account repository: every query and mutation the engine performs on the
accounts table. Functions take an open SQLAlchemy session and never commit;
the caller owns the unit of work.
"""
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from accountlink.core.errors import ProvisionalAccountNotMergeable
from accountlink.store.models import AccountDB, VerificationChallengeDB


def get_by_id(db: Session, account_id: str) -> Optional[AccountDB]:
    return db.get(AccountDB, account_id)


def get_by_chat_identity(db: Session, chat_identity_id: str) -> Optional[AccountDB]:
    return db.scalar(select(AccountDB).where(AccountDB.chat_identity_id == chat_identity_id))


def find_verified_by_email(db: Session, email: str) -> Optional[AccountDB]:
    return db.scalar(
        select(AccountDB).where(AccountDB.email_address == email, AccountDB.email_verified.is_(True))
    )


def find_unverified_by_email(db: Session, email: str, exclude_id: Optional[str] = None) -> Optional[AccountDB]:
    stmt = select(AccountDB).where(AccountDB.email_address == email, AccountDB.email_verified.is_(False))
    if exclude_id:
        stmt = stmt.where(AccountDB.id != exclude_id)
    return db.scalars(stmt.order_by(AccountDB.created_at)).first()


def create_bound_to(
    db: Session,
    identity_id: str,
    chat_identity_id: str,
    display_name: Optional[str] = None,
) -> AccountDB:
    """Second phase of provisioning: the auth identity must already exist.

    Flushes immediately so a duplicate chat identity surfaces as an
    IntegrityError here rather than at commit.
    """
    account = AccountDB(
        id=identity_id,
        chat_identity_id=chat_identity_id,
        email_address=None,
        email_verified=False,
        display_name=display_name,
    )
    db.add(account)
    db.flush()
    return account


def mark_verified(db: Session, account_id: str, email: str) -> AccountDB:
    account = db.get(AccountDB, account_id)
    if account is None:
        raise LookupError(f"account {account_id} not found")
    account.email_address = email
    account.email_verified = True
    # partial unique index on verified e-mails fires here
    db.flush()
    return account


def merge_provisional_into(db: Session, provisional_id: str, target_id: str, chat_identity_id: str) -> AccountDB:
    """Move chat_identity_id from the provisional account onto the target and
    drop the provisional account. Runs inside the caller's transaction.

    The provisional account must still be unverified; verified accounts may
    own content and are never discarded here.
    """
    provisional = db.get(AccountDB, provisional_id)
    target = db.get(AccountDB, target_id)
    if target is None:
        raise LookupError(f"account {target_id} not found")
    if provisional is not None and provisional.id != target.id:
        if provisional.email_verified:
            raise ProvisionalAccountNotMergeable(provisional.id)
        # release the unique chat identity before re-binding it
        provisional.chat_identity_id = None
        db.flush()
    target.chat_identity_id = chat_identity_id
    db.flush()
    if provisional is not None and provisional.id != target.id:
        db.execute(delete(VerificationChallengeDB).where(VerificationChallengeDB.account_id == provisional.id))
        db.delete(provisional)
        db.flush()
    return target
