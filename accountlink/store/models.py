"""
Account Store - SQLAlchemy ORM Models
Auth identities, accounts and verification challenges
"""
import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Enum as SQLEnum, text
from sqlalchemy.orm import relationship

from accountlink.store.database import Base
from accountlink.utils.time import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class ChallengeMode(str, Enum):
    """What a matched code does."""
    REGISTER = "REGISTER"  # verify the e-mail on the target account
    LINK = "LINK"          # move the chat identity onto the target account


class AuthIdentityDB(Base):
    """Shadow identity owned by the auth subsystem; accounts reference it."""
    __tablename__ = "auth_identities"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(320), unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class AccountDB(Base):
    """Durable application account, optionally bound to one chat identity."""
    __tablename__ = "accounts"
    __table_args__ = (
        # At most one verified account per address; unverified rows may share it.
        Index(
            "uq_accounts_verified_email",
            "email_address",
            unique=True,
            postgresql_where=text("email_verified"),
            sqlite_where=text("email_verified = 1"),
        ),
    )

    id = Column(String(36), ForeignKey("auth_identities.id"), primary_key=True)
    chat_identity_id = Column(String(128), unique=True, nullable=True)
    email_address = Column(String(320), nullable=True, index=True)
    email_verified = Column(Boolean, nullable=False, default=False)
    display_name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    challenges = relationship(
        "VerificationChallengeDB",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<AccountDB id={self.id} chat={self.chat_identity_id} verified={self.email_verified}>"


class VerificationChallengeDB(Base):
    """Six-digit code proving control of an e-mail address.

    Active = not consumed and not superseded. Issuing a new challenge
    supersedes the previous active one for the same account.
    """
    __tablename__ = "verification_challenges"
    __table_args__ = (
        Index(
            "uq_challenges_active_account",
            "account_id",
            unique=True,
            postgresql_where=text("consumed_at IS NULL AND superseded_at IS NULL"),
            sqlite_where=text("consumed_at IS NULL AND superseded_at IS NULL"),
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    code = Column(String(6), nullable=False)
    mode = Column(SQLEnum(ChallengeMode), nullable=False)
    email_address = Column(String(320), nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    superseded_at = Column(DateTime(timezone=True), nullable=True)
    failed_attempts = Column(Integer, nullable=False, default=0)

    account = relationship("AccountDB", back_populates="challenges")
