"""
Identity models for the IAM service.

This module defines:
- Role hierarchy, account status and verification purpose enums
- SQLAlchemy models for accounts and verification codes
"""
import enum
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, String, text,
)

from iam_service.base_microservice import Base

# Partial index predicate: identifiers are only reserved by live accounts
LIVE_ACCOUNT = text("status != 'deleted'")
LIVE_CODE = text("NOT consumed AND NOT superseded")


def utcnow() -> datetime:
    """Current time as naive UTC, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Role(enum.IntEnum):
    """Strict total order of roles; a higher rank holds every lower capability."""
    USER = 1
    MODERATOR = 2
    ADMIN = 3
    SUPERADMIN = 4
    OWNER = 5

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        """
        Resolve a role from a Role, rank or label.

        Returns None for anything unknown or ambiguous.
        """
        if isinstance(value, cls):
            return value
        # bool is an int subclass; True must not read as USER
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                return None
        if isinstance(value, str):
            return cls.__members__.get(value.strip().upper())
        return None


class AccountStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class VerificationPurpose(str, enum.Enum):
    EMAIL = "email"
    SMS = "sms"
    PASSWORD_RESET = "password-reset"


class Account(Base):
    """Identity record. Status and token_version change only through the lifecycle manager."""
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(64), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=True)
    phone_verified = Column(Boolean, nullable=False, default=False)
    password_hash = Column(String(128), nullable=False)
    role = Column(Integer, nullable=False, default=int(Role.USER))
    status = Column(String(20), nullable=False, default=AccountStatus.PENDING.value, index=True)
    token_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index(
            "uq_accounts_username_live", "username", unique=True,
            postgresql_where=LIVE_ACCOUNT, sqlite_where=LIVE_ACCOUNT,
        ),
        Index(
            "uq_accounts_email_live", "email", unique=True,
            postgresql_where=LIVE_ACCOUNT, sqlite_where=LIVE_ACCOUNT,
        ),
        Index(
            "uq_accounts_phone_live", "phone", unique=True,
            postgresql_where=LIVE_ACCOUNT, sqlite_where=LIVE_ACCOUNT,
        ),
    )

    @property
    def role_enum(self) -> Optional[Role]:
        return Role.parse(self.role)

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE.value

    def __repr__(self) -> str:
        return f"<Account id={self.id} username={self.username!r} status={self.status}>"


class VerificationCode(Base):
    """
    Single-use secret bound to one account and one purpose.

    Consumed and superseded rows are kept for audit; only one live row
    may exist per (account, purpose).
    """
    __tablename__ = "verification_codes"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    purpose = Column(String(20), nullable=False)
    code = Column(String(64), nullable=False)
    issued_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    consumed = Column(Boolean, nullable=False, default=False)
    consumed_at = Column(DateTime, nullable=True)
    superseded = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_verification_codes_pair", "account_id", "purpose"),
        Index(
            "uq_verification_codes_live", "account_id", "purpose", unique=True,
            postgresql_where=LIVE_CODE, sqlite_where=LIVE_CODE,
        ),
    )

    @property
    def is_live(self) -> bool:
        return not self.consumed and not self.superseded

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at
