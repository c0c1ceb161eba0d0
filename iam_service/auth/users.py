"""
Account lifecycle service.

This module provides functionality for:
- Account registration and email activation
- Credential login and token refresh
- Password change and password reset
- Phone (SMS) verification
- Role changes and admin status transitions
- Admin password resets and account detail edits
- Read models for the auth pipeline and admin routes (listing, search, dashboard counts)

Account state machine:
    pending -> active (verification), active <-> suspended (admin),
    any non-deleted -> deleted (admin or self, terminal)

Every mutation runs in one AccountStore.atomic() unit of work.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from iam_service.auth.credentials import CredentialStore
from iam_service.auth.errors import Failure, Result
from iam_service.auth.jwt import Token, TokenService
from iam_service.auth.models import (
    Account, AccountStatus, Role, VerificationPurpose, utcnow,
)
from iam_service.auth.roles import RoleAuthority
from iam_service.auth.transactions import AccountStore
from iam_service.auth.verification import VerificationMessage, VerificationWorkflow

logger = logging.getLogger(__name__)

# Regex patterns for validation
USERNAME_PATTERN = r"^[a-zA-Z0-9_-]{3,20}$"
PHONE_PATTERN = r"^\+?[1-9]\d{7,14}$"

# Window of the "recent" dashboard count
RECENT_ACCOUNTS_WINDOW = timedelta(days=7)
SEARCH_MIN_LENGTH = 2

RoleName = Literal["user", "moderator", "admin", "superadmin", "owner"]


def normalize_email(email: str) -> str:
    return email.strip().lower()


def check_username(v):
    if v is not None and not re.match(USERNAME_PATTERN, v):
        raise ValueError("Username must be 3-20 characters and contain only letters, numbers, underscores, or hyphens")
    return v


def check_phone(v):
    if v is None:
        return v
    v = re.sub(r"[\s().-]", "", v)
    if not re.match(PHONE_PATTERN, v):
        raise ValueError("Phone must be 8-15 digits with an optional leading +")
    return v


# Pydantic models for request validation
class UserCreate(BaseModel):
    """Model for account registration."""
    username: str = Field(..., min_length=3, max_length=20)
    email: EmailStr
    password: str = Field(..., max_length=256)
    phone: Optional[str] = None

    @field_validator("username")
    @classmethod
    def username_must_be_valid(cls, v):
        return check_username(v)

    @field_validator("phone")
    @classmethod
    def phone_must_be_valid(cls, v):
        return check_phone(v)


class AdminCreateUser(UserCreate):
    """Model for accounts created directly by an administrator."""
    role: RoleName = "user"
    status: Literal["active", "pending"] = "active"


class AccountUpdate(BaseModel):
    """Model for an administrator editing account details. Omitted fields are left unchanged."""
    username: Optional[str] = Field(None, min_length=3, max_length=20)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None

    @field_validator("username")
    @classmethod
    def username_must_be_valid(cls, v):
        return check_username(v)

    @field_validator("phone")
    @classmethod
    def phone_must_be_valid(cls, v):
        return check_phone(v)


class AdminPasswordReset(BaseModel):
    password: str = Field(..., max_length=256)


class VerifyRequest(BaseModel):
    account_id: int
    code: str = Field(..., min_length=1, max_length=64)


class ResendRequest(BaseModel):
    email: EmailStr


class LoginRequest(BaseModel):
    """Model for login. The identifier is a username or an email."""
    identifier: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=256)


class PasswordChange(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=256)


class PasswordResetRequest(BaseModel):
    email: EmailStr


class PasswordResetConfirm(BaseModel):
    email: EmailStr
    code: str = Field(..., min_length=1, max_length=64)
    new_password: str = Field(..., max_length=256)


class PhoneConfirm(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


class RoleChangeRequest(BaseModel):
    role: str = Field(..., min_length=1, max_length=20)


class AccountOut(BaseModel):
    """Account summary returned to clients. Never carries the password hash."""
    id: int
    username: str
    email: str
    phone: Optional[str] = None
    phone_verified: bool = False
    role: str
    status: str
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @classmethod
    def from_account(cls, account: Account) -> "AccountOut":
        role = Role.parse(account.role)
        return cls(
            id=account.id,
            username=account.username,
            email=account.email,
            phone=account.phone,
            phone_verified=bool(account.phone_verified),
            role=role.label if role is not None else str(account.role),
            status=account.status,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class AccountPage(BaseModel):
    items: List[AccountOut]
    total: int
    page: int
    limit: int


class RoleChange(BaseModel):
    account_id: int
    previous_role: str
    role: str


class AccountStats(BaseModel):
    """Dashboard counts. Totals cover live accounts; by_status also counts deleted ones."""
    total: int
    by_role: Dict[str, int]
    by_status: Dict[str, int]
    phone_verified: int
    recent: int
    generated_at: datetime


@dataclass(frozen=True)
class AccountState:
    """What the auth pipeline needs to know about an account."""
    account_id: int
    role: Optional[Role]
    status: AccountStatus
    token_version: int


def _surface_code_failure(result: Result) -> Result:
    """NotFound and Mismatch are reported to clients as InvalidCode."""
    if result.failure in (Failure.CODE_NOT_FOUND, Failure.CODE_MISMATCH):
        return Result.fail(Failure.INVALID_CODE)
    return result


def _live_accounts():
    return Account.status != AccountStatus.DELETED.value


class AccountLifecycleManager:
    """
    Owns the account state machine.

    Status and token_version are only ever changed here, with conditional
    UPDATEs so that concurrent requests cannot skip a state.
    """

    def __init__(
        self,
        store: AccountStore,
        credentials: CredentialStore,
        tokens: TokenService,
        verification: VerificationWorkflow,
    ):
        self.store = store
        self.credentials = credentials
        self.tokens = tokens
        self.verification = verification

    # --- Internal helpers ---

    async def _find_conflict(
        self,
        session: AsyncSession,
        username: Optional[str],
        email: Optional[str],
        phone: Optional[str],
        exclude_id: Optional[int] = None,
    ) -> Optional[Failure]:
        """Which live identifier, if any, is already in use by another account."""
        clauses = []
        if username:
            clauses.append(Account.username == username)
        if email:
            clauses.append(Account.email == email)
        if phone:
            clauses.append(Account.phone == phone)
        if not clauses:
            return None
        criteria = [_live_accounts(), or_(*clauses)]
        if exclude_id is not None:
            criteria.append(Account.id != exclude_id)
        result = await session.execute(select(Account).where(*criteria))
        taken = result.scalars().all()
        if username and any(a.username == username for a in taken):
            return Failure.USERNAME_TAKEN
        if email and any(a.email == email for a in taken):
            return Failure.EMAIL_TAKEN
        if phone and any(a.phone == phone for a in taken):
            return Failure.PHONE_TAKEN
        return None

    async def _insert_account(
        self,
        session: AsyncSession,
        username: str,
        email: str,
        password_hash: str,
        phone: Optional[str],
        role: Role,
        status: AccountStatus,
    ) -> Result[Account]:
        conflict = await self._find_conflict(session, username, email, phone)
        if conflict is not None:
            return Result.fail(conflict)

        account = Account(
            username=username,
            email=email,
            phone=phone,
            phone_verified=False,
            password_hash=password_hash,
            role=int(role),
            status=status.value,
            token_version=0,
        )
        session.add(account)
        try:
            await session.flush()
        except IntegrityError:
            # A concurrent registration won between the check and the insert
            await session.rollback()
            conflict = await self._find_conflict(session, username, email, phone)
            if conflict is None:
                logger.error(f"Unclassified integrity error registering {username!r}")
                return Result.fail(Failure.TRANSACTION_FAILED)
            return Result.fail(conflict)
        await session.refresh(account)
        return Result.success(account)

    async def _transition(
        self,
        session: AsyncSession,
        account_id: int,
        allowed_from: Tuple[AccountStatus, ...],
        target: AccountStatus,
    ) -> bool:
        """Conditional status update; False if the account was not in an allowed state."""
        result = await session.execute(
            update(Account)
            .where(Account.id == account_id, Account.status.in_([s.value for s in allowed_from]))
            .values(status=target.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _find_live(self, session: AsyncSession, *criteria) -> Optional[Account]:
        result = await session.execute(select(Account).where(_live_accounts(), *criteria).limit(1))
        return result.scalars().first()

    async def _issue_and_deliver(
        self, account_id: int, purpose: VerificationPurpose, destination: str
    ) -> Result[bool]:
        """Issue a code in its own transaction, then hand it to the notifier."""
        issued = await self.store.atomic(
            lambda session: self.verification.issue(session, account_id, purpose)
        )
        if not issued.ok:
            return issued
        code = issued.value
        delivered = await self.verification.deliver(VerificationMessage(
            account_id=account_id,
            purpose=purpose,
            destination=destination,
            code=code.code,
            expires_at=code.expires_at,
        ))
        return Result.success(delivered)

    async def _redeem_and_apply(
        self,
        account_id: int,
        purpose: VerificationPurpose,
        operation: Callable[[AsyncSession], Awaitable[Result[Any]]],
    ) -> Result[Any]:
        """
        Run a redeeming operation and count a mismatch against the live code.

        The attempt counter is written in a second transaction because the
        first one is rolled back on failure.
        """
        result = await self.store.atomic(operation)
        if result.failure == Failure.CODE_MISMATCH:
            await self.store.atomic(
                lambda session: self.verification.record_mismatch(session, account_id, purpose)
            )
        return _surface_code_failure(result)

    # --- Registration and activation ---

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        phone: Optional[str] = None,
    ) -> Result[AccountOut]:
        """
        Register a pending account and send its email activation code.

        Args:
            username: Unique username
            email: Unique email, stored lower-cased
            password: Plaintext password, checked against the policy
            phone: Optional unique phone number

        Returns:
            Result with the new account, or WEAK_PASSWORD / USERNAME_TAKEN /
            EMAIL_TAKEN / PHONE_TAKEN
        """
        strength = self.credentials.check_strength(password)
        if not strength.ok:
            return strength

        email = normalize_email(email)
        password_hash = await self.credentials.hash(password)

        async def create(session: AsyncSession):
            inserted = await self._insert_account(
                session, username, email, password_hash, phone, Role.USER, AccountStatus.PENDING
            )
            if not inserted.ok:
                return inserted
            account = inserted.value
            issued = await self.verification.issue(session, account.id, VerificationPurpose.EMAIL)
            if not issued.ok:
                return issued
            return Result.success((account, issued.value))

        result = await self.store.atomic(create)
        if not result.ok:
            return result

        account, code = result.value
        await self.verification.deliver(VerificationMessage(
            account_id=account.id,
            purpose=VerificationPurpose.EMAIL,
            destination=account.email,
            code=code.code,
            expires_at=code.expires_at,
        ))
        return Result.success(AccountOut.from_account(account))

    async def activate(self, account_id: int, code: str) -> Result[AccountOut]:
        """
        Redeem an email code and move the account from pending to active.

        Returns:
            Result with the activated account, or INVALID_CODE / CODE_EXPIRED /
            CODE_CONSUMED / TOO_MANY_ATTEMPTS. Redeeming a live code on an
            account that is no longer pending gives INVALID_TRANSITION.
        """
        async def verify(session: AsyncSession):
            account = await session.get(Account, account_id)
            if account is None or account.status == AccountStatus.DELETED.value:
                return Result.fail(Failure.INVALID_CODE)

            # Redeem before the status check so a replayed code reports AlreadyConsumed
            redeemed = await self.verification.redeem(
                session, account_id, VerificationPurpose.EMAIL, code
            )
            if not redeemed.ok:
                return redeemed
            if account.status != AccountStatus.PENDING.value:
                return Result.fail(Failure.INVALID_TRANSITION)

            if not await self._transition(
                session, account_id, (AccountStatus.PENDING,), AccountStatus.ACTIVE
            ):
                return Result.fail(Failure.INVALID_TRANSITION)
            await session.refresh(account)
            return Result.success(AccountOut.from_account(account))

        return await self._redeem_and_apply(account_id, VerificationPurpose.EMAIL, verify)

    async def resend_verification(self, email: str) -> Result[None]:
        """
        Re-issue the activation code of a pending account.

        Unknown and already-active emails succeed without sending anything.
        """
        email = normalize_email(email)
        account = await self.store.read(
            lambda session: self._find_live(session, Account.email == email)
        )
        if account is None or account.status != AccountStatus.PENDING.value:
            return Result.success()
        issued = await self._issue_and_deliver(account.id, VerificationPurpose.EMAIL, account.email)
        if not issued.ok:
            return issued
        return Result.success()

    # --- Credentials and tokens ---

    async def login(self, identifier: str, password: str) -> Result[Token]:
        """
        Authenticate by username or email and issue a token.

        Unknown, deleted and wrong-password logins are indistinguishable.

        Returns:
            Result with a Token, or INVALID_CREDENTIALS / ACCOUNT_NOT_ACTIVE
        """
        identifier = identifier.strip()
        account = await self.store.read(
            lambda session: self._find_live(
                session,
                or_(Account.username == identifier, Account.email == normalize_email(identifier)),
            )
        )
        if account is None:
            await self.credentials.dummy_verify(password)
            return Result.fail(Failure.INVALID_CREDENTIALS)
        if not await self.credentials.verify(password, account.password_hash):
            return Result.fail(Failure.INVALID_CREDENTIALS)
        if account.status != AccountStatus.ACTIVE.value:
            return Result.fail(Failure.ACCOUNT_NOT_ACTIVE)

        return Result.success(
            self.tokens.issue(account.id, Role(account.role), account.token_version)
        )

    async def refresh(self, account_id: int) -> Result[Token]:
        """Issue a fresh token carrying the account's current role and token_version."""
        account = await self.store.read(lambda session: session.get(Account, account_id))
        if account is None:
            return Result.fail(Failure.TOKEN_INVALID)
        if account.status != AccountStatus.ACTIVE.value:
            return Result.fail(Failure.ACCOUNT_NOT_ACTIVE)
        return Result.success(
            self.tokens.issue(account.id, Role(account.role), account.token_version)
        )

    async def revoke_sessions(self, account_id: int, actor_id: Optional[int] = None) -> Result[int]:
        """
        Invalidate every outstanding token of an account.

        Args:
            account_id: Account whose tokens are revoked
            actor_id: Acting account when revoking on someone else's behalf;
                it must outrank the target

        Returns:
            Result with the new token_version, or ACCOUNT_NOT_FOUND / FORBIDDEN /
            INVALID_TRANSITION for a deleted account
        """
        async def bump(session: AsyncSession):
            target = await session.get(Account, account_id)
            if target is None:
                return Result.fail(Failure.ACCOUNT_NOT_FOUND)
            if actor_id is not None and actor_id != account_id:
                actor = await session.get(Account, actor_id)
                if actor is None or not RoleAuthority.can_manage(actor.role, target.role):
                    return Result.fail(Failure.FORBIDDEN)

            bumped = await session.execute(
                update(Account)
                .where(Account.id == account_id, _live_accounts())
                .values(token_version=Account.token_version + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            # Deleted is terminal
            if bumped.rowcount != 1:
                return Result.fail(Failure.INVALID_TRANSITION)
            version = await session.scalar(
                select(Account.token_version).where(Account.id == account_id)
            )
            return Result.success(version)

        return await self.store.atomic(bump)

    async def change_password(
        self, account_id: int, current_password: str, new_password: str
    ) -> Result[Token]:
        """
        Replace the password of an authenticated account.

        Revokes every existing token and returns a fresh one.

        Returns:
            Result with a new Token, or INVALID_CREDENTIALS / WEAK_PASSWORD
        """
        account = await self.store.read(lambda session: session.get(Account, account_id))
        if account is None or account.status == AccountStatus.DELETED.value:
            return Result.fail(Failure.ACCOUNT_NOT_FOUND)
        if not await self.credentials.verify(current_password, account.password_hash):
            return Result.fail(Failure.INVALID_CREDENTIALS)
        strength = self.credentials.check_strength(new_password)
        if not strength.ok:
            return strength
        if new_password == current_password:
            return Result.fail(
                Failure.WEAK_PASSWORD, "New password must be different from the current password"
            )

        old_hash = account.password_hash
        new_hash = await self.credentials.hash(new_password)

        async def replace(session: AsyncSession):
            # Conditional on the hash we verified against
            result = await session.execute(
                update(Account)
                .where(
                    Account.id == account_id,
                    Account.password_hash == old_hash,
                    Account.status == AccountStatus.ACTIVE.value,
                )
                .values(
                    password_hash=new_hash,
                    token_version=Account.token_version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return Result.fail(Failure.INVALID_CREDENTIALS)
            row = (await session.execute(
                select(Account.role, Account.token_version).where(Account.id == account_id)
            )).one()
            return Result.success(self.tokens.issue(account_id, Role(row.role), row.token_version))

        return await self.store.atomic(replace)

    async def request_password_reset(self, email: str) -> Result[None]:
        """
        Send a password-reset code to an active account.

        Unknown and inactive emails succeed without sending anything.
        """
        email = normalize_email(email)
        account = await self.store.read(
            lambda session: self._find_live(session, Account.email == email)
        )
        if account is None or account.status != AccountStatus.ACTIVE.value:
            logger.info("Password reset requested for an unknown or inactive email")
            return Result.success()
        issued = await self._issue_and_deliver(
            account.id, VerificationPurpose.PASSWORD_RESET, account.email
        )
        if not issued.ok:
            return issued
        return Result.success()

    async def reset_password(self, email: str, code: str, new_password: str) -> Result[None]:
        """
        Redeem a password-reset code and set a new password.

        The code is consumed, the hash replaced and every token revoked in
        one transaction.
        """
        strength = self.credentials.check_strength(new_password)
        if not strength.ok:
            return strength

        email = normalize_email(email)
        account = await self.store.read(
            lambda session: self._find_live(session, Account.email == email)
        )
        if account is None or account.status != AccountStatus.ACTIVE.value:
            return Result.fail(Failure.INVALID_CODE)

        new_hash = await self.credentials.hash(new_password)

        async def apply(session: AsyncSession):
            redeemed = await self.verification.redeem(
                session, account.id, VerificationPurpose.PASSWORD_RESET, code
            )
            if not redeemed.ok:
                return redeemed
            result = await session.execute(
                update(Account)
                .where(Account.id == account.id, Account.status == AccountStatus.ACTIVE.value)
                .values(
                    password_hash=new_hash,
                    token_version=Account.token_version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return Result.fail(Failure.INVALID_TRANSITION)
            return Result.success()

        return await self._redeem_and_apply(account.id, VerificationPurpose.PASSWORD_RESET, apply)

    # --- Phone verification ---

    async def request_phone_verification(self, account_id: int) -> Result[None]:
        """Send an SMS code to the account's phone number."""
        account = await self.store.read(lambda session: session.get(Account, account_id))
        if account is None:
            return Result.fail(Failure.ACCOUNT_NOT_FOUND)
        if not account.phone:
            return Result.fail(Failure.PHONE_NOT_SET)
        if account.phone_verified:
            return Result.fail(Failure.ALREADY_VERIFIED)
        issued = await self._issue_and_deliver(account.id, VerificationPurpose.SMS, account.phone)
        if not issued.ok:
            return issued
        return Result.success()

    async def confirm_phone(self, account_id: int, code: str) -> Result[AccountOut]:
        """Redeem an SMS code and mark the phone number verified."""
        async def confirm(session: AsyncSession):
            account = await session.get(Account, account_id)
            if account is None:
                return Result.fail(Failure.ACCOUNT_NOT_FOUND)
            if not account.phone:
                return Result.fail(Failure.PHONE_NOT_SET)
            if account.phone_verified:
                return Result.fail(Failure.ALREADY_VERIFIED)

            redeemed = await self.verification.redeem(
                session, account_id, VerificationPurpose.SMS, code
            )
            if not redeemed.ok:
                return redeemed
            await session.execute(
                update(Account)
                .where(Account.id == account_id, Account.phone == account.phone)
                .values(phone_verified=True, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.refresh(account)
            return Result.success(AccountOut.from_account(account))

        return await self._redeem_and_apply(account_id, VerificationPurpose.SMS, confirm)

    # --- Roles and admin transitions ---

    async def change_role(self, actor_id: int, target_id: int, requested_role: Any) -> Result[RoleChange]:
        """
        Move a target account to a new role.

        The actor's stored role must strictly outrank both the target's
        current role and the requested role.

        Returns:
            Result with the RoleChange, or FORBIDDEN / ACCOUNT_NOT_FOUND /
            INVALID_TRANSITION
        """
        requested = Role.parse(requested_role)

        async def assign(session: AsyncSession):
            actor = await session.get(Account, actor_id)
            if actor is None or not actor.is_active:
                return Result.fail(Failure.FORBIDDEN)
            target = await session.get(Account, target_id)
            if target is None:
                return Result.fail(Failure.ACCOUNT_NOT_FOUND)
            if target.status == AccountStatus.DELETED.value:
                return Result.fail(Failure.INVALID_TRANSITION)
            if requested is None or not RoleAuthority.can_assign(actor.role, target.role, requested):
                return Result.fail(Failure.FORBIDDEN)

            current = target.role
            result = await session.execute(
                update(Account)
                .where(
                    Account.id == target_id,
                    Account.role == current,
                    _live_accounts(),
                )
                .values(role=int(requested), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            # Role changed under us; the authorization above no longer holds
            if result.rowcount != 1:
                return Result.fail(Failure.FORBIDDEN)
            return Result.success(RoleChange(
                account_id=target_id,
                previous_role=Role(current).label,
                role=requested.label,
            ))

        return await self.store.atomic(assign)

    async def _change_status(
        self,
        actor_id: int,
        target_id: int,
        allowed_from: Tuple[AccountStatus, ...],
        target_status: AccountStatus,
    ) -> Result[AccountOut]:
        async def move(session: AsyncSession):
            target = await session.get(Account, target_id)
            if target is None:
                return Result.fail(Failure.ACCOUNT_NOT_FOUND)
            if actor_id == target_id:
                # Self-service is limited to closing one's own account
                if target_status != AccountStatus.DELETED:
                    return Result.fail(Failure.FORBIDDEN)
            else:
                actor = await session.get(Account, actor_id)
                if actor is None or not RoleAuthority.can_manage(actor.role, target.role):
                    return Result.fail(Failure.FORBIDDEN)

            if not await self._transition(session, target_id, allowed_from, target_status):
                return Result.fail(Failure.INVALID_TRANSITION)
            if target_status == AccountStatus.DELETED:
                await self.verification.purge(session, target_id)
            await session.refresh(target)
            return Result.success(AccountOut.from_account(target))

        return await self.store.atomic(move)

    async def suspend(self, actor_id: int, target_id: int) -> Result[AccountOut]:
        """active -> suspended."""
        return await self._change_status(
            actor_id, target_id, (AccountStatus.ACTIVE,), AccountStatus.SUSPENDED
        )

    async def reactivate(self, actor_id: int, target_id: int) -> Result[AccountOut]:
        """suspended -> active."""
        return await self._change_status(
            actor_id, target_id, (AccountStatus.SUSPENDED,), AccountStatus.ACTIVE
        )

    async def delete(self, actor_id: int, target_id: int) -> Result[AccountOut]:
        """Any non-deleted status -> deleted. Verification codes are purged."""
        return await self._change_status(
            actor_id,
            target_id,
            (AccountStatus.PENDING, AccountStatus.ACTIVE, AccountStatus.SUSPENDED),
            AccountStatus.DELETED,
        )

    async def _load_managed(
        self, session: AsyncSession, actor_id: int, target_id: int
    ) -> Result[Account]:
        """Target account, if it is live and the actor outranks it."""
        target = await session.get(Account, target_id)
        if target is None:
            return Result.fail(Failure.ACCOUNT_NOT_FOUND)
        if target.status == AccountStatus.DELETED.value:
            return Result.fail(Failure.INVALID_TRANSITION)
        actor = await session.get(Account, actor_id)
        if actor is None or not actor.is_active or not RoleAuthority.can_manage(actor.role, target.role):
            return Result.fail(Failure.FORBIDDEN)
        return Result.success(target)

    async def reset_password_for(
        self, actor_id: int, target_id: int, new_password: str
    ) -> Result[AccountOut]:
        """
        Set another account's password on an administrator's authority.

        The actor must outrank the target. Every token of the target is
        revoked. Administrators change their own password through
        change_password().

        Returns:
            Result with the account, or FORBIDDEN / WEAK_PASSWORD /
            ACCOUNT_NOT_FOUND / INVALID_TRANSITION
        """
        if actor_id == target_id:
            return Result.fail(Failure.FORBIDDEN, "Use the password change endpoint for your own account")
        strength = self.credentials.check_strength(new_password)
        if not strength.ok:
            return strength
        new_hash = await self.credentials.hash(new_password)

        async def apply(session: AsyncSession):
            loaded = await self._load_managed(session, actor_id, target_id)
            if not loaded.ok:
                return loaded
            target = loaded.value
            result = await session.execute(
                update(Account)
                .where(Account.id == target_id, Account.role == target.role, _live_accounts())
                .values(
                    password_hash=new_hash,
                    token_version=Account.token_version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            # Role changed under us; the authorization above no longer holds
            if result.rowcount != 1:
                return Result.fail(Failure.FORBIDDEN)
            await self.verification.cancel(session, target_id, VerificationPurpose.PASSWORD_RESET)
            await session.refresh(target)
            return Result.success(AccountOut.from_account(target))

        return await self.store.atomic(apply)

    async def update_account(
        self,
        actor_id: int,
        target_id: int,
        username: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Result[AccountOut]:
        """
        Edit the identifiers of an account the actor outranks.

        None leaves a field unchanged. A new phone number is unverified, and
        live codes sent to a replaced email or phone are cancelled.

        Returns:
            Result with the updated account, or INVALID_INPUT / FORBIDDEN /
            USERNAME_TAKEN / EMAIL_TAKEN / PHONE_TAKEN / ACCOUNT_NOT_FOUND /
            INVALID_TRANSITION
        """
        if username is None and email is None and phone is None:
            return Result.fail(Failure.INVALID_INPUT, "No fields to update")
        if email is not None:
            email = normalize_email(email)

        async def apply(session: AsyncSession):
            loaded = await self._load_managed(session, actor_id, target_id)
            if not loaded.ok:
                return loaded
            target = loaded.value

            changes = {}
            if username is not None and username != target.username:
                changes["username"] = username
            if email is not None and email != target.email:
                changes["email"] = email
            if phone is not None and phone != target.phone:
                changes["phone"] = phone
                changes["phone_verified"] = False
            if not changes:
                return Result.success(AccountOut.from_account(target))

            conflict = await self._find_conflict(
                session,
                changes.get("username"),
                changes.get("email"),
                changes.get("phone"),
                exclude_id=target_id,
            )
            if conflict is not None:
                return Result.fail(conflict)

            try:
                result = await session.execute(
                    update(Account)
                    .where(Account.id == target_id, Account.role == target.role, _live_accounts())
                    .values(updated_at=utcnow(), **changes)
                    .execution_options(synchronize_session=False)
                )
            except IntegrityError:
                # A concurrent write took one of the identifiers
                await session.rollback()
                conflict = await self._find_conflict(
                    session,
                    changes.get("username"),
                    changes.get("email"),
                    changes.get("phone"),
                    exclude_id=target_id,
                )
                return Result.fail(conflict or Failure.TRANSACTION_FAILED)
            if result.rowcount != 1:
                return Result.fail(Failure.FORBIDDEN)

            if "email" in changes:
                await self.verification.cancel(session, target_id, VerificationPurpose.EMAIL)
                await self.verification.cancel(session, target_id, VerificationPurpose.PASSWORD_RESET)
            if "phone" in changes:
                await self.verification.cancel(session, target_id, VerificationPurpose.SMS)
            await session.refresh(target)
            return Result.success(AccountOut.from_account(target))

        return await self.store.atomic(apply)

    # --- Provisioning ---

    async def provision(
        self,
        username: str,
        email: str,
        password: str,
        role: Any = Role.USER,
        status: AccountStatus = AccountStatus.ACTIVE,
        phone: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> Result[AccountOut]:
        """
        Create an account directly, bypassing self-registration.

        Args:
            username: Unique username
            email: Unique email
            password: Plaintext password, checked against the policy
            role: Role of the new account
            status: ACTIVE, or PENDING to send an activation code
            phone: Optional phone number
            actor_id: Creating account; it must outrank the requested role.
                None for system provisioning at startup

        Returns:
            Result with the new account
        """
        requested = Role.parse(role)
        if requested is None:
            return Result.fail(Failure.FORBIDDEN)
        if status not in (AccountStatus.ACTIVE, AccountStatus.PENDING):
            return Result.fail(Failure.INVALID_TRANSITION)
        strength = self.credentials.check_strength(password)
        if not strength.ok:
            return strength

        email = normalize_email(email)
        password_hash = await self.credentials.hash(password)

        async def create(session: AsyncSession):
            if actor_id is not None:
                actor = await session.get(Account, actor_id)
                if actor is None or not actor.is_active:
                    return Result.fail(Failure.FORBIDDEN)
                if not RoleAuthority.can_assign(actor.role, Role.USER, requested):
                    return Result.fail(Failure.FORBIDDEN)
            inserted = await self._insert_account(
                session, username, email, password_hash, phone, requested, status
            )
            if not inserted.ok:
                return inserted
            account = inserted.value
            code = None
            if status == AccountStatus.PENDING:
                issued = await self.verification.issue(session, account.id, VerificationPurpose.EMAIL)
                if not issued.ok:
                    return issued
                code = issued.value
            return Result.success((account, code))

        result = await self.store.atomic(create)
        if not result.ok:
            return result

        account, code = result.value
        if code is not None:
            await self.verification.deliver(VerificationMessage(
                account_id=account.id,
                purpose=VerificationPurpose.EMAIL,
                destination=account.email,
                code=code.code,
                expires_at=code.expires_at,
            ))
        return Result.success(AccountOut.from_account(account))

    async def ensure_owner(self, username: str, email: str, password: str) -> Optional[AccountOut]:
        """
        Create the owner account unless a live one already exists.

        Returns:
            The created owner, or None if nothing was created
        """
        existing = await self.store.read(
            lambda session: self._find_live(session, Account.role == int(Role.OWNER))
        )
        if existing is not None:
            return None
        result = await self.provision(username, email, password, role=Role.OWNER)
        if not result.ok:
            logger.warning(f"Owner account not created: {result.failure.value}")
            return None
        return result.value

    # --- Read models ---

    async def get_account_state(self, account_id: int) -> Optional[AccountState]:
        """Role, status and token_version of an account, or None if it does not exist."""
        async def load(session: AsyncSession):
            row = (await session.execute(
                select(Account.id, Account.role, Account.status, Account.token_version)
                .where(Account.id == account_id)
            )).first()
            if row is None:
                return None
            return AccountState(
                account_id=row.id,
                role=Role.parse(row.role),
                status=AccountStatus(row.status),
                token_version=row.token_version,
            )

        return await self.store.read(load)

    async def get_account(self, account_id: int) -> Result[AccountOut]:
        account = await self.store.read(lambda session: session.get(Account, account_id))
        if account is None:
            return Result.fail(Failure.ACCOUNT_NOT_FOUND)
        return Result.success(AccountOut.from_account(account))

    async def list_accounts(
        self,
        page: int = 1,
        limit: int = 20,
        role: Optional[Role] = None,
        status: Optional[AccountStatus] = None,
    ) -> Result[AccountPage]:
        """
        Page through accounts, newest first.

        Deleted accounts are only listed when asked for by status.
        """
        filters = []
        if role is not None:
            filters.append(Account.role == int(role))
        if status is not None:
            filters.append(Account.status == status.value)
        else:
            filters.append(_live_accounts())
        criteria = and_(*filters)

        async def load(session: AsyncSession):
            total = await session.scalar(select(func.count(Account.id)).where(criteria))
            result = await session.execute(
                select(Account)
                .where(criteria)
                .order_by(Account.created_at.desc(), Account.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return AccountPage(
                items=[AccountOut.from_account(a) for a in result.scalars().all()],
                total=total or 0,
                page=page,
                limit=limit,
            )

        return Result.success(await self.store.read(load))

    async def search_accounts(self, query: str, limit: int = 20) -> Result[List[AccountOut]]:
        """
        Case-insensitive substring search over usernames and emails of live accounts.

        Args:
            query: Search text, at least two characters after trimming
            limit: Maximum number of accounts returned, newest first

        Returns:
            Result with matching accounts, or INVALID_INPUT for a short query
        """
        term = (query or "").strip()
        if len(term) < SEARCH_MIN_LENGTH:
            return Result.fail(
                Failure.INVALID_INPUT, f"Search query must be at least {SEARCH_MIN_LENGTH} characters"
            )
        # LIKE wildcards in the query are matched literally
        escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"

        async def load(session: AsyncSession):
            result = await session.execute(
                select(Account)
                .where(
                    _live_accounts(),
                    or_(
                        Account.username.ilike(pattern, escape="\\"),
                        Account.email.ilike(pattern, escape="\\"),
                    ),
                )
                .order_by(Account.created_at.desc(), Account.id.desc())
                .limit(limit)
            )
            return [AccountOut.from_account(a) for a in result.scalars().all()]

        return Result.success(await self.store.read(load))

    async def account_stats(self) -> Result[AccountStats]:
        """Counts for the admin dashboard."""
        now = utcnow()

        async def load(session: AsyncSession):
            by_role = {role.label: 0 for role in Role}
            rows = await session.execute(
                select(Account.role, func.count(Account.id))
                .where(_live_accounts())
                .group_by(Account.role)
            )
            for rank, count in rows.all():
                role = Role.parse(rank)
                if role is not None:
                    by_role[role.label] = count

            by_status = {status.value: 0 for status in AccountStatus}
            rows = await session.execute(
                select(Account.status, func.count(Account.id)).group_by(Account.status)
            )
            for status, count in rows.all():
                by_status[status] = count

            phone_verified = await session.scalar(
                select(func.count(Account.id)).where(_live_accounts(), Account.phone_verified.is_(True))
            )
            recent = await session.scalar(
                select(func.count(Account.id)).where(
                    _live_accounts(), Account.created_at >= now - RECENT_ACCOUNTS_WINDOW
                )
            )
            return AccountStats(
                total=sum(by_role.values()),
                by_role=by_role,
                by_status=by_status,
                phone_verified=phone_verified or 0,
                recent=recent or 0,
                generated_at=now,
            )

        return Result.success(await self.store.read(load))
