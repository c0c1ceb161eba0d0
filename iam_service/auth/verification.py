"""
Single-use verification codes for email, SMS and password reset.

Per (account, purpose) a code moves through issued -> consumed, or is
found expired at redemption time, or is superseded by a newer issuance.
Expiry is checked lazily; nothing sweeps old rows, and used rows are kept
for audit until the account is deleted.

All methods that touch storage take the caller's session so they join the
caller's transaction.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from iam_service.auth.errors import Failure, Result
from iam_service.auth.models import VerificationCode, VerificationPurpose, utcnow
from iam_service.config import Settings

logger = logging.getLogger(__name__)

SMS_CODE_DIGITS = 6
TOKEN_CODE_BYTES = 24


@dataclass(frozen=True)
class VerificationMessage:
    """What a notifier needs to deliver a code."""
    account_id: int
    purpose: VerificationPurpose
    destination: str
    code: str
    expires_at: datetime


class Notifier(Protocol):
    async def deliver(self, message: VerificationMessage) -> None:
        ...


class LoggingNotifier:
    """Development notifier: writes the message to the log instead of sending it."""

    def __init__(self):
        self.logger = logging.getLogger("iam_service.notifier")

    async def deliver(self, message: VerificationMessage) -> None:
        self.logger.info(
            f"MOCK {message.purpose.value} delivery to {message.destination} | "
            f"account={message.account_id} code={message.code} expires_at={message.expires_at.isoformat()}"
        )


def codes_match(stored: str, supplied: str) -> bool:
    """Constant-time comparison of a stored code with a supplied one."""
    return secrets.compare_digest(stored.encode("utf-8"), supplied.encode("utf-8"))


def _live(account_id: int, purpose: VerificationPurpose):
    return and_(
        VerificationCode.account_id == account_id,
        VerificationCode.purpose == purpose.value,
        VerificationCode.consumed.is_(False),
        VerificationCode.superseded.is_(False),
    )


class VerificationWorkflow:
    """Issues and redeems verification codes."""

    def __init__(self, settings: Settings, notifier: Optional[Notifier] = None):
        self.code_ttl = settings.verification_code_ttl
        self.cooldown = settings.verification_cooldown
        self.max_attempts = settings.verification_max_attempts
        self.notifier = notifier if notifier is not None else LoggingNotifier()

    @staticmethod
    def generate_code(purpose: VerificationPurpose) -> str:
        """Random code of fixed entropy for the given purpose."""
        if purpose == VerificationPurpose.SMS:
            return f"{secrets.randbelow(10 ** SMS_CODE_DIGITS):0{SMS_CODE_DIGITS}d}"
        return secrets.token_urlsafe(TOKEN_CODE_BYTES)

    async def _latest(
        self, session: AsyncSession, account_id: int, purpose: VerificationPurpose
    ) -> Optional[VerificationCode]:
        result = await session.execute(
            select(VerificationCode)
            .where(
                VerificationCode.account_id == account_id,
                VerificationCode.purpose == purpose.value,
            )
            .order_by(VerificationCode.issued_at.desc(), VerificationCode.id.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def live_code(
        self, session: AsyncSession, account_id: int, purpose: VerificationPurpose
    ) -> Optional[VerificationCode]:
        result = await session.execute(select(VerificationCode).where(_live(account_id, purpose)))
        return result.scalars().first()

    async def issue(
        self, session: AsyncSession, account_id: int, purpose: VerificationPurpose
    ) -> Result[VerificationCode]:
        """
        Issue a new code, replacing any live one for the same pair.

        Args:
            session: Session of the enclosing transaction
            account_id: Owning account
            purpose: Channel or intent of the code

        Returns:
            Result with the new VerificationCode row, or RATE_LIMITED when a
            code for the pair was issued within the cooldown (including a
            concurrent issuance that won the race)
        """
        now = utcnow()
        latest = await self._latest(session, account_id, purpose)
        if latest is not None and now - latest.issued_at < self.cooldown:
            return Result.fail(Failure.RATE_LIMITED)

        # Only codes past the cooldown are replaced. A code issued
        # concurrently stays live and the insert below hits the unique index.
        await session.execute(
            update(VerificationCode)
            .where(_live(account_id, purpose), VerificationCode.issued_at <= now - self.cooldown)
            .values(superseded=True)
            .execution_options(synchronize_session=False)
        )

        code = VerificationCode(
            account_id=account_id,
            purpose=purpose.value,
            code=self.generate_code(purpose),
            issued_at=now,
            expires_at=now + self.code_ttl,
            attempts=0,
            consumed=False,
            superseded=False,
        )
        session.add(code)
        try:
            await session.flush()
        except IntegrityError:
            logger.info(f"Concurrent {purpose.value} code issuance for account {account_id}")
            return Result.fail(Failure.RATE_LIMITED)
        return Result.success(code)

    async def redeem(
        self,
        session: AsyncSession,
        account_id: int,
        purpose: VerificationPurpose,
        supplied_code: str,
    ) -> Result[VerificationCode]:
        """
        Check and consume a code in the caller's transaction.

        The consuming UPDATE only matches a row that is still live, so of
        several concurrent redemptions exactly one sees a row count of 1.

        Returns:
            Result with the consumed row, or CODE_NOT_FOUND, CODE_MISMATCH,
            CODE_EXPIRED, CODE_CONSUMED or TOO_MANY_ATTEMPTS
        """
        now = utcnow()
        result = await session.execute(
            select(VerificationCode)
            .where(
                VerificationCode.account_id == account_id,
                VerificationCode.purpose == purpose.value,
            )
            .order_by(VerificationCode.id.desc())
        )
        # Every stored code is compared so the timing does not depend on which one matched
        row = None
        for candidate in result.scalars().all():
            if codes_match(candidate.code, supplied_code) and row is None:
                row = candidate

        if row is None:
            live = await self.live_code(session, account_id, purpose)
            if live is None:
                return Result.fail(Failure.CODE_NOT_FOUND)
            if live.attempts >= self.max_attempts:
                return Result.fail(Failure.TOO_MANY_ATTEMPTS)
            return Result.fail(Failure.CODE_MISMATCH)

        if row.superseded:
            return Result.fail(Failure.CODE_NOT_FOUND)
        if row.consumed:
            return Result.fail(Failure.CODE_CONSUMED)
        if row.attempts >= self.max_attempts:
            return Result.fail(Failure.TOO_MANY_ATTEMPTS)
        if row.is_expired(now):
            return Result.fail(Failure.CODE_EXPIRED)

        consumed = await session.execute(
            update(VerificationCode)
            .where(
                VerificationCode.id == row.id,
                VerificationCode.consumed.is_(False),
                VerificationCode.superseded.is_(False),
            )
            .values(consumed=True, consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        if consumed.rowcount != 1:
            return Result.fail(Failure.CODE_CONSUMED)

        await session.refresh(row)
        return Result.success(row)

    async def record_mismatch(
        self, session: AsyncSession, account_id: int, purpose: VerificationPurpose
    ) -> Result[int]:
        """Count a failed attempt against the live code; returns attempts used."""
        await session.execute(
            update(VerificationCode)
            .where(_live(account_id, purpose))
            .values(attempts=VerificationCode.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        live = await self.live_code(session, account_id, purpose)
        if live is None:
            return Result.success(0)
        await session.refresh(live)
        return Result.success(live.attempts)

    async def cancel(self, session: AsyncSession, account_id: int, purpose: VerificationPurpose) -> int:
        """Supersede the live code of a pair, e.g. after its destination changed."""
        result = await session.execute(
            update(VerificationCode)
            .where(_live(account_id, purpose))
            .values(superseded=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def purge(self, session: AsyncSession, account_id: int) -> None:
        """Delete every code owned by an account."""
        await session.execute(
            delete(VerificationCode)
            .where(VerificationCode.account_id == account_id)
            .execution_options(synchronize_session=False)
        )

    async def history(self, session: AsyncSession, account_id: int) -> List[VerificationCode]:
        result = await session.execute(
            select(VerificationCode)
            .where(VerificationCode.account_id == account_id)
            .order_by(VerificationCode.id)
        )
        return list(result.scalars().all())

    async def deliver(self, message: VerificationMessage) -> bool:
        """
        Hand a committed code to the notifier.

        Delivery failure does not invalidate the code; the caller can
        offer a resend through issue().
        """
        try:
            await self.notifier.deliver(message)
            return True
        except Exception as e:
            logger.error(
                f"Delivery of {message.purpose.value} code failed for account "
                f"{message.account_id}: {e.__class__.__name__}: {e}"
            )
            return False
