"""
Test cases for the atomic unit-of-work runner.
"""
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from iam_service.auth.errors import Failure, Result
from iam_service.auth.models import Account, AccountStatus, Role
from iam_service.auth.transactions import is_transient


def new_account(username: str) -> Account:
    return Account(
        username=username,
        email=f"{username}@example.com",
        password_hash="$2b$04$notarealhash",
        role=int(Role.USER),
        status=AccountStatus.ACTIVE.value,
    )


async def count_accounts(store) -> int:
    async def load(session):
        result = await session.execute(select(Account))
        return len(result.scalars().all())

    return await store.read(load)


async def test_successful_result_commits(store):
    async def create(session):
        session.add(new_account("kept"))
        return Result.success()

    assert (await store.atomic(create)).ok
    assert await count_accounts(store) == 1


async def test_failed_result_rolls_back(store):
    async def create_then_fail(session):
        session.add(new_account("discarded"))
        await session.flush()
        return Result.fail(Failure.INVALID_TRANSITION)

    assert (await store.atomic(create_then_fail)).failure == Failure.INVALID_TRANSITION
    assert await count_accounts(store) == 0


async def test_storage_error_becomes_transaction_failed(store):
    async def broken(session):
        session.add(new_account("twin"))
        session.add(new_account("twin"))
        await session.flush()
        return Result.success()

    assert (await store.atomic(broken)).failure == Failure.TRANSACTION_FAILED
    assert await count_accounts(store) == 0


async def test_transient_error_is_retried_once(store):
    calls = []

    async def flaky(session):
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("UPDATE accounts", {}, Exception("database is locked"))
        session.add(new_account("retried"))
        return Result.success()

    assert (await store.atomic(flaky)).ok
    assert len(calls) == 2
    assert await count_accounts(store) == 1


async def test_persistent_transient_error_gives_up(store):
    calls = []

    async def always_locked(session):
        calls.append(1)
        raise OperationalError("UPDATE accounts", {}, Exception("database is locked"))

    assert (await store.atomic(always_locked)).failure == Failure.TRANSACTION_FAILED
    assert len(calls) == 2


def test_is_transient():
    assert is_transient(OperationalError("SELECT 1", {}, Exception("locked")))
    assert not is_transient(IntegrityError("INSERT", {}, Exception("unique")))
