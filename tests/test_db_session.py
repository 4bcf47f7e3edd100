import pytest
from sqlalchemy.exc import OperationalError

from crm.core.exceptions import InternalError, InvalidState
from crm.db.session import transaction


async def test_transaction_commits_on_success(session):
    async with transaction(session):
        pass
    session.commit.assert_awaited_once()
    session.rollback.assert_not_awaited()


async def test_transaction_rolls_back_domain_errors(session):
    with pytest.raises(InvalidState):
        async with transaction(session):
            raise InvalidState("nope")
    session.rollback.assert_awaited_once()
    session.commit.assert_not_awaited()


async def test_transaction_wraps_storage_errors(session):
    with pytest.raises(InternalError):
        async with transaction(session):
            raise OperationalError("SELECT 1", {}, Exception("connection lost"))
    session.rollback.assert_awaited_once()


async def test_transaction_rolls_back_unexpected_errors(session):
    with pytest.raises(RuntimeError):
        async with transaction(session):
            raise RuntimeError("boom")
    session.rollback.assert_awaited_once()
    session.commit.assert_not_awaited()
