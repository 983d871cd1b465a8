"""SqlAlchemyRepository against FakeAsyncSession: compare-and-set results,
row mapping, and how driver failures surface."""

import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from staff_auth.core.errors import InvalidOrExpiredCode, StoreUnavailable
from staff_auth.models import Identity, OneTimeCode, RefreshSession
from staff_auth.schemas.common import AuditAction, CodePurpose
from staff_auth.storage.sql import SqlAlchemyAuthStore, SqlAlchemyRepository
from conftest import FakeAsyncSession, FakeResult, sequence_handler


def _outage() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("connection refused"))


@pytest.mark.asyncio
async def test_consume_code_reports_winner():
    session = FakeAsyncSession().on_execute(
        sequence_handler([FakeResult(rowcount=1), FakeResult(rowcount=0)])
    )
    repo = SqlAlchemyRepository(session)
    code_id = uuid.uuid4()
    now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    assert await repo.consume_code(code_id, now) is True
    assert await repo.consume_code(code_id, now) is False
    assert len(session.executed) == 2


@pytest.mark.asyncio
async def test_delete_refresh_session_and_backup_code_are_compare_and_set():
    session = FakeAsyncSession().on_execute(
        sequence_handler([FakeResult(rowcount=1), FakeResult(rowcount=0), FakeResult(rowcount=0)])
    )
    repo = SqlAlchemyRepository(session)

    assert await repo.delete_refresh_session(uuid.uuid4()) is True
    assert await repo.delete_refresh_session(uuid.uuid4()) is False
    assert await repo.delete_backup_code(uuid.uuid4()) is False


@pytest.mark.asyncio
async def test_identity_row_maps_to_aware_record():
    identity_id = uuid.uuid4()
    row = Identity(
        id=identity_id,
        tenant_id="default",
        email="a@x.com",
        role="STAFF",
        hashed_password="hash",
        is_active=True,
        must_change_password=False,
        last_login_at=datetime(2026, 3, 1, 8, 0),
        trusted_devices_revoked_at=None,
        created_at=datetime(2026, 1, 1, 0, 0),
    )
    session = FakeAsyncSession().on_get(Identity, identity_id, row)
    repo = SqlAlchemyRepository(session)

    record = await repo.get_identity(identity_id)

    assert record.email == "a@x.com"
    assert record.last_login_at == datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
    assert record.trusted_devices_revoked_at is None
    assert await repo.get_identity(uuid.uuid4()) is None


@pytest.mark.asyncio
async def test_latest_active_code_maps_purpose():
    row = OneTimeCode(
        id=uuid.uuid4(),
        identity_id=uuid.uuid4(),
        email="a@x.com",
        purpose="PASSWORD_RESET",
        code_hash="hash",
        created_at=datetime(2026, 3, 2, 9, 0),
        expires_at=datetime(2026, 3, 2, 9, 10),
        used_at=None,
    )
    session = FakeAsyncSession().on_execute(lambda stmt: FakeResult(items=[row]))
    repo = SqlAlchemyRepository(session)

    record = await repo.latest_active_code(
        "A@X.com", CodePurpose.PASSWORD_RESET, datetime(2026, 3, 2, 9, 5, tzinfo=timezone.utc)
    )

    assert record.purpose == CodePurpose.PASSWORD_RESET
    assert record.expires_at.tzinfo is not None


@pytest.mark.asyncio
async def test_refresh_session_lookup():
    row = RefreshSession(
        id=uuid.uuid4(),
        identity_id=uuid.uuid4(),
        token_hash="abc",
        created_at=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
        expires_at=datetime(2026, 3, 9, 9, 0, tzinfo=timezone.utc),
    )
    session = FakeAsyncSession().on_execute(sequence_handler([FakeResult(scalar=row), FakeResult()]))
    repo = SqlAlchemyRepository(session)

    found = await repo.get_refresh_session_by_hash("abc")
    assert found.id == row.id
    assert await repo.get_refresh_session_by_hash("missing") is None


@pytest.mark.asyncio
async def test_prune_runs_in_savepoint():
    session = FakeAsyncSession().on_execute(lambda stmt: FakeResult(rowcount=2))
    repo = SqlAlchemyRepository(session)

    assert await repo.prune_refresh_sessions(uuid.uuid4(), 5) == 2
    assert session.opened == ["savepoint"]
    assert session.closed == ["savepoint"]


@pytest.mark.asyncio
async def test_prune_failure_rolls_back_savepoint_only():
    session = FakeAsyncSession().on_execute(sequence_handler([_outage()]))
    repo = SqlAlchemyRepository(session)

    with pytest.raises(StoreUnavailable):
        await repo.prune_refresh_sessions(uuid.uuid4(), 5)
    assert session.rolled_back == ["savepoint"]


@pytest.mark.asyncio
async def test_count_and_latest_audit_event():
    moment = datetime(2026, 3, 1, 12, 0)
    session = FakeAsyncSession().on_execute(
        sequence_handler([FakeResult(scalar=3), FakeResult(scalar=moment), FakeResult()])
    )
    repo = SqlAlchemyRepository(session)
    identity_id = uuid.uuid4()

    assert await repo.count_refresh_sessions(identity_id) == 3
    assert await repo.latest_audit_event_at(identity_id, AuditAction.ACCESS_REVALIDATED) == moment.replace(
        tzinfo=timezone.utc
    )
    assert await repo.latest_audit_event_at(identity_id, AuditAction.ACCESS_REVALIDATED) is None


@pytest.mark.asyncio
async def test_store_transaction_commits_on_success():
    session = FakeAsyncSession().on_execute(lambda stmt: FakeResult(rowcount=1))
    store = SqlAlchemyAuthStore(lambda: session)

    async with store.transaction() as repo:
        assert await repo.consume_reset_grant(uuid.uuid4(), datetime.now(timezone.utc)) is True

    assert session.closed == ["transaction"]


@pytest.mark.asyncio
async def test_driver_errors_become_store_unavailable():
    session = FakeAsyncSession().on_execute(sequence_handler([_outage()]))
    store = SqlAlchemyAuthStore(lambda: session)

    with pytest.raises(StoreUnavailable):
        async with store.transaction() as repo:
            await repo.get_identity_by_email("a@x.com")
    assert session.rolled_back == ["transaction"]


@pytest.mark.asyncio
async def test_security_rejections_pass_through_store():
    session = FakeAsyncSession()
    store = SqlAlchemyAuthStore(lambda: session)

    with pytest.raises(InvalidOrExpiredCode):
        async with store.transaction():
            raise InvalidOrExpiredCode()
    assert session.rolled_back == ["transaction"]
