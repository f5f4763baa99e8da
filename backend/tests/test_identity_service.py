"""
Unit Tests for the Identity Service (upsert resolver)

Runs against an in-memory SQLite database so the unique constraints and
upsert semantics are real.

Tests:
- Idempotent creation under redelivery
- Email rebind to a new external id
- Update-before-create fallback
- Idempotent deletion
- Role precedence between metadata tiers
- Three-way conflicts
- Store error classification (transient / permanent)
- Lazy self-healing from the provider API

Run with: pytest tests/test_identity_service.py -v
"""

import asyncio
import uuid
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError, ProgrammingError, IntegrityError, DBAPIError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from database.connection import Base
from identity.errors import (
    TransientStoreFailure,
    PermanentStoreFailure,
    IdentityConflictError,
)
from identity.models import IdentityRecordDB
from identity.notifications import (
    ChangeNotification,
    EmailCandidate,
    NotificationType,
    ProviderUserData,
    TrustedMetadata,
    UntrustedMetadata,
)
from identity.roles import AccessRole, SignupIntent
from identity.service import IdentityService, SyncOutcome


class TickingClock:
    """Each call is one second after the previous one."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


def notification(
    external_id="user_1",
    email="ada@example.com",
    type=NotificationType.CREATED,
    role=None,
    intent=None,
    internal_id=None,
    first_name="Ada",
    last_name="Lovelace",
):
    return ChangeNotification(
        type=type,
        external_id=external_id,
        email_candidates=[EmailCandidate(address=email, primary=True)] if email else [],
        first_name=first_name,
        last_name=last_name,
        avatar_ref="https://img.example.com/a.png",
        trusted=TrustedMetadata(role=role, internal_id=internal_id),
        untrusted=UntrustedMetadata(signup_intent=intent),
    )


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine with the identity schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    """Session bound to the in-memory engine."""
    factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    async with factory() as session:
        yield session


@pytest.fixture
def service(db):
    """Service with a clock that visibly advances."""
    return IdentityService(db, timeout_seconds=5, clock=TickingClock())


async def count_records(db) -> int:
    result = await db.execute(select(func.count()).select_from(IdentityRecordDB))
    return result.scalar_one()


class TestCreate:
    """Test the created path."""

    @pytest.mark.asyncio
    async def test_first_delivery_creates(self, service, db):
        """Test a new identity is inserted with normalized fields."""
        result = await service.apply_created(notification(email="  Ada@Example.COM "))

        assert result.outcome == SyncOutcome.CREATED
        record = await service.get_by_external_id("user_1")
        assert record.email == "ada@example.com"
        assert record.display_name == "Ada Lovelace"
        assert record.avatar_ref == "https://img.example.com/a.png"
        assert record.access_role == AccessRole.STANDARD
        assert record.id == result.internal_id

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, service, db):
        """Test N deliveries leave one record with stable ids and an advancing updated_at."""
        first = await service.apply_created(notification())
        record = await service.get_by_external_id("user_1")
        first_updated_at = record.updated_at

        for _ in range(3):
            result = await service.apply_created(notification())
            assert result.outcome == SyncOutcome.UPDATED
            assert result.internal_id == first.internal_id

        record = await service.get_by_external_id("user_1")
        assert await count_records(db) == 1
        assert record.id == first.internal_id
        assert record.external_id == "user_1"
        assert record.updated_at > first_updated_at
        assert record.created_at == first_updated_at

    @pytest.mark.asyncio
    async def test_redelivery_refreshes_mutable_fields(self, service):
        """Test a repeated created notification carries new profile values."""
        await service.apply_created(notification())
        await service.apply_created(notification(first_name="Augusta", email="augusta@example.com"))

        record = await service.get_by_external_id("user_1")
        assert record.display_name == "Augusta Lovelace"
        assert record.email == "augusta@example.com"

    @pytest.mark.asyncio
    async def test_preassigned_internal_id_used_on_insert(self, service):
        """Test a trusted internal_id becomes the record id for new records."""
        internal_id = uuid.uuid4()
        result = await service.apply_created(notification(internal_id=internal_id))

        assert result.outcome == SyncOutcome.CREATED
        assert result.internal_id == internal_id

    @pytest.mark.asyncio
    async def test_preassigned_internal_id_never_changes_existing(self, service):
        """Test a later internal_id does not rewrite an existing record's id."""
        first = await service.apply_created(notification())
        result = await service.apply_created(notification(internal_id=uuid.uuid4()))

        assert result.internal_id == first.internal_id


class TestRebind:
    """Test the email conflict path."""

    @pytest.mark.asyncio
    async def test_rebind_keeps_internal_id(self, service, db):
        """Test a re-registration under a new external id rebinds the email-matched record."""
        original = await service.apply_created(notification(external_id="user_old"))

        result = await service.apply_created(notification(external_id="user_new", email="ADA@example.com"))

        assert result.outcome == SyncOutcome.REBOUND
        assert result.internal_id == original.internal_id
        assert await count_records(db) == 1
        assert await service.get_by_external_id("user_old") is None
        record = await service.get_by_external_id("user_new")
        assert record.id == original.internal_id

    @pytest.mark.asyncio
    async def test_three_way_conflict_rejected(self, service, db):
        """Test external id on one record and email on another is a permanent conflict."""
        a = await service.apply_created(notification(external_id="user_a", email="a@example.com"))
        b = await service.apply_created(notification(external_id="user_b", email="b@example.com"))

        with pytest.raises(IdentityConflictError) as exc_info:
            await service.apply_created(notification(external_id="user_b", email="a@example.com"))

        error = exc_info.value
        assert not error.retryable
        assert isinstance(error, PermanentStoreFailure)
        assert error.email_record_id == str(a.internal_id)
        assert error.external_record_id == str(b.internal_id)

        # Nothing was merged
        assert await count_records(db) == 2
        assert (await service.get_by_external_id("user_a")).email == "a@example.com"
        assert (await service.get_by_external_id("user_b")).email == "b@example.com"


class TestUpdate:
    """Test the updated path."""

    @pytest.mark.asyncio
    async def test_update_existing(self, service):
        """Test an update refreshes fields on the external_id match."""
        created = await service.apply_created(notification())
        result = await service.apply_updated(notification(type=NotificationType.UPDATED, last_name="King"))

        assert result.outcome == SyncOutcome.UPDATED
        assert result.internal_id == created.internal_id
        assert (await service.get_by_external_id("user_1")).display_name == "Ada King"

    @pytest.mark.asyncio
    async def test_update_before_create_falls_back(self, service, db):
        """Test an update for an unknown identity runs the create path."""
        result = await service.apply_updated(notification(type=NotificationType.UPDATED))

        assert result.outcome == SyncOutcome.CREATED
        assert await count_records(db) == 1

    @pytest.mark.asyncio
    async def test_update_before_create_with_known_email_rebinds(self, service):
        """Test the fallback also goes through the rebind path."""
        original = await service.apply_created(notification(external_id="user_old"))
        result = await service.apply_updated(notification(external_id="user_new", type=NotificationType.UPDATED))

        assert result.outcome == SyncOutcome.REBOUND
        assert result.internal_id == original.internal_id

    @pytest.mark.asyncio
    async def test_update_to_taken_email_conflicts(self, service, db):
        """Test changing email to another record's email is a conflict, not a merge."""
        await service.apply_created(notification(external_id="user_a", email="a@example.com"))
        await service.apply_created(notification(external_id="user_b", email="b@example.com"))

        with pytest.raises(IdentityConflictError):
            await service.apply_updated(notification(
                external_id="user_b", email="a@example.com", type=NotificationType.UPDATED))

        assert (await service.get_by_external_id("user_b")).email == "b@example.com"


class TestDelete:
    """Test the deleted path."""

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, service, db):
        """Test the second delete of the same identity is already satisfied."""
        await service.apply_created(notification())
        deleted = notification(type=NotificationType.DELETED, email=None)

        first = await service.apply_deleted(deleted)
        second = await service.apply_deleted(deleted)

        assert first.outcome == SyncOutcome.DELETED
        assert second.outcome == SyncOutcome.ALREADY_ABSENT
        assert await count_records(db) == 0

    @pytest.mark.asyncio
    async def test_delete_unknown(self, service):
        """Test deleting an identity never seen is not an error."""
        result = await service.apply_deleted(notification(type=NotificationType.DELETED, email=None))
        assert result.outcome == SyncOutcome.ALREADY_ABSENT


class TestRolePrecedence:
    """Test role derivation between metadata tiers."""

    @pytest.mark.asyncio
    async def test_untrusted_vendor_intent(self, service):
        """Test a vendor signup intent with no trusted role yields vendor."""
        await service.apply_created(notification(intent=SignupIntent.VENDOR))
        assert (await service.get_by_external_id("user_1")).access_role == AccessRole.VENDOR

    @pytest.mark.asyncio
    async def test_trusted_role_wins(self, service):
        """Test a trusted standard role beats a vendor signup intent."""
        await service.apply_created(notification(intent=SignupIntent.VENDOR, role=AccessRole.STANDARD))
        assert (await service.get_by_external_id("user_1")).access_role == AccessRole.STANDARD

    @pytest.mark.asyncio
    async def test_unrecognized_trusted_role_is_standard(self, service):
        """Test 'superuser' in the trusted tier is stored as standard."""
        payload = ProviderUserData.model_validate({
            "id": "user_1",
            "email_addresses": [{"id": "e1", "email_address": "ada@example.com"}],
            "public_metadata": {"role": "superuser"},
            "unsafe_metadata": {"user_type": "vendor"},
        })
        await service.apply_created(ChangeNotification.from_user_data(NotificationType.CREATED, payload))
        assert (await service.get_by_external_id("user_1")).access_role == AccessRole.STANDARD

    @pytest.mark.asyncio
    async def test_untrusted_admin_intent_is_capped(self, service):
        """Test only the trusted tier can grant admin."""
        await service.apply_created(notification(intent=SignupIntent.ADMIN))
        assert (await service.get_by_external_id("user_1")).access_role == AccessRole.STANDARD

    @pytest.mark.asyncio
    async def test_trusted_admin(self, service):
        """Test a trusted admin role is stored."""
        await service.apply_created(notification(role=AccessRole.ADMIN))
        assert (await service.get_by_external_id("user_1")).access_role == AccessRole.ADMIN

    @pytest.mark.asyncio
    async def test_update_recomputes_role(self, service):
        """Test a later trusted role promotion is applied on update."""
        await service.apply_created(notification(intent=SignupIntent.VENDOR))
        await service.apply_updated(notification(type=NotificationType.UPDATED, role=AccessRole.ADMIN))
        assert (await service.get_by_external_id("user_1")).access_role == AccessRole.ADMIN


class TestErrorClassification:
    """Test store errors leave the service classified."""

    @pytest.fixture
    def mock_db(self):
        """Create a mock database session that looks like PostgreSQL."""
        db = AsyncMock()
        bind = MagicMock()
        bind.dialect.name = "postgresql"
        db.get_bind = MagicMock(return_value=bind)
        return db

    @pytest.mark.asyncio
    async def test_operational_error_is_transient(self, mock_db):
        """Test a dropped connection is retryable."""
        mock_db.execute.side_effect = OperationalError("INSERT", {}, Exception("connection refused"))
        service = IdentityService(mock_db)

        with pytest.raises(TransientStoreFailure) as exc_info:
            await service.apply_created(notification())

        assert exc_info.value.retryable
        assert exc_info.value.external_id == "user_1"
        mock_db.rollback.assert_awaited()

    @pytest.mark.asyncio
    async def test_invalidated_connection_is_transient(self, mock_db):
        """Test an invalidated connection is retryable."""
        mock_db.execute.side_effect = DBAPIError(
            "DELETE", {}, Exception("server closed the connection"), connection_invalidated=True)
        service = IdentityService(mock_db)

        with pytest.raises(TransientStoreFailure):
            await service.apply_deleted(notification(type=NotificationType.DELETED, email=None))

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, mock_db):
        """Test a store that does not answer within the bound is retryable."""
        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        mock_db.execute.side_effect = hang
        service = IdentityService(mock_db, timeout_seconds=0.01)

        with pytest.raises(TransientStoreFailure):
            await service.apply_updated(notification(type=NotificationType.UPDATED))

    @pytest.mark.asyncio
    async def test_programming_error_is_permanent(self, mock_db):
        """Test a schema mismatch is not retryable."""
        mock_db.execute.side_effect = ProgrammingError("INSERT", {}, Exception("column does not exist"))
        service = IdentityService(mock_db)

        with pytest.raises(PermanentStoreFailure) as exc_info:
            await service.apply_created(notification())

        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_non_email_integrity_error_is_permanent(self, mock_db):
        """Test a check constraint violation is not treated as a rebind."""
        mock_db.execute.side_effect = IntegrityError(
            "INSERT", {}, Exception("violates check constraint ck_identity_records_role"))
        service = IdentityService(mock_db)

        with pytest.raises(PermanentStoreFailure):
            await service.apply_created(notification())

    @pytest.mark.asyncio
    async def test_unsupported_dialect_is_permanent(self, mock_db):
        """Test creation on a store without upsert support is rejected."""
        mock_db.get_bind.return_value.dialect.name = "mysql"
        service = IdentityService(mock_db)

        with pytest.raises(PermanentStoreFailure):
            await service.apply_created(notification())

    @pytest.mark.asyncio
    async def test_ensure_lookup_failure_is_transient(self, mock_db):
        """Test the ensure lookup is classified and rolls the session back."""
        mock_db.execute.side_effect = OperationalError("SELECT", {}, Exception("connection refused"))
        provider = MagicMock()
        provider.get_user = AsyncMock()
        service = IdentityService(mock_db)

        with pytest.raises(TransientStoreFailure) as exc_info:
            await service.ensure("user_1", provider)

        assert exc_info.value.external_id == "user_1"
        mock_db.rollback.assert_awaited_once()
        provider.get_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ensure_lookup_is_bounded(self, mock_db):
        """Test a hanging lookup times out as a transient failure."""
        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        mock_db.execute.side_effect = hang
        service = IdentityService(mock_db, timeout_seconds=0.01)

        with pytest.raises(TransientStoreFailure):
            await service.find("user_1")


class TestEnsure:
    """Test lazy self-healing."""

    @pytest.fixture
    def provider(self):
        """Provider client returning one user."""
        provider = MagicMock()
        provider.get_user = AsyncMock(return_value=ProviderUserData.model_validate({
            "id": "user_1",
            "email_addresses": [{"id": "e1", "email_address": "Ada@Example.com"}],
            "primary_email_address_id": "e1",
            "first_name": "Ada",
            "unsafe_metadata": {"user_type": "vendor"},
        }))
        return provider

    @pytest.mark.asyncio
    async def test_existing_record_returned_without_provider_call(self, service, provider):
        """Test a synced identity is returned as-is."""
        await service.apply_created(notification())

        record = await service.ensure("user_1", provider)

        assert record.external_id == "user_1"
        provider.get_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_record_created_from_provider(self, service, provider, db):
        """Test a missed creation is healed through the create path."""
        record = await service.ensure("user_1", provider)

        assert record is not None
        assert record.email == "ada@example.com"
        assert record.access_role == AccessRole.VENDOR
        assert await count_records(db) == 1

    @pytest.mark.asyncio
    async def test_provider_without_user(self, service, provider, db):
        """Test nothing is written when the provider has no such user."""
        provider.get_user.return_value = None

        assert await service.ensure("user_1", provider) is None
        assert await count_records(db) == 0

    @pytest.mark.asyncio
    async def test_provider_returns_other_user(self, service, provider, db):
        """Test a provider answer for a different id is not stored."""
        assert await service.ensure("user_2", provider) is None
        assert await count_records(db) == 0
