"""
Identity - Service Layer

Reconciles verified change notifications into identity records:
- created: idempotent upsert keyed on external_id, with email rebind
- updated: field refresh keyed on external_id, falling back to created
- deleted: idempotent hard delete

Concurrent deliveries for the same identity are settled by the store's
unique constraints; no application-level locks are taken. Retries belong
to the delivery mechanism, so nothing here loops.
"""

import asyncio
import uuid
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, Callable, Awaitable

from sqlalchemy import select, update, delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
    InterfaceError,
    DisconnectionError,
    DBAPIError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import (
    IdentitySyncError,
    StoreFailure,
    TransientStoreFailure,
    PermanentStoreFailure,
    IdentityConflictError,
)
from .models import IdentityRecordDB, utcnow
from .notifications import (
    ChangeNotification,
    NotificationType,
    TrustedMetadata,
    UntrustedMetadata,
    normalize_email,
)
from .roles import AccessRole, intent_to_role, is_self_service

logger = logging.getLogger(__name__)

EMAIL_CONSTRAINT = "uq_identity_records_email"
DEFAULT_STORE_TIMEOUT_SECONDS = 10.0


class SyncOutcome(str, Enum):
    """How a notification was settled."""
    CREATED = "created"
    UPDATED = "updated"
    REBOUND = "rebound"
    DELETED = "deleted"
    ALREADY_ABSENT = "already_absent"
    IGNORED = "ignored"


@dataclass
class SyncResult:
    """Result of reconciling one notification."""
    outcome: SyncOutcome
    external_id: Optional[str] = None
    internal_id: Optional[uuid.UUID] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        data["internal_id"] = str(self.internal_id) if self.internal_id else None
        return data


# ==================== ROLE DERIVATION ====================

def derive_role(trusted: TrustedMetadata, untrusted: UntrustedMetadata) -> AccessRole:
    """
    Pick a role from the two metadata tiers.

    Trusted role first (already coerced to the closed set), then the
    untrusted signup intent capped at self-service roles, then STANDARD.
    """
    if trusted.role is not None:
        return trusted.role

    if untrusted.signup_intent is not None:
        role = intent_to_role(untrusted.signup_intent)
        if not is_self_service(role):
            logger.warning(
                "Ignoring elevated signup intent from untrusted metadata",
                extra={"requested_role": role.value},
            )
            return AccessRole.STANDARD
        return role

    return AccessRole.STANDARD


# ==================== ERROR CLASSIFICATION ====================

def is_email_conflict(exc: IntegrityError) -> bool:
    """True when the violated uniqueness constraint is the email one."""
    cause = getattr(exc.orig, "__cause__", None)
    if getattr(cause, "constraint_name", None) == EMAIL_CONSTRAINT:
        return True
    message = str(exc.orig) if exc.orig is not None else str(exc)
    return EMAIL_CONSTRAINT in message or "identity_records.email" in message


def classify_store_error(exc: SQLAlchemyError, external_id: Optional[str] = None) -> StoreFailure:
    """Translate a SQLAlchemy error into a transient or permanent failure."""
    if isinstance(exc, (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)):
        return TransientStoreFailure(f"Store unavailable: {exc.__class__.__name__}", external_id=external_id)
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return TransientStoreFailure("Store connection invalidated", external_id=external_id)
    return PermanentStoreFailure(f"Store rejected operation: {exc.__class__.__name__}", external_id=external_id)


class IdentityService:
    """
    Identity Service - reconciles provider notifications into the store.

    Ensures:
    - one record per email, one per external_id
    - redelivery of any notification is harmless
    - every store failure leaves as Transient- or PermanentStoreFailure
    """

    def __init__(
        self,
        db: AsyncSession,
        timeout_seconds: float = DEFAULT_STORE_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    # ==================== LOOKUPS ====================

    async def get_by_external_id(self, external_id: str) -> Optional[IdentityRecordDB]:
        """Find a record by provider id."""
        result = await self.db.execute(
            select(IdentityRecordDB)
            .where(IdentityRecordDB.external_id == external_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Optional[IdentityRecordDB]:
        """Find a record by email (case-insensitive)."""
        result = await self.db.execute(
            select(IdentityRecordDB)
            .where(IdentityRecordDB.email == normalize_email(email))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find(self, external_id: str) -> Optional[IdentityRecordDB]:
        """get_by_external_id bounded by the store timeout, failures classified."""
        try:
            return await asyncio.wait_for(self.get_by_external_id(external_id), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            await self._rollback_after_failure()
            raise TransientStoreFailure(
                f"Store did not respond within {self.timeout_seconds}s",
                external_id=external_id,
            ) from e
        except SQLAlchemyError as e:
            await self._rollback_after_failure()
            raise classify_store_error(e, external_id) from e

    # ==================== NOTIFICATION HANDLERS ====================

    async def apply_created(self, notification: ChangeNotification) -> SyncResult:
        return await self._guarded(self._create, notification)

    async def apply_updated(self, notification: ChangeNotification) -> SyncResult:
        return await self._guarded(self._update, notification)

    async def apply_deleted(self, notification: ChangeNotification) -> SyncResult:
        return await self._guarded(self._delete, notification)

    async def _guarded(
        self,
        operation: Callable[[ChangeNotification], Awaitable[SyncResult]],
        notification: ChangeNotification,
    ) -> SyncResult:
        """Bound the store wait and classify whatever escapes."""
        try:
            return await asyncio.wait_for(operation(notification), timeout=self.timeout_seconds)
        except IdentitySyncError:
            await self._rollback_after_failure()
            raise
        except asyncio.TimeoutError as e:
            await self._rollback_after_failure()
            raise TransientStoreFailure(
                f"Store did not respond within {self.timeout_seconds}s",
                external_id=notification.external_id,
            ) from e
        except SQLAlchemyError as e:
            await self._rollback_after_failure()
            raise classify_store_error(e, notification.external_id) from e

    async def _rollback_after_failure(self):
        try:
            await self.db.rollback()
        except SQLAlchemyError as e:
            logger.warning(f"Rollback failed after identity sync error: {e}")

    # ==================== SELF-HEALING ====================

    async def ensure(self, external_id: str, provider) -> Optional[IdentityRecordDB]:
        """
        Return the record for external_id, creating it from the provider if missing.

        Covers a "created" notification that was lost or has not arrived
        yet. The provider's user is run through the same create path as a
        delivery, so the result is indistinguishable from a synced record.

        Args:
            external_id: Provider user id from the session token
            provider: Client exposing `async get_user(external_id)`

        Returns:
            The stored record, or None when the provider has no usable user
        """
        existing = await self.find(external_id)
        if existing is not None:
            return existing

        data = await provider.get_user(external_id)
        if data is None or data.id != external_id:
            return None

        notification = ChangeNotification.from_user_data(NotificationType.CREATED, data)
        if notification.primary_email is None:
            logger.warning("Provider user has no email; cannot create identity record",
                           extra={"external_id": external_id})
            return None

        result = await self.apply_created(notification)
        logger.info(
            f"Self-healed identity record: {result.outcome.value}",
            extra={"external_id": external_id},
        )
        return await self.find(external_id)

    # ==================== CREATE ====================

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert
        if dialect == "sqlite":
            return sqlite.insert
        raise PermanentStoreFailure(f"Upsert not supported on dialect {dialect}")

    async def _create(self, notification: ChangeNotification) -> SyncResult:
        email = notification.primary_email
        role = derive_role(notification.trusted, notification.untrusted)
        now = self.clock()
        new_id = notification.trusted.internal_id or uuid.uuid4()

        insert_stmt = self._insert()(IdentityRecordDB).values(
            id=new_id,
            external_id=notification.external_id,
            email=email,
            display_name=notification.display_name,
            avatar_ref=notification.avatar_ref,
            role=role.value,
            created_at=now,
            updated_at=now,
        )
        stmt = insert_stmt.on_conflict_do_update(
            index_elements=[IdentityRecordDB.external_id],
            set_={
                "email": insert_stmt.excluded.email,
                "display_name": insert_stmt.excluded.display_name,
                "avatar_ref": insert_stmt.excluded.avatar_ref,
                "role": insert_stmt.excluded.role,
                "updated_at": insert_stmt.excluded.updated_at,
            },
        ).returning(IdentityRecordDB.id)

        try:
            result = await self.db.execute(stmt)
            record_id = result.scalar_one()
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            if not is_email_conflict(e):
                raise
            return await self._rebind(notification, email)

        outcome = SyncOutcome.CREATED if record_id == new_id else SyncOutcome.UPDATED
        return SyncResult(outcome=outcome, external_id=notification.external_id, internal_id=record_id)

    async def _rebind(self, notification: ChangeNotification, email: str) -> SyncResult:
        """
        Point the email-matched record at the new external id.

        The only path that changes external_id on an existing record.
        """
        existing = await self.get_by_email(email)
        if existing is None:
            # The conflicting row was deleted between statements
            raise TransientStoreFailure(
                "Email-matched record disappeared during rebind",
                external_id=notification.external_id,
            )

        holder = await self.get_by_external_id(notification.external_id)
        if holder is not None and holder.id != existing.id:
            raise IdentityConflictError(
                "External id and email belong to different identity records",
                external_id=notification.external_id,
                email_record_id=str(existing.id),
                external_record_id=str(holder.id),
            )

        previous_external_id = existing.external_id
        await self.db.execute(
            update(IdentityRecordDB)
            .where(IdentityRecordDB.id == existing.id)
            .values(external_id=notification.external_id, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(
            f"Rebound identity record {existing.id} to new external id",
            extra={"previous_external_id": previous_external_id, "new_external_id": notification.external_id},
        )
        return SyncResult(
            outcome=SyncOutcome.REBOUND,
            external_id=notification.external_id,
            internal_id=existing.id,
        )

    # ==================== UPDATE ====================

    async def _update(self, notification: ChangeNotification) -> SyncResult:
        email = notification.primary_email
        role = derive_role(notification.trusted, notification.untrusted)

        stmt = (
            update(IdentityRecordDB)
            .where(IdentityRecordDB.external_id == notification.external_id)
            .values(
                email=email,
                display_name=notification.display_name,
                avatar_ref=notification.avatar_ref,
                role=role.value,
                updated_at=self.clock(),
            )
            .returning(IdentityRecordDB.id)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.db.execute(stmt)
            record_id = result.scalar_one_or_none()
        except IntegrityError as e:
            await self.db.rollback()
            if not is_email_conflict(e):
                raise
            existing = await self.get_by_email(email)
            raise IdentityConflictError(
                "Updated email already belongs to another identity record",
                external_id=notification.external_id,
                email_record_id=str(existing.id) if existing else None,
            )

        if record_id is None:
            await self.db.rollback()
            logger.info(
                "Update for unknown identity; treating as missed creation",
                extra={"external_id": notification.external_id},
            )
            return await self._create(notification)

        await self.db.commit()
        return SyncResult(outcome=SyncOutcome.UPDATED, external_id=notification.external_id, internal_id=record_id)

    # ==================== DELETE ====================

    async def _delete(self, notification: ChangeNotification) -> SyncResult:
        result = await self.db.execute(
            delete(IdentityRecordDB)
            .where(IdentityRecordDB.external_id == notification.external_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if not result.rowcount:
            return SyncResult(outcome=SyncOutcome.ALREADY_ABSENT, external_id=notification.external_id)
        return SyncResult(outcome=SyncOutcome.DELETED, external_id=notification.external_id)
