"""
Identity - Event Dispatcher

Routes a verified delivery to the matching identity service operation.
Unknown notification types are accepted and dropped so that new provider
event types never trigger redelivery.
"""

import logging
from typing import Union

from .notifications import Envelope, NotificationType, parse_envelope, parse_notification
from .service import IdentityService, SyncOutcome, SyncResult

logger = logging.getLogger(__name__)


class EventDispatcher:
    """verified -> classified -> resolved, once per delivery attempt."""

    def __init__(self, service: IdentityService):
        self.service = service
        self._handlers = {
            NotificationType.CREATED: service.apply_created,
            NotificationType.UPDATED: service.apply_updated,
            NotificationType.DELETED: service.apply_deleted,
        }

    async def dispatch(self, verified: Union[bytes, Envelope]) -> SyncResult:
        """
        Resolve one verified delivery.

        Args:
            verified: Raw body that already passed signature verification,
                or an envelope parsed from one.

        Returns:
            SyncResult describing what happened to the store.

        Raises:
            MalformedNotification: body or user payload has the wrong shape
            TransientStoreFailure / PermanentStoreFailure: from the service
        """
        envelope = verified if isinstance(verified, Envelope) else parse_envelope(verified)
        notification_type = envelope.notification_type

        handler = self._handlers.get(notification_type)
        if handler is None:
            logger.info(f"Ignoring identity notification of type {envelope.type!r}")
            return SyncResult(outcome=SyncOutcome.IGNORED)

        notification = parse_notification(envelope)
        result = await handler(notification)

        logger.info(
            f"Resolved {notification_type.value} notification: {result.outcome.value}",
            extra={"external_id": notification.external_id},
        )
        return result
