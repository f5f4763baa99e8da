"""
Identity - Error Taxonomy

Store-specific errors are translated into these classes before they leave
the identity service, so callers only ever decide on `retryable`.
"""

from typing import Optional


class IdentitySyncError(Exception):
    """Base class for identity synchronization failures."""

    retryable = False

    def __init__(self, message: str, external_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.external_id = external_id


class SignatureInvalid(IdentitySyncError):
    """Delivery could not be proven to come from the identity provider."""


class MalformedNotification(IdentitySyncError):
    """Verified delivery whose body does not have the expected shape."""


class StoreFailure(IdentitySyncError):
    """A store operation failed after classification."""


class TransientStoreFailure(StoreFailure):
    """Safe to redeliver; every mutation path is idempotent."""

    retryable = True


class PermanentStoreFailure(StoreFailure):
    """Will not succeed on redelivery without a code or schema fix."""


class IdentityConflictError(PermanentStoreFailure):
    """
    External id and email point at two different existing records.

    Raised instead of merging; the pair needs manual review.
    """

    def __init__(
        self,
        message: str,
        external_id: Optional[str] = None,
        email_record_id: Optional[str] = None,
        external_record_id: Optional[str] = None,
    ):
        super().__init__(message, external_id=external_id)
        self.email_record_id = email_record_id
        self.external_record_id = external_record_id
