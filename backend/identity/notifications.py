"""
Identity - Change Notifications

Parses verified provider payloads into typed notifications. The loosely
typed provider metadata bags are reduced here to two explicit records:
TrustedMetadata (backend-set) and UntrustedMetadata (user-set at signup).
Code past this module never reads the raw bags.
"""

import json
import logging
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import MalformedNotification
from .roles import AccessRole, SignupIntent

logger = logging.getLogger(__name__)

# Keys inside the provider metadata bags
TRUSTED_ROLE_KEY = "role"
# supabase_uuid is the key older provider migrations stamped
TRUSTED_INTERNAL_ID_KEYS = ("internal_id", "supabase_uuid")
UNTRUSTED_INTENT_KEY = "user_type"


class NotificationType(str, Enum):
    """Notification types the dispatcher acts on."""
    CREATED = "user.created"
    UPDATED = "user.updated"
    DELETED = "user.deleted"
    OTHER = "other"

    @classmethod
    def classify(cls, raw_type: Any) -> "NotificationType":
        for member in (cls.CREATED, cls.UPDATED, cls.DELETED):
            if raw_type == member.value:
                return member
        return cls.OTHER


# ==================== METADATA TIERS ====================

class TrustedMetadata(BaseModel):
    """Provider metadata only privileged backend actions can write."""
    model_config = ConfigDict(frozen=True)

    role: Optional[AccessRole] = None
    internal_id: Optional[uuid.UUID] = None

    @classmethod
    def from_bag(cls, bag: Optional[Dict[str, Any]]) -> "TrustedMetadata":
        bag = bag if isinstance(bag, dict) else {}

        raw_role = bag.get(TRUSTED_ROLE_KEY)
        role = None
        # Present but unrecognized still wins over the untrusted tier
        if raw_role not in (None, ""):
            role = AccessRole.parse(raw_role)
            if not AccessRole.recognizes(raw_role):
                logger.warning("Unrecognized trusted role value; using standard")

        internal_id = None
        raw_internal_id = next((bag[k] for k in TRUSTED_INTERNAL_ID_KEYS if bag.get(k)), None)
        if raw_internal_id:
            try:
                internal_id = uuid.UUID(str(raw_internal_id))
            except ValueError:
                logger.warning("Ignoring malformed trusted internal_id")

        return cls(role=role, internal_id=internal_id)


class UntrustedMetadata(BaseModel):
    """Provider metadata the end user can set at signup."""
    model_config = ConfigDict(frozen=True)

    signup_intent: Optional[SignupIntent] = None

    @classmethod
    def from_bag(cls, bag: Optional[Dict[str, Any]]) -> "UntrustedMetadata":
        bag = bag if isinstance(bag, dict) else {}
        return cls(signup_intent=SignupIntent.parse(bag.get(UNTRUSTED_INTENT_KEY)))


# ==================== PROVIDER PAYLOAD SHAPE ====================

class ProviderEmailAddress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    email_address: str


class ProviderUserData(BaseModel):
    """The `data` object of a user notification, also returned by the provider API."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    email_addresses: List[ProviderEmailAddress] = Field(default_factory=list)
    primary_email_address_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image_url: Optional[str] = None
    public_metadata: Dict[str, Any] = Field(default_factory=dict)
    unsafe_metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("email_addresses", mode="before")
    @classmethod
    def _none_as_empty_list(cls, v):
        return v or []

    @field_validator("public_metadata", "unsafe_metadata", mode="before")
    @classmethod
    def _none_as_empty_dict(cls, v):
        return v if isinstance(v, dict) else {}


class EmailCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str
    primary: bool = False


class ChangeNotification(BaseModel):
    """A verified, classified notification about one identity."""
    model_config = ConfigDict(frozen=True)

    type: NotificationType
    external_id: str
    email_candidates: List[EmailCandidate] = Field(default_factory=list)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_ref: Optional[str] = None
    trusted: TrustedMetadata = Field(default_factory=TrustedMetadata)
    untrusted: UntrustedMetadata = Field(default_factory=UntrustedMetadata)

    @property
    def primary_email(self) -> Optional[str]:
        """Primary candidate, else the first one, trimmed and lower-cased."""
        if not self.email_candidates:
            return None
        chosen = next((c for c in self.email_candidates if c.primary), self.email_candidates[0])
        return normalize_email(chosen.address)

    @property
    def display_name(self) -> Optional[str]:
        parts = [p.strip() for p in (self.first_name, self.last_name) if p and p.strip()]
        return " ".join(parts) if parts else None

    @classmethod
    def from_user_data(cls, notification_type: NotificationType, data: ProviderUserData) -> "ChangeNotification":
        candidates = [
            EmailCandidate(
                address=e.email_address,
                primary=e.id is not None and e.id == data.primary_email_address_id,
            )
            for e in data.email_addresses
            if e.email_address and e.email_address.strip()
        ]
        return cls(
            type=notification_type,
            external_id=data.id,
            email_candidates=candidates,
            first_name=data.first_name,
            last_name=data.last_name,
            avatar_ref=data.image_url or None,
            trusted=TrustedMetadata.from_bag(data.public_metadata),
            untrusted=UntrustedMetadata.from_bag(data.unsafe_metadata),
        )


def normalize_email(address: str) -> str:
    return address.strip().lower()


class Envelope(BaseModel):
    """Outer `{type, data}` wrapper of a delivery."""
    model_config = ConfigDict(extra="ignore")

    type: Any = None
    data: Any = None

    @property
    def notification_type(self) -> NotificationType:
        return NotificationType.classify(self.type)


def parse_envelope(body: bytes) -> Envelope:
    """Parse an already verified body. Raises MalformedNotification."""
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedNotification(f"Body is not valid JSON: {e}")

    if not isinstance(payload, dict):
        raise MalformedNotification("Body is not a JSON object")

    try:
        return Envelope.model_validate(payload)
    except ValidationError as e:
        raise MalformedNotification(f"Invalid notification envelope: {e.error_count()} error(s)")


def parse_notification(envelope: Envelope) -> ChangeNotification:
    """
    Build a ChangeNotification from a classified envelope.

    Only called for CREATED, UPDATED and DELETED; other types carry
    payloads of unrelated shapes.
    """
    notification_type = envelope.notification_type
    payload = envelope.data if isinstance(envelope.data, dict) else {}
    if notification_type == NotificationType.DELETED:
        # Deletion payloads carry little more than the id
        external_id = payload.get("id")
        if not isinstance(external_id, str) or not external_id:
            raise MalformedNotification("Deletion notification without an id")
        return ChangeNotification(type=notification_type, external_id=external_id)

    try:
        data = ProviderUserData.model_validate(payload)
    except ValidationError as e:
        raise MalformedNotification(
            f"Invalid user payload: {e.error_count()} error(s)",
            external_id=payload.get("id") if isinstance(payload.get("id"), str) else None,
        )

    notification = ChangeNotification.from_user_data(notification_type, data)
    if notification.primary_email is None:
        raise MalformedNotification("User notification without an email address", external_id=data.id)
    return notification
