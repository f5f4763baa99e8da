"""
Identity - Role Mapper

Translates between the signup vocabulary shown to end users and the
internal access roles stored on identity records. Nothing outside this
module compares raw intent or role strings.
"""

from enum import Enum
from typing import Any, Optional


class AccessRole(str, Enum):
    """Closed set of roles an identity record may hold."""
    STANDARD = "standard"
    VENDOR = "vendor"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Any) -> "AccessRole":
        """Coerce any value to a role; unrecognized input becomes STANDARD."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in _ROLE_ALIASES:
                return _ROLE_ALIASES[normalized]
            for role in cls:
                if role.value == normalized:
                    return role
        return cls.STANDARD

    @classmethod
    def recognizes(cls, value: Any) -> bool:
        if isinstance(value, cls):
            return True
        if not isinstance(value, str):
            return False
        normalized = value.strip().lower()
        return normalized in _ROLE_ALIASES or normalized in {r.value for r in cls}


class SignupIntent(str, Enum):
    """What a person said they were signing up as."""
    COUPLE = "couple"
    VENDOR = "vendor"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Any) -> Optional["SignupIntent"]:
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            for intent in cls:
                if intent.value == normalized:
                    return intent
        return None


# Stored records from before the role rename still say "user"
_ROLE_ALIASES = {"user": AccessRole.STANDARD}

_INTENT_TO_ROLE = {
    SignupIntent.COUPLE: AccessRole.STANDARD,
    SignupIntent.VENDOR: AccessRole.VENDOR,
    SignupIntent.ADMIN: AccessRole.ADMIN,
}

_ROLE_TO_INTENT = {role: intent for intent, role in _INTENT_TO_ROLE.items()}

# Roles an end user may pick for themselves at signup
SELF_SERVICE_ROLES = frozenset({AccessRole.STANDARD, AccessRole.VENDOR})


def intent_to_role(intent: Any) -> AccessRole:
    """Map a signup intent to a role. Anything unrecognized maps to STANDARD."""
    parsed = SignupIntent.parse(intent)
    if parsed is None:
        return AccessRole.STANDARD
    return _INTENT_TO_ROLE[parsed]


def role_to_intent(role: AccessRole) -> SignupIntent:
    """Inverse of intent_to_role over the closed role set."""
    return _ROLE_TO_INTENT[AccessRole.parse(role)]


def is_self_service(role: AccessRole) -> bool:
    return role in SELF_SERVICE_ROLES
