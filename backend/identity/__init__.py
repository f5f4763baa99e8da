"""
Identity Sync Module

Keeps the internal identity records consistent with the external
identity provider.

Features:
- Signed change notification verification
- Idempotent create/update/delete reconciliation with email rebind
- Signup intent to access role mapping
- Post-authentication redirect resolution
"""

from .models import IdentityRecordDB
from .roles import AccessRole, SignupIntent, intent_to_role, role_to_intent
from .redirects import RedirectContext, RedirectResolver, resolve_redirect
from .service import IdentityService, SyncOutcome, SyncResult
from .dispatcher import EventDispatcher

__all__ = [
    'IdentityRecordDB',
    'AccessRole',
    'SignupIntent',
    'intent_to_role',
    'role_to_intent',
    'RedirectContext',
    'RedirectResolver',
    'resolve_redirect',
    'IdentityService',
    'SyncOutcome',
    'SyncResult',
    'EventDispatcher',
]
