"""
Authentication Middleware and Dependencies

Provides:
- decode_session_token: Validate a provider session token (JWT)
- get_current_identity: Resolve the caller to an authenticated or anonymous identity
- require_identity: Same, but 401 for anonymous callers

The role on a request is re-derived on every call and is never written
back; the identity records only change through the identity service.
"""

from typing import Any, Dict, Literal, Optional, Union
import logging

from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database import get_db
from identity.errors import StoreFailure
from identity.models import IdentityRecordDB
from identity.notifications import TrustedMetadata, UntrustedMetadata, normalize_email
from identity.roles import AccessRole
from identity.service import IdentityService, derive_role
from logging_config import set_request_context

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)

# Session token claim carrying the user-set metadata bag
UNSAFE_METADATA_CLAIM = "unsafe_metadata"


# ==================== MODELS ====================

class SessionClaims(BaseModel):
    """The parts of a validated session token this service reads."""
    external_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    unsafe_metadata: Optional[Dict[str, Any]] = None


class AuthenticatedIdentity(BaseModel):
    """Caller with a valid session token."""
    kind: Literal["authenticated"] = "authenticated"
    external_id: str
    role: AccessRole
    internal_id: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_ref: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return True


class AnonymousIdentity(BaseModel):
    """Caller without a (valid) session token."""
    kind: Literal["anonymous"] = "anonymous"

    @property
    def is_authenticated(self) -> bool:
        return False


CurrentIdentity = Union[AuthenticatedIdentity, AnonymousIdentity]


# ==================== TOKEN VALIDATION ====================

def decode_session_token(token: str, settings=None) -> Optional[SessionClaims]:
    """
    Decode and validate a provider session token.

    Returns None when the token is missing a subject, is expired, has a
    bad signature, or names the wrong issuer or audience.
    """
    settings = settings or get_settings()
    if not settings.IDP_JWT_KEY:
        logger.warning("Session token received but IDP_JWT_KEY is not configured")
        return None

    try:
        payload = jwt.decode(
            token,
            settings.IDP_JWT_KEY,
            algorithms=settings.jwt_algorithms,
            audience=settings.IDP_JWT_AUDIENCE or None,
            issuer=settings.IDP_JWT_ISSUER or None,
            options={"verify_aud": bool(settings.IDP_JWT_AUDIENCE)},
        )
    except JWTError as e:
        logger.info(f"Rejected session token: {e.__class__.__name__}")
        return None

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        return None

    metadata = payload.get(settings.IDP_METADATA_CLAIM)
    unsafe_metadata = payload.get(UNSAFE_METADATA_CLAIM)
    return SessionClaims(
        external_id=subject,
        email=payload.get("email") if isinstance(payload.get("email"), str) else None,
        name=payload.get("name") if isinstance(payload.get("name"), str) else None,
        picture=payload.get("picture") if isinstance(payload.get("picture"), str) else None,
        metadata=metadata if isinstance(metadata, dict) else None,
        unsafe_metadata=unsafe_metadata if isinstance(unsafe_metadata, dict) else None,
    )


def role_from_claims(claims: SessionClaims) -> Optional[AccessRole]:
    """Role carried by the token's metadata, or None when it carries neither tier."""
    trusted = TrustedMetadata.from_bag(claims.metadata)
    untrusted = UntrustedMetadata.from_bag(claims.unsafe_metadata)
    if trusted.role is None and untrusted.signup_intent is None:
        return None
    return derive_role(trusted, untrusted)


def build_identity(claims: SessionClaims, record: Optional[IdentityRecordDB]) -> AuthenticatedIdentity:
    """
    Combine token claims with the stored record.

    Role precedence: token metadata, then the stored record, then STANDARD.
    Profile fields prefer the stored record.
    """
    role = role_from_claims(claims)
    if role is None:
        role = record.access_role if record is not None else AccessRole.STANDARD

    if record is not None:
        return AuthenticatedIdentity(
            external_id=claims.external_id,
            role=role,
            internal_id=str(record.id),
            email=record.email,
            display_name=record.display_name,
            avatar_ref=record.avatar_ref,
        )

    return AuthenticatedIdentity(
        external_id=claims.external_id,
        role=role,
        email=normalize_email(claims.email) if claims.email else None,
        display_name=claims.name,
        avatar_ref=claims.picture,
    )


# ==================== DEPENDENCIES ====================

async def get_session_claims(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Optional[SessionClaims]:
    """Validated session claims, or None if no token or invalid token."""
    if not credentials:
        return None
    return decode_session_token(credentials.credentials)


async def get_current_identity(
    request: Request,
    claims: Optional[SessionClaims] = Depends(get_session_claims),
    db: AsyncSession = Depends(get_db),
) -> CurrentIdentity:
    """
    Resolve the caller for this request.

    Never raises for a bad or missing token; the caller is anonymous then.
    """
    if claims is None:
        identity: CurrentIdentity = AnonymousIdentity()
        request.state.identity = identity
        return identity

    set_request_context(external_id=claims.external_id)

    record = None
    try:
        service = IdentityService(db, timeout_seconds=get_settings().STORE_TIMEOUT_SECONDS)
        record = await service.find(claims.external_id)
    except StoreFailure as e:
        # Token claims alone still identify the caller; the session was rolled back
        logger.warning(f"Identity record lookup failed: {e.message}")

    identity = build_identity(claims, record)
    request.state.identity = identity
    return identity


async def require_identity(
    identity: CurrentIdentity = Depends(get_current_identity),
) -> AuthenticatedIdentity:
    """
    Same as get_current_identity.
    Raises 401 if the caller is anonymous.
    """
    if not identity.is_authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"}
        )
    return identity
