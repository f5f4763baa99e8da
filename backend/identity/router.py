"""
Identity - API Router

Provides REST API endpoints for identity synchronization:
- POST /api/identity/webhooks/provider - Change notifications from the identity provider
- GET /api/identity/me - Current identity
- GET /api/identity/redirect - Post-authentication destination
- POST /api/identity/ensure - Create the caller's record if it was never synced
- GET /api/identity/signup-intents - Signup vocabulary and the role each maps to
- GET /api/identity/status - Module status

Permissions:
- webhooks: provider signature only (no session token)
- me, redirect, signup-intents, status: public (anonymous allowed)
- ensure: authenticated
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database import get_db
from middleware.auth import (
    AuthenticatedIdentity,
    CurrentIdentity,
    get_current_identity,
    require_identity,
)
from sentry_integration import capture_exception
from services.identity_provider import IdentityProviderClient, get_identity_provider_client

from .dispatcher import EventDispatcher
from .errors import (
    SignatureInvalid,
    MalformedNotification,
    TransientStoreFailure,
    PermanentStoreFailure,
    IdentityConflictError,
)
from .redirects import RedirectContext, RedirectResolver
from .roles import AccessRole, SignupIntent, intent_to_role, is_self_service
from .service import IdentityService
from .signature import (
    SignatureVerifier,
    HEADER_DELIVERY_ID,
    HEADER_DELIVERY_TIMESTAMP,
    HEADER_DELIVERY_SIGNATURE,
)

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/identity", tags=["Identity"])


# ==================== DEPENDENCIES ====================

def get_signature_verifier() -> SignatureVerifier:
    settings = get_settings()
    return SignatureVerifier(
        settings.IDP_WEBHOOK_SECRET,
        tolerance_seconds=settings.IDP_WEBHOOK_TOLERANCE_SECONDS,
    )


def get_identity_service(db: AsyncSession = Depends(get_db)) -> IdentityService:
    return IdentityService(db, timeout_seconds=get_settings().STORE_TIMEOUT_SECONDS)


def get_event_dispatcher(
    service: IdentityService = Depends(get_identity_service),
) -> EventDispatcher:
    return EventDispatcher(service)


def get_redirect_resolver() -> RedirectResolver:
    return RedirectResolver.from_settings(get_settings())


def get_provider_client() -> IdentityProviderClient:
    return get_identity_provider_client()


# ==================== ENDPOINTS ====================

@router.get("/status")
async def get_identity_status():
    """
    Get identity module status.
    No authentication required.
    """
    settings = get_settings()
    return {
        "status": "ok",
        "module": "identity",
        "webhook_secret_configured": bool(settings.IDP_WEBHOOK_SECRET),
        "session_tokens_configured": bool(settings.IDP_JWT_KEY),
        "provider_api_configured": bool(settings.IDP_API_URL and settings.IDP_SECRET_KEY),
        "roles": [r.value for r in AccessRole],
    }


@router.post("/webhooks/provider")
async def receive_provider_notification(
    request: Request,
    verifier: SignatureVerifier = Depends(get_signature_verifier),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
):
    """
    Receive a change notification from the identity provider.

    The raw body is verified before anything is parsed. A 2xx is returned
    only once the notification is fully resolved; any other status makes
    the provider redeliver.

    Status codes:
    - 200: resolved (including ignored types)
    - 400: bad signature or malformed body
    - 503: transient store failure, redelivery expected to succeed
    - 500: permanent store failure
    """
    body = await request.body()

    try:
        verifier.verify(
            body,
            request.headers.get(HEADER_DELIVERY_ID),
            request.headers.get(HEADER_DELIVERY_TIMESTAMP),
            request.headers.get(HEADER_DELIVERY_SIGNATURE),
        )
    except SignatureInvalid as e:
        logger.warning(f"Rejected identity notification: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature"
        )

    try:
        result = await dispatcher.dispatch(body)
    except MalformedNotification as e:
        logger.warning(
            f"Malformed identity notification: {e.message}",
            extra={"external_id": e.external_id},
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.message
        )
    except TransientStoreFailure as e:
        logger.warning(
            f"Transient failure resolving identity notification: {e.message}",
            extra={"external_id": e.external_id},
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Identity store temporarily unavailable"
        )
    except IdentityConflictError as e:
        logger.error(
            f"Unresolvable identity conflict: {e.message}",
            extra={
                "external_id": e.external_id,
                "email_record_id": e.email_record_id,
                "external_record_id": e.external_record_id,
            },
        )
        capture_exception(
            e,
            external_id=e.external_id,
            email_record_id=e.email_record_id,
            external_record_id=e.external_record_id,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Identity conflict requires manual review"
        )
    except PermanentStoreFailure as e:
        logger.error(
            f"Permanent failure resolving identity notification: {e.message}",
            extra={"external_id": e.external_id},
        )
        capture_exception(e, external_id=e.external_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Identity store rejected the notification"
        )

    return {"success": True, **result.to_dict()}


@router.get("/me")
async def get_me(identity: CurrentIdentity = Depends(get_current_identity)):
    """
    Get the current identity.
    Anonymous callers receive {"kind": "anonymous"}.
    """
    return identity.model_dump()


@router.get("/redirect")
async def get_redirect(
    continue_path: Optional[str] = Query(None, description="Explicit continue path"),
    stored_continuation: Optional[str] = Query(None, description="Continuation stored by the client before sign-in"),
    current_path: Optional[str] = Query(None, description="Path the client is currently on"),
    identity: CurrentIdentity = Depends(get_current_identity),
    resolver: RedirectResolver = Depends(get_redirect_resolver),
):
    """
    Resolve where the current identity should land after authentication.
    Anonymous callers are routed as the standard role.
    """
    role = identity.role if isinstance(identity, AuthenticatedIdentity) else AccessRole.STANDARD
    context = RedirectContext(stored_continuation=stored_continuation, current_path=current_path)
    return {
        "role": role.value,
        "path": resolver.resolve(role, continue_path, context),
    }


@router.post("/ensure")
async def ensure_identity_record(
    identity: AuthenticatedIdentity = Depends(require_identity),
    service: IdentityService = Depends(get_identity_service),
    provider: IdentityProviderClient = Depends(get_provider_client),
):
    """
    Make sure the caller has an identity record.

    Creates it from the provider's backend API when the "created"
    notification was lost or is late. Requires authentication.
    """
    try:
        record = await service.ensure(identity.external_id, provider)
    except TransientStoreFailure as e:
        logger.warning(f"Transient failure ensuring identity record: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Identity store temporarily unavailable"
        )
    except PermanentStoreFailure as e:
        logger.error(f"Permanent failure ensuring identity record: {e.message}")
        capture_exception(e, external_id=identity.external_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Identity store rejected the record"
        )

    if record is None:
        if not provider.configured:
            # Nothing to heal from; the request context keeps using token claims
            return {"success": False, "record": None, "identity": identity.model_dump()}
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Identity provider has no usable user for this session"
        )

    return {"success": True, "record": record.to_dict()}


@router.get("/signup-intents")
async def list_signup_intents():
    """
    List signup intents and the role each one maps to.
    Intents that map to a role end users cannot pick for themselves are
    flagged so signup forms can hide them.
    """
    intents = []
    for intent in SignupIntent:
        role = intent_to_role(intent)
        intents.append({
            "intent": intent.value,
            "role": role.value,
            "self_service": is_self_service(role),
        })
    return {"intents": intents}
