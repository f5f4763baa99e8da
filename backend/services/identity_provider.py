"""
Identity Provider API Client

Reads a single user from the identity provider's backend API. Used to
create an identity record lazily when an authenticated request arrives
before (or without) the matching "created" notification.
"""

import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from config import get_settings
from identity.notifications import ProviderUserData

logger = logging.getLogger(__name__)


class IdentityProviderClient:
    """Minimal read-only client for the provider backend API."""

    def __init__(
        self,
        base_url: str,
        secret_key: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.secret_key)

    @property
    def headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Accept": "application/json",
        }

    async def get_user(self, external_id: str) -> Optional[ProviderUserData]:
        """
        Fetch one user by provider id.

        Returns None when the client is not configured, the user does not
        exist, or the provider cannot be reached.
        """
        if not self.configured:
            return None

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}/users/{external_id}",
                    headers=self.headers,
                )
        except httpx.HTTPError as e:
            logger.warning(f"Identity provider unreachable: {e.__class__.__name__}")
            return None

        if response.status_code == 404:
            logger.info("Identity provider has no such user", extra={"external_id": external_id})
            return None
        if response.status_code != 200:
            logger.error(f"Identity provider API error: {response.status_code}")
            return None

        try:
            return ProviderUserData.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"Unexpected identity provider user payload: {e}")
            return None


def get_identity_provider_client() -> IdentityProviderClient:
    settings = get_settings()
    return IdentityProviderClient(
        base_url=settings.IDP_API_URL,
        secret_key=settings.IDP_SECRET_KEY,
        timeout=settings.IDP_API_TIMEOUT_SECONDS,
    )
