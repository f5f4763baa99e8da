"""
Unit Tests for Configuration

Tests:
- Derived settings (algorithms, sub-application roots, CORS origins)
- Production validation
- Provider client construction from settings

Run with: pytest tests/test_config.py -v
"""

from unittest.mock import patch

import httpx
import pytest

from config import Settings
from services.identity_provider import IdentityProviderClient, get_identity_provider_client


def make_settings(**values):
    return Settings(_env_file=None, **values)


class TestDerivedSettings:
    """Test computed properties."""

    def test_jwt_algorithms(self):
        """Test the algorithm list is split and trimmed."""
        settings = make_settings(IDP_JWT_ALGORITHMS="RS256, ES256,")
        assert settings.jwt_algorithms == ["RS256", "ES256"]

    def test_sub_application_roots(self):
        """Test roots are split and trailing slashes dropped."""
        settings = make_settings(SUB_APPLICATION_ROOTS="/careers/, /shop")
        assert settings.sub_application_roots == ["/careers", "/shop"]

    def test_dev_cors_origins(self):
        """Test localhost origins are only added outside production."""
        dev = make_settings(ENVIRONMENT="development", CORS_ORIGINS="https://app.example.com")
        prod = make_settings(
            ENVIRONMENT="production",
            CORS_ORIGINS="https://app.example.com",
            DATABASE_URL="postgresql+asyncpg://u:p@db.example.com/identity",
            IDP_WEBHOOK_SECRET="whsec_abc",
            IDP_JWT_KEY="key",
        )
        assert "http://localhost:3000" in dev.cors_origins_list
        assert prod.cors_origins_list == ["https://app.example.com"]

    def test_database_url_from_components(self):
        """Test the URL is built from POSTGRES_* when DATABASE_URL is empty."""
        settings = make_settings(POSTGRES_HOST="db", POSTGRES_USER="u", POSTGRES_PASSWORD="p", POSTGRES_DB="identity")
        assert settings.get_database_url() == "postgresql+asyncpg://u:p@db:5432/identity"

    def test_database_url_missing(self):
        """Test a missing database configuration raises."""
        with pytest.raises(ValueError):
            make_settings().get_database_url()


class TestProductionValidation:
    """Test production configuration checks."""

    def test_missing_secrets(self):
        """Test the webhook secret and token key are required in production."""
        errors = make_settings(
            ENVIRONMENT="production",
            DATABASE_URL="postgresql+asyncpg://u:p@db.example.com/identity",
        ).validate_production_config()

        assert "IDP_WEBHOOK_SECRET is required" in errors
        assert "IDP_JWT_KEY is required" in errors

    def test_wildcard_cors_rejected(self):
        """Test '*' origins are refused in production."""
        errors = make_settings(
            ENVIRONMENT="production",
            DATABASE_URL="postgresql+asyncpg://u:p@db.example.com/identity",
            IDP_WEBHOOK_SECRET="whsec_abc",
            IDP_JWT_KEY="key",
            CORS_ORIGINS="*",
        ).validate_production_config()
        assert errors == ["CORS_ORIGINS cannot be '*' in production"]

    def test_development_not_validated(self):
        """Test development settings never report production errors."""
        assert make_settings(ENVIRONMENT="development").validate_production_config() == []


class TestIdentityProviderClient:
    """Test the provider API client used for self-healing."""

    def client_with(self, handler):
        return IdentityProviderClient(
            base_url="https://api.idp.example.com/v1/",
            secret_key="sk_test",
            transport=httpx.MockTransport(handler),
        )

    @pytest.mark.asyncio
    async def test_get_user(self):
        """Test a user is fetched with the bearer secret."""
        def handler(request):
            assert request.url.path == "/v1/users/user_1"
            assert request.headers["Authorization"] == "Bearer sk_test"
            return httpx.Response(200, json={
                "id": "user_1",
                "email_addresses": [{"id": "e1", "email_address": "ada@example.com"}],
            })

        user = await self.client_with(handler).get_user("user_1")
        assert user.id == "user_1"

    @pytest.mark.asyncio
    async def test_unknown_user(self):
        """Test 404 maps to None."""
        user = await self.client_with(lambda request: httpx.Response(404)).get_user("user_1")
        assert user is None

    @pytest.mark.asyncio
    async def test_unreachable_provider(self):
        """Test transport errors map to None."""
        def handler(request):
            raise httpx.ConnectError("refused")

        assert await self.client_with(handler).get_user("user_1") is None

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        """Test no request is made without credentials."""
        client = IdentityProviderClient(base_url="", secret_key="")
        assert not client.configured
        assert await client.get_user("user_1") is None

    def test_built_from_settings(self):
        """Test the factory reads the provider settings."""
        settings = make_settings(IDP_API_URL="https://api.idp.example.com", IDP_SECRET_KEY="sk", IDP_API_TIMEOUT_SECONDS=2)
        with patch("services.identity_provider.get_settings", return_value=settings):
            client = get_identity_provider_client()

        assert client.configured
        assert client.timeout == 2
