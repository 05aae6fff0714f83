"""Tests for bearer credential acquisition, classification and reuse."""

import asyncio
import logging

import pytest
from azure.core.exceptions import ClientAuthenticationError

from external_functions import authentication
from external_functions.authentication import (Credential, CredentialProvider,
                                               build_client_secret_credential,
                                               classify_auth_failure,
                                               get_credential_provider)
from external_functions.config import Settings
from external_functions.errors import AuthError, AuthErrorKind, ConfigurationError
from tests.helpers import TOKEN_LIFETIME_SECONDS, FakeTokenCredential, factory_for

# ============================================================================
# Classification
# ============================================================================


@pytest.mark.parametrize(
    "message, kind",
    [
        (
            "AADSTS70011: The provided request must include a 'scope' input parameter.",
            AuthErrorKind.INVALID_SCOPE,
        ),
        ("AADSTS500011: The resource principal was not found.", AuthErrorKind.INVALID_SCOPE),
        (
            "AADSTS65001: The user or administrator has not consented.",
            AuthErrorKind.INSUFFICIENT_PERMISSIONS,
        ),
        ("AADSTS7000112: Application is disabled.", AuthErrorKind.INSUFFICIENT_PERMISSIONS),
        ("AADSTS90002: Tenant not found.", AuthErrorKind.UNKNOWN),
        ("AADSTS700111: Unrelated failure.", AuthErrorKind.UNKNOWN),
        ("AADSTS5011: Unrelated failure.", AuthErrorKind.UNKNOWN),
        (
            "AADSTS501051: Application is not assigned to a role.",
            AuthErrorKind.INSUFFICIENT_PERMISSIONS,
        ),
        (
            "Trace: AADSTS90002 then AADSTS65001: consent required.",
            AuthErrorKind.INSUFFICIENT_PERMISSIONS,
        ),
        ("Connection reset by peer", AuthErrorKind.UNKNOWN),
    ],
)
def test_classify_auth_failure(message, kind):
    assert classify_auth_failure(message) is kind


def test_only_unknown_auth_errors_are_retryable():
    assert AuthError(AuthErrorKind.UNKNOWN, "x").retryable
    assert not AuthError(AuthErrorKind.INVALID_SCOPE, "x").retryable
    assert not AuthError(AuthErrorKind.INSUFFICIENT_PERMISSIONS, "x").retryable


# ============================================================================
# Credential
# ============================================================================


def test_credential_attach_copies_headers():
    credential = Credential(token="abc", expires_on=100)
    headers = {"Accept": "application/json"}

    attached = credential.attach(headers)

    assert attached == {"Accept": "application/json", "Authorization": "Bearer abc"}
    assert headers == {"Accept": "application/json"}


def test_credential_repr_hides_token():
    assert "abc" not in repr(Credential(token="abc", expires_on=100))


def test_credential_expiry_window():
    credential = Credential(token="abc", expires_on=1000)

    assert not credential.expires_within(300, now=600)
    assert credential.expires_within(300, now=700)


# ============================================================================
# CredentialProvider
# ============================================================================


@pytest.mark.asyncio
async def test_acquire_requests_default_graph_scope(clock):
    fake = FakeTokenCredential(clock)
    provider = CredentialProvider(Settings(), credential_factory=factory_for(fake), clock=clock)

    credential = await provider.acquire()

    assert credential.authorization_header() == "Bearer token-1"
    assert credential.expires_on == int(clock() + TOKEN_LIFETIME_SECONDS)
    assert fake.requested_scopes == [("https://graph.microsoft.com/.default",)]


@pytest.mark.asyncio
async def test_credential_is_reused_within_validity_window(settings, clock):
    fake = FakeTokenCredential(clock)
    provider = CredentialProvider(settings, credential_factory=factory_for(fake), clock=clock)

    first = await provider.acquire()
    clock.advance(600)
    second = await provider.acquire()

    assert first is second
    assert fake.calls == 1
    assert provider.exchange_count == 1


@pytest.mark.asyncio
async def test_expired_credential_triggers_exactly_one_fresh_exchange(settings, clock):
    fake = FakeTokenCredential(clock)
    provider = CredentialProvider(settings, credential_factory=factory_for(fake), clock=clock)

    await provider.acquire()
    clock.advance(TOKEN_LIFETIME_SECONDS)
    refreshed = await provider.acquire()
    again = await provider.acquire()

    assert refreshed.token == "token-2"
    assert again is refreshed
    assert fake.calls == 2


@pytest.mark.asyncio
async def test_concurrent_acquires_join_one_exchange(settings, clock):
    fake = FakeTokenCredential(clock, delay=0.02)
    provider = CredentialProvider(settings, credential_factory=factory_for(fake), clock=clock)

    credentials = await asyncio.gather(*(provider.acquire() for _ in range(5)))

    assert fake.calls == 1
    assert all(credential is credentials[0] for credential in credentials)


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_exchange(settings, clock):
    fake = FakeTokenCredential(clock, delay=0.02)
    provider = CredentialProvider(settings, credential_factory=factory_for(fake), clock=clock)

    cancelled = asyncio.ensure_future(provider.acquire())
    survivor = asyncio.ensure_future(provider.acquire())
    await asyncio.sleep(0)
    cancelled.cancel()

    credential = await survivor

    assert credential.token == "token-1"
    assert fake.calls == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "message, kind",
    [
        ("AADSTS65001: consent required", AuthErrorKind.INSUFFICIENT_PERMISSIONS),
        ("AADSTS70011: invalid scope", AuthErrorKind.INVALID_SCOPE),
        ("AADSTS50020: unexpected", AuthErrorKind.UNKNOWN),
    ],
)
async def test_token_failures_are_classified_logged_and_raised(
    settings, clock, caplog, message, kind
):
    fake = FakeTokenCredential(clock, error=ClientAuthenticationError(message=message))
    provider = CredentialProvider(settings, credential_factory=factory_for(fake), clock=clock)

    with caplog.at_level(logging.ERROR):
        with pytest.raises(AuthError) as exc_info:
            await provider.acquire()

    assert exc_info.value.kind is kind
    assert message in str(exc_info.value)
    assert any(
        kind.value in record.getMessage() and record.exc_info for record in caplog.records
    )


@pytest.mark.asyncio
async def test_network_failure_during_exchange_is_unknown(settings, clock):
    fake = FakeTokenCredential(clock, error=ConnectionError("connection refused"))
    provider = CredentialProvider(settings, credential_factory=factory_for(fake), clock=clock)

    with pytest.raises(AuthError) as exc_info:
        await provider.acquire()

    assert exc_info.value.kind is AuthErrorKind.UNKNOWN


@pytest.mark.asyncio
async def test_failed_exchange_is_not_cached(settings, clock):
    fake = FakeTokenCredential(clock, error=ClientAuthenticationError(message="AADSTS90033"))
    provider = CredentialProvider(settings, credential_factory=factory_for(fake), clock=clock)

    with pytest.raises(AuthError):
        await provider.acquire()
    fake.error = None
    credential = await provider.acquire()

    assert credential.token == "token-2"
    assert provider.exchange_count == 1


@pytest.mark.asyncio
async def test_builder_failure_leaves_no_client_behind(settings, clock):
    attempts = []
    fake = FakeTokenCredential(clock)

    async def flaky_factory(_settings):
        attempts.append(_settings)
        if len(attempts) == 1:
            raise ValueError("invalid tenant id")
        return fake

    provider = CredentialProvider(settings, credential_factory=flaky_factory, clock=clock)

    with pytest.raises(AuthError) as exc_info:
        await provider.acquire()
    assert exc_info.value.kind is AuthErrorKind.UNKNOWN
    assert "invalid tenant id" in str(exc_info.value)

    credential = await provider.acquire()

    assert len(attempts) == 2
    assert credential.token == "token-1"


@pytest.mark.asyncio
async def test_missing_registration_settings_raise_configuration_error(clock):
    provider = CredentialProvider(Settings(), clock=clock)

    with pytest.raises(ConfigurationError) as exc_info:
        await provider.acquire()

    assert "Tenant" in str(exc_info.value)
    assert "ClientId" in str(exc_info.value)


@pytest.mark.asyncio
async def test_close_discards_cached_credential(settings, clock):
    fake = FakeTokenCredential(clock)
    factory = factory_for(fake)
    provider = CredentialProvider(settings, credential_factory=factory, clock=clock)

    await provider.acquire()
    await provider.close()
    await provider.acquire()

    assert fake.closed
    assert fake.calls == 2
    assert len(factory.builds) == 2


# ============================================================================
# Credential construction
# ============================================================================


@pytest.mark.asyncio
async def test_build_client_secret_credential_passes_registration(settings, monkeypatch):
    captured = {}

    def fake_client_secret_credential(tenant_id, client_id, client_secret, **kwargs):
        captured.update(
            tenant_id=tenant_id, client_id=client_id, client_secret=client_secret, **kwargs
        )
        return "credential"

    monkeypatch.setattr(
        authentication, "ClientSecretCredential", fake_client_secret_credential
    )

    assert await build_client_secret_credential(settings) == "credential"
    assert captured == {
        "tenant_id": "contoso-tenant-id",
        "client_id": "client-id",
        "client_secret": "client-secret",
        "authority": "login.microsoftonline.com",
    }


@pytest.mark.asyncio
async def test_build_client_secret_credential_uses_authority_tenant(monkeypatch):
    captured = {}

    def fake_client_secret_credential(tenant_id, client_id, client_secret, **kwargs):
        captured.update(tenant_id=tenant_id, **kwargs)
        return "credential"

    monkeypatch.setattr(
        authentication, "ClientSecretCredential", fake_client_secret_credential
    )
    settings = Settings.from_env(
        {
            "Authority": "https://login.microsoftonline.us/contoso",
            "Tenant": "fabrikam",
            "ClientId": "c",
            "ClientSecret": "s",
        }
    )

    await build_client_secret_credential(settings)

    assert captured == {"tenant_id": "contoso", "authority": "login.microsoftonline.us"}


@pytest.mark.asyncio
async def test_authority_with_tenant_makes_tenant_setting_optional(monkeypatch):
    monkeypatch.setattr(
        authentication,
        "ClientSecretCredential",
        lambda tenant_id, client_id, client_secret, **kwargs: tenant_id,
    )
    settings = Settings(
        authority_override="https://login.microsoftonline.us/contoso/",
        client_id="c",
        client_secret="s",
    )

    assert await build_client_secret_credential(settings) == "contoso"


@pytest.mark.asyncio
async def test_build_client_secret_credential_reads_secret_from_key_vault(monkeypatch):
    requested = []

    async def fake_get_secret(key_vault_name, secretname):
        requested.append((key_vault_name, secretname))
        return "vault-secret"

    monkeypatch.setattr(authentication, "get_secret", fake_get_secret)
    monkeypatch.setattr(
        authentication,
        "ClientSecretCredential",
        lambda tenant_id, client_id, client_secret, **kwargs: client_secret,
    )
    settings = Settings(
        tenant="t", client_id="c", key_vault_name="my-vault", client_secret_name="app-secret"
    )

    assert await build_client_secret_credential(settings) == "vault-secret"
    assert requested == [("my-vault", "app-secret")]


@pytest.mark.asyncio
async def test_build_client_secret_credential_requires_a_secret_source():
    with pytest.raises(ConfigurationError) as exc_info:
        await build_client_secret_credential(Settings(tenant="t", client_id="c"))

    assert "ClientSecret" in str(exc_info.value)


def test_credential_provider_is_shared_per_settings(settings):
    assert get_credential_provider(settings) is get_credential_provider(settings)
    assert get_credential_provider(settings) is not get_credential_provider(
        Settings(tenant="other")
    )
