"""
Bearer credential acquisition for protected downstream APIs.

Uses the OAuth2 client credentials grant through azure-identity. The
resulting token is cached for the lifetime of the worker process and
refreshed shortly before it expires. Concurrent refreshes join a single
in-flight token exchange.
"""

import asyncio
import dataclasses
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from azure.core.exceptions import ClientAuthenticationError
from azure.identity.aio import ClientSecretCredential, DefaultAzureCredential
from azure.keyvault.secrets.aio import SecretClient

from external_functions.config import Settings
from external_functions.errors import AuthError, AuthErrorKind, ConfigurationError

# ============================================================================
# CONSTANTS
# ============================================================================

# Refresh tokens this many seconds before they expire
DEFAULT_REFRESH_MARGIN_SECONDS = 300

# Entra ID (AADSTS) error codes grouped by how the failure can be resolved.
# Insufficient permissions need an administrator to grant consent.
INSUFFICIENT_PERMISSIONS_CODES = [
    "AADSTS65001",  # Consent not granted
    "AADSTS50105",  # Identity not assigned to the application
    "AADSTS7000112",  # Application disabled
    "AADSTS501051",  # Application not assigned to a role
]

# Invalid scopes need a configuration change. The scope has to be in the
# form "https://resourceurl/.default".
INVALID_SCOPE_CODES = [
    "AADSTS70011",  # Invalid scope
    "AADSTS1002012",  # Scope format not supported
    "AADSTS500011",  # Resource principal not found
]

AADSTS_CODE_PATTERN = re.compile(r"AADSTS\d+")


def classify_auth_failure(message: str) -> AuthErrorKind:
    """
    Classify a token endpoint failure by the AADSTS codes in its message.

    Codes are compared whole, so AADSTS501051 does not match AADSTS50105.

    Args:
        message: Error message returned by the identity library

    Returns:
        The matching AuthErrorKind, UNKNOWN when no known code is present
    """
    codes = set(AADSTS_CODE_PATTERN.findall(message))
    if codes.intersection(INVALID_SCOPE_CODES):
        return AuthErrorKind.INVALID_SCOPE
    if codes.intersection(INSUFFICIENT_PERMISSIONS_CODES):
        return AuthErrorKind.INSUFFICIENT_PERMISSIONS
    return AuthErrorKind.UNKNOWN


# ============================================================================
# KEY VAULT UTILITIES
# ============================================================================


async def get_secret(key_vault_name: str, secretname: str) -> str:
    """
    Retrieve a secret from Azure Key Vault.

    Uses DefaultAzureCredential, so the Function App's managed identity needs
    the "get" secret permission on the vault.

    Args:
        key_vault_name: Name of the Key Vault (without .vault.azure.net suffix)
        secretname: Name of the secret to retrieve

    Returns:
        The secret value as a string

    Raises:
        Exception: If secret retrieval fails due to authentication issues,
                  missing secret, or network problems
    """
    kv_uri = f"https://{key_vault_name}.vault.azure.net"
    try:
        async with DefaultAzureCredential() as credential:
            async with SecretClient(vault_url=kv_uri, credential=credential) as client:
                secret = await client.get_secret(secretname)
                return secret.value
    except Exception as e:
        logging.error(
            f"Failed to retrieve secret '{secretname}' from Key Vault '{key_vault_name}': {str(e)}"
        )
        raise


async def build_client_secret_credential(settings: Settings) -> ClientSecretCredential:
    """
    Build the azure-identity credential used for the client credentials grant.

    The client secret is read from the ClientSecret setting, or from Key
    Vault when only KeyVaultName and ClientSecretName are configured. The
    tenant comes from the Authority setting when one is configured.

    Raises:
        ConfigurationError: If the tenant, client id or secret source is missing
    """
    if settings.authority_tenant:
        settings.require("client_id")
    else:
        settings.require("tenant", "client_id")
    if not settings.has_client_secret_source:
        raise ConfigurationError(
            "Missing required settings: ['ClientSecret'] "
            "(or both 'KeyVaultName' and 'ClientSecretName')"
        )

    client_secret = settings.client_secret
    if not client_secret:
        client_secret = await get_secret(
            settings.key_vault_name, settings.client_secret_name
        )

    return ClientSecretCredential(
        settings.authority_tenant,
        settings.client_id,
        client_secret,
        authority=settings.authority_host,
    )


# ============================================================================
# CREDENTIAL
# ============================================================================


@dataclasses.dataclass(frozen=True)
class Credential:
    """Bearer token and the epoch second at which it expires."""

    token: str = dataclasses.field(repr=False)
    expires_on: int

    def expires_within(self, seconds: float, now: float) -> bool:
        return self.expires_on - seconds <= now

    def authorization_header(self) -> str:
        return f"Bearer {self.token}"

    def attach(self, headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Return a copy of the headers with the Authorization header set."""
        attached = dict(headers or {})
        attached["Authorization"] = self.authorization_header()
        return attached


# ============================================================================
# CREDENTIAL PROVIDER
# ============================================================================

CredentialFactory = Callable[[Settings], Awaitable[Any]]


def _consume_exception(future: asyncio.Future) -> None:
    """Mark a failed exchange as retrieved when every waiter was cancelled."""
    if not future.cancelled():
        future.exception()


class CredentialProvider:
    """
    Acquire and reuse a bearer credential for one client registration.

    The underlying token client is built lazily on the first acquire. If
    building it fails nothing is cached, so the next acquire starts over.

    A cached credential is returned until it is within the refresh margin of
    its expiry. Callers that find it expired while another exchange is
    running wait for that exchange instead of starting their own.

    Attributes:
        scopes: Scopes requested for every token
        exchange_count: Number of successful token exchanges
    """

    def __init__(
        self,
        settings: Settings,
        credential_factory: Optional[CredentialFactory] = None,
        clock: Callable[[], float] = time.time,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN_SECONDS,
    ):
        self._settings = settings
        self._credential_factory = credential_factory or build_client_secret_credential
        self._clock = clock
        self._refresh_margin = refresh_margin
        self._client = None
        self._credential: Optional[Credential] = None
        self._inflight: Optional[asyncio.Future] = None
        self.scopes = [settings.api_scope]
        self.exchange_count = 0

    async def acquire(self) -> Credential:
        """
        Return a usable credential, exchanging a new token when needed.

        Returns:
            Credential valid for at least the refresh margin

        Raises:
            AuthError: If the token exchange fails
            ConfigurationError: If the client registration settings are missing
        """
        cached = self._credential
        if cached is not None and not cached.expires_within(
            self._refresh_margin, self._clock()
        ):
            return cached

        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._exchange())
            self._inflight.add_done_callback(_consume_exception)
        inflight = self._inflight
        try:
            # A cancelled caller must not cancel the exchange other callers joined
            return await asyncio.shield(inflight)
        finally:
            if inflight.done() and self._inflight is inflight:
                self._inflight = None

    async def _get_client(self):
        if self._client is not None:
            return self._client
        try:
            client = await self._credential_factory(self._settings)
        except ConfigurationError:
            raise
        except Exception as e:
            logging.error(f"Failed to build credential client: {str(e)}", exc_info=True)
            raise AuthError(
                AuthErrorKind.UNKNOWN, f"Failed to build credential client: {str(e)}"
            ) from e
        self._client = client
        return client

    async def _exchange(self) -> Credential:
        client = await self._get_client()
        try:
            access_token = await client.get_token(*self.scopes)
        except ClientAuthenticationError as e:
            kind = classify_auth_failure(str(e))
            logging.error(
                f"Token acquisition failed ({kind.value}) for scopes {self.scopes}: {str(e)}",
                exc_info=True,
            )
            raise AuthError(kind, str(e)) from e
        except Exception as e:
            logging.error(
                f"Token acquisition failed (Unknown) for scopes {self.scopes}: {str(e)}",
                exc_info=True,
            )
            raise AuthError(AuthErrorKind.UNKNOWN, str(e)) from e

        logging.info("Auth result received")
        credential = Credential(
            token=access_token.token, expires_on=int(access_token.expires_on)
        )
        self._credential = credential
        self.exchange_count += 1
        return credential

    async def close(self) -> None:
        """Close the underlying token client and forget the cached credential."""
        client, self._client = self._client, None
        self._credential = None
        if client is not None:
            await client.close()


_providers: Dict[Settings, CredentialProvider] = {}


def get_credential_provider(settings: Settings) -> CredentialProvider:
    """
    Return the process-wide CredentialProvider for these settings.

    Function invocations on the same worker share it, so a token is reused
    across batches until it expires.
    """
    provider = _providers.get(settings)
    if provider is None:
        provider = CredentialProvider(settings)
        _providers[settings] = provider
    return provider
