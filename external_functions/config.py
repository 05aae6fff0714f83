"""
Application settings for the external function adapters.

Settings are read once from the process environment when the Function App is
loaded (Azure Functions exposes application settings as environment
variables). Provider-specific settings are only validated when the matching
function is invoked, so one misconfigured provider never blocks the others.
"""

import dataclasses
import logging
import os
import urllib.parse
from typing import Mapping, Optional

from external_functions.errors import ConfigurationError

# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_INSTANCE = "https://login.microsoftonline.com/"

# The client credentials flow requires the /.default scope of the resource
DEFAULT_API_SCOPE = "https://graph.microsoft.com/.default"

DEFAULT_API_BASE_URL = "https://api.agify.io"
DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

# Rows processed at once within one batch
DEFAULT_MAX_CONCURRENT_ROWS = 8

# Azure Functions HTTP triggers are cut off by the load balancer at 230 seconds
DEFAULT_REQUEST_TIMEOUT_SECONDS = 230

DEFAULT_HTTP_TIMEOUT_SECONDS = 30

# Microsoft Graph accepts $top between 1 and 999
MAX_GRAPH_PAGE_SIZE = 999

SETTING_NAMES = {
    "instance": "Instance",
    "authority": "Authority",
    "tenant": "Tenant",
    "client_id": "ClientId",
    "client_secret": "ClientSecret",
    "api_scope": "ApiScope",
    "api_base_url": "ApiBaseUrl",
    "graph_base_url": "GraphBaseUrl",
    "graph_page_size": "GraphPageSize",
    "vtiger_endpoint": "VtigerEndpoint",
    "vtiger_user_name": "VtigerUserName",
    "vtiger_access_key": "AccessKey",
    "key_vault_name": "KeyVaultName",
    "client_secret_name": "ClientSecretName",
    "max_concurrent_rows": "MaxConcurrentRows",
    "request_timeout_seconds": "RequestTimeoutSeconds",
    "http_timeout_seconds": "HttpTimeoutSeconds",
}


def _read_positive_int(
    environ: Mapping[str, str], name: str, default: Optional[int]
) -> Optional[int]:
    """
    Read an integer setting, falling back to the default when it is
    missing, malformed or not positive.
    """
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except (ValueError, TypeError):
        logging.warning(f"Ignoring invalid value for {name}: {raw!r}")
        return default
    if value < 1:
        logging.warning(f"Ignoring non-positive value for {name}: {value}")
        return default
    return value


@dataclasses.dataclass(frozen=True)
class Settings:
    instance: str = DEFAULT_INSTANCE
    tenant: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = dataclasses.field(default=None, repr=False)
    authority_override: Optional[str] = None
    api_scope: str = DEFAULT_API_SCOPE
    api_base_url: str = DEFAULT_API_BASE_URL
    graph_base_url: str = DEFAULT_GRAPH_BASE_URL
    graph_page_size: Optional[int] = None
    vtiger_endpoint: Optional[str] = None
    vtiger_user_name: Optional[str] = None
    vtiger_access_key: Optional[str] = dataclasses.field(default=None, repr=False)
    key_vault_name: Optional[str] = None
    client_secret_name: Optional[str] = None
    max_concurrent_rows: int = DEFAULT_MAX_CONCURRENT_ROWS
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    http_timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment-style key/value pairs.

        Args:
            environ: Mapping to read from, defaults to os.environ

        Returns:
            Settings instance. Missing optional values keep their defaults.
        """
        if environ is None:
            environ = os.environ

        def _get(field_name: str) -> Optional[str]:
            value = environ.get(SETTING_NAMES[field_name])
            return value if value else None

        graph_page_size = _read_positive_int(
            environ, SETTING_NAMES["graph_page_size"], None
        )
        if graph_page_size is not None and graph_page_size > MAX_GRAPH_PAGE_SIZE:
            logging.warning(
                f"GraphPageSize {graph_page_size} exceeds {MAX_GRAPH_PAGE_SIZE}, capping it"
            )
            graph_page_size = MAX_GRAPH_PAGE_SIZE

        return cls(
            instance=_get("instance") or DEFAULT_INSTANCE,
            tenant=_get("tenant"),
            client_id=_get("client_id"),
            client_secret=_get("client_secret"),
            authority_override=_get("authority"),
            api_scope=_get("api_scope") or DEFAULT_API_SCOPE,
            api_base_url=_get("api_base_url") or DEFAULT_API_BASE_URL,
            graph_base_url=_get("graph_base_url") or DEFAULT_GRAPH_BASE_URL,
            graph_page_size=graph_page_size,
            vtiger_endpoint=_get("vtiger_endpoint"),
            vtiger_user_name=_get("vtiger_user_name"),
            vtiger_access_key=_get("vtiger_access_key"),
            key_vault_name=_get("key_vault_name"),
            client_secret_name=_get("client_secret_name"),
            max_concurrent_rows=_read_positive_int(
                environ,
                SETTING_NAMES["max_concurrent_rows"],
                DEFAULT_MAX_CONCURRENT_ROWS,
            ),
            request_timeout_seconds=_read_positive_int(
                environ,
                SETTING_NAMES["request_timeout_seconds"],
                DEFAULT_REQUEST_TIMEOUT_SECONDS,
            ),
            http_timeout_seconds=_read_positive_int(
                environ,
                SETTING_NAMES["http_timeout_seconds"],
                DEFAULT_HTTP_TIMEOUT_SECONDS,
            ),
        )

    @property
    def authority(self) -> Optional[str]:
        """
        Token authority URL, e.g. https://login.microsoftonline.com/<tenant>.

        Multi-tenant apps can use "common", single-tenant apps must use the
        tenant ID from the Azure portal.
        """
        if self.authority_override:
            return self.authority_override
        if not self.tenant:
            return None
        return f"{self.instance.rstrip('/')}/{self.tenant}"

    @property
    def authority_host(self) -> str:
        """Host part of the authority, as expected by azure-identity credentials."""
        source = self.authority_override or self.instance
        parsed = urllib.parse.urlparse(source)
        if parsed.netloc:
            return parsed.netloc
        return source.strip("/").split("/", 1)[0]

    @property
    def authority_tenant(self) -> Optional[str]:
        """
        Tenant the token is requested from.

        A configured Authority carries the tenant as the first segment of its
        path and takes precedence over the Tenant setting.
        """
        if self.authority_override:
            parsed = urllib.parse.urlparse(self.authority_override)
            if parsed.netloc:
                path = parsed.path
            else:
                path = self.authority_override.strip("/").partition("/")[2]
            segments = [segment for segment in path.split("/") if segment]
            if segments:
                return segments[0]
        return self.tenant

    @property
    def has_client_secret_source(self) -> bool:
        return bool(self.client_secret) or bool(
            self.key_vault_name and self.client_secret_name
        )

    def require(self, *field_names: str) -> None:
        """
        Validate that the given settings are present.

        Args:
            field_names: Settings attribute names to check

        Raises:
            ConfigurationError: If any of them is missing, listing their
                application setting names
        """
        missing = [
            SETTING_NAMES.get(name, name)
            for name in field_names
            if not getattr(self, name)
        ]
        if missing:
            error_msg = f"Missing required settings: {missing}"
            logging.error(error_msg)
            raise ConfigurationError(error_msg)
