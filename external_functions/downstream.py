"""
Downstream API clients, one per external function.

Each client makes the outbound call for a single row parameter and either
returns the decoded JSON payload or raises DownstreamError. A client instance
lives for one batch: it shares that batch's HTTP connection pool and
credentials across all rows and never acquires credentials itself.
"""

import abc
import asyncio
import base64
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from external_functions.authentication import Credential
from external_functions.codec import strict_loads
from external_functions.config import Settings
from external_functions.errors import ConfigurationError, DownstreamError, RowShapeError


def format_param(value: Any) -> str:
    """Render a row parameter the way it is sent downstream."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)


class DownstreamClient(abc.ABC):
    """
    Base class for downstream clients.

    Attributes:
        name: Function name used in logs
        param_index: Position of the call parameter in an input row
        param_required: Whether rows without the parameter are rejected
        param_label: Label of the parameter in per-row error messages
        requires_credential: Whether a bearer credential must be acquired
            for the batch before the client is built
    """

    name = "Downstream"
    param_index = 1
    param_required = True
    param_label = "param"
    requires_credential = False

    def __init__(self, http: httpx.AsyncClient):
        self._http = http

    @classmethod
    @abc.abstractmethod
    def from_settings(
        cls,
        settings: Settings,
        http: httpx.AsyncClient,
        credential: Optional[Credential] = None,
    ) -> "DownstreamClient":
        """
        Build the client for one batch.

        Raises:
            ConfigurationError: If a setting the client needs is missing
        """

    @abc.abstractmethod
    async def call(self, param: Any) -> Any:
        """
        Make the downstream call for one row parameter.

        Raises:
            DownstreamError: If the call fails or returns a non-success status
        """

    def extract_param(self, row: List[Any]) -> Any:
        """
        Pick the call parameter out of an input row.

        Raises:
            RowShapeError: If the row is not a non-empty array or a required
                parameter is missing
        """
        if not isinstance(row, list) or not row:
            raise RowShapeError(
                f"Row must be a non-empty array starting with the row identifier, "
                f"got {json.dumps(row)}"
            )
        if len(row) > self.param_index:
            return row[self.param_index]
        if not self.param_required:
            return None
        raise RowShapeError(
            f"Row {json.dumps(row[0])} has {len(row)} element(s), "
            f"expected a {self.param_label} parameter at position {self.param_index}"
        )

    def describe_failure(self, param: Any, error: Exception) -> str:
        return f"{self.param_label}: {format_param(param)} errorMessage: {str(error)}"

    async def _get_json(
        self,
        url: str,
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        GET a JSON document.

        Raises:
            DownstreamError: On network failure, non-success status (with the
                response body as message) or a body that is not strict JSON
        """
        try:
            response = await self._http.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise DownstreamError(f"{type(e).__name__}: {str(e)}") from e

        if not response.is_success:
            body = response.text
            raise DownstreamError(
                body or f"HTTP {response.status_code}", status_code=response.status_code
            )

        try:
            return strict_loads(response.content)
        except ValueError as e:
            raise DownstreamError(
                f"Malformed response body: {str(e)}", status_code=response.status_code
            ) from e


# ============================================================================
# UNPROTECTED API
# ============================================================================


class UnprotectedApiClient(DownstreamClient):
    """Call a public API with the row parameter as the "name" query parameter."""

    name = "UnprotectedApiExample"
    param_label = "name"

    def __init__(self, http: httpx.AsyncClient, base_url: str):
        super().__init__(http)
        self.base_url = base_url

    @classmethod
    def from_settings(cls, settings, http, credential=None):
        return cls(http, settings.api_base_url)

    async def call(self, param: Any) -> Any:
        return await self._get_json(self.base_url, params={"name": format_param(param)})


# ============================================================================
# MICROSOFT GRAPH
# ============================================================================


class GraphGroupsClient(DownstreamClient):
    """
    List Microsoft Graph groups with an app-only bearer token.

    Graph returns groups in pages (100 by default, at most 999 with $top).
    Every page is fetched by following @odata.nextLink until it is absent,
    so a call always returns the complete listing.

    The row parameter is optional. When present it restricts the listing to
    groups whose display name starts with it. Rows asking for the same
    listing within a batch share one enumeration.
    """

    name = "MicrosoftGraphExample"
    param_label = "groupFilter"
    param_required = False
    requires_credential = True

    GROUP_FIELDS = ("id", "displayName")

    def __init__(
        self,
        http: httpx.AsyncClient,
        credential: Credential,
        base_url: str,
        page_size: Optional[int] = None,
    ):
        super().__init__(http)
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self._headers = credential.attach({"Accept": "application/json"})
        self._listings: Dict[str, asyncio.Future] = {}

    @classmethod
    def from_settings(cls, settings, http, credential=None):
        if credential is None:
            raise ConfigurationError(f"{cls.name} requires a bearer credential")
        return cls(http, credential, settings.graph_base_url, settings.graph_page_size)

    async def call(self, param: Any) -> List[Dict[str, Any]]:
        prefix = format_param(param).strip()
        listing = self._listings.get(prefix)
        if listing is None:
            listing = asyncio.ensure_future(self.list_groups(prefix))
            self._listings[prefix] = listing
        return await listing

    async def list_groups(self, prefix: str = "") -> List[Dict[str, Any]]:
        """
        Enumerate every group, across all pages.

        Args:
            prefix: Optional display name prefix to filter on

        Returns:
            List of {"id", "displayName"} dictionaries in Graph order
        """
        params = {"$select": ",".join(self.GROUP_FIELDS)}
        if self.page_size:
            params["$top"] = str(self.page_size)
        if prefix:
            escaped = prefix.replace("'", "''")
            params["$filter"] = f"startswith(displayName,'{escaped}')"

        groups = []
        pages = 0
        url = f"{self.base_url}/groups"
        while url:
            page = await self._get_json(url, params=params, headers=self._headers)
            if not isinstance(page, dict) or not isinstance(page.get("value"), list):
                raise DownstreamError(f"Malformed Microsoft Graph page: {json.dumps(page)[:200]}")

            groups.extend(
                {field: item.get(field) for field in self.GROUP_FIELDS}
                for item in page["value"]
            )
            pages += 1
            # nextLink already carries the query of the original request
            url, params = page.get("@odata.nextLink"), None

        logging.info(f"Listed {len(groups)} group(s) across {pages} page(s)")
        return groups


# ============================================================================
# VTIGER
# ============================================================================


def basic_authorization(user_name: str, access_key: str) -> str:
    """Build an HTTP Basic Authorization header value."""
    encoded = base64.b64encode(f"{user_name}:{access_key}".encode("utf-8")).decode("ascii")
    return f"Basic {encoded}"


class VtigerQueryClient(DownstreamClient):
    """Run a Vtiger CRM REST query per row, with Basic auth from the access key."""

    name = "VtigerExample"
    param_label = "VtigerQueryInput"

    def __init__(self, http: httpx.AsyncClient, endpoint: str, authorization: str):
        super().__init__(http)
        self.endpoint = endpoint.rstrip("/")
        self._headers = {"Authorization": authorization}

    @classmethod
    def from_settings(cls, settings, http, credential=None):
        settings.require("vtiger_endpoint", "vtiger_user_name", "vtiger_access_key")
        return cls(
            http,
            settings.vtiger_endpoint,
            basic_authorization(settings.vtiger_user_name, settings.vtiger_access_key),
        )

    async def call(self, param: Any) -> Any:
        return await self._get_json(
            f"{self.endpoint}/query",
            params={"query": format_param(param)},
            headers=self._headers,
        )
