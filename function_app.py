"""
Azure Function App exposing Snowflake external functions.

Every route accepts the Snowflake batch envelope {"data": [[row, args...], ...]}
and answers with one [row, result] pair per input row. Settings are read once
when the worker loads this module; the bearer credential for Microsoft Graph
is cached by the worker across invocations until it expires.
"""

import azure.functions as func

from external_functions.authentication import get_credential_provider
from external_functions.config import Settings
from external_functions.downstream import (GraphGroupsClient,
                                           UnprotectedApiClient,
                                           VtigerQueryClient)
from external_functions.handler import BatchHandler

# ============================================================================
# AZURE FUNCTIONS APP
# ============================================================================

app = func.FunctionApp(http_auth_level=func.AuthLevel.FUNCTION)

settings = Settings.from_env()

unprotected_api_handler = BatchHandler(UnprotectedApiClient, settings)
microsoft_graph_handler = BatchHandler(
    GraphGroupsClient, settings, credential_provider=get_credential_provider(settings)
)
vtiger_handler = BatchHandler(VtigerQueryClient, settings)


# ============================================================================
# HTTP TRIGGERS
# ============================================================================


@app.route(route="UnprotectedApiExample", methods=["POST"])
async def unprotected_api_example(req: func.HttpRequest) -> func.HttpResponse:
    """
    Call a public API (agify.io by default) with each row's second column.

    Args:
        req: HTTP request with the Snowflake batch envelope

    Returns:
        HTTP response with one result or error payload per row
    """
    return await unprotected_api_handler.handle(req)


@app.route(route="MicrosoftGraphExample", methods=["POST"])
async def microsoft_graph_example(req: func.HttpRequest) -> func.HttpResponse:
    """
    List Microsoft Graph groups for each row, with an app-only token.

    The optional second column filters groups by display name prefix.
    """
    return await microsoft_graph_handler.handle(req)


@app.route(route="VtigerExample", methods=["POST"])
async def vtiger_example(req: func.HttpRequest) -> func.HttpResponse:
    """Run each row's second column as a Vtiger CRM query."""
    return await vtiger_handler.handle(req)
