import pytest

from external_functions.config import Settings
from tests.helpers import FakeClock


@pytest.fixture
def settings() -> Settings:
    return Settings(
        tenant="contoso-tenant-id",
        client_id="client-id",
        client_secret="client-secret",
        api_base_url="https://api.agify.io",
        graph_base_url="https://graph.microsoft.com/v1.0",
        vtiger_endpoint="https://crm.example.com/restapi/v1/vtiger/default",
        vtiger_user_name="admin",
        vtiger_access_key="access-key",
        max_concurrent_rows=4,
        request_timeout_seconds=30,
        http_timeout_seconds=5,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
