"""Fakes shared by the test suite."""

import asyncio
import json
from typing import Any, Dict, Optional, Sequence

import azure.functions as func
from azure.core.credentials import AccessToken

from external_functions.downstream import DownstreamClient
from external_functions.errors import DownstreamError

TOKEN_LIFETIME_SECONDS = 3600


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTokenCredential:
    """Stand-in for azure.identity.aio.ClientSecretCredential."""

    def __init__(
        self,
        clock: Optional[FakeClock] = None,
        error: Optional[Exception] = None,
        delay: float = 0,
    ):
        self.clock = clock or FakeClock()
        self.error = error
        self.delay = delay
        self.calls = 0
        self.requested_scopes = []
        self.closed = False

    async def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        self.calls += 1
        self.requested_scopes.append(scopes)
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return AccessToken(
            f"token-{self.calls}", int(self.clock() + TOKEN_LIFETIME_SECONDS)
        )

    async def close(self) -> None:
        self.closed = True


def factory_for(credential: FakeTokenCredential):
    builds = []

    async def _factory(settings):
        builds.append(settings)
        return credential

    _factory.builds = builds
    return _factory


class FakeClient(DownstreamClient):
    """Echo client: fails for configured params, optionally delays per param."""

    name = "FakeExample"
    param_label = "name"

    def __init__(
        self,
        failures: Sequence[str] = (),
        delays: Optional[Dict[str, float]] = None,
        error: Optional[Exception] = None,
    ):
        super().__init__(http=None)
        self.failures = set(failures)
        self.delays = delays or {}
        self.error = error
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    @classmethod
    def from_settings(cls, settings, http, credential=None):
        return cls()

    async def call(self, param: Any) -> Any:
        self.calls.append(param)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(param, 0))
            if self.error is not None:
                raise self.error
            if param in self.failures:
                raise DownstreamError(f"downstream rejected {param}", status_code=500)
            return {"name": param, "count": len(str(param))}
        finally:
            self.in_flight -= 1


def make_request(body: Any, route: str = "UnprotectedApiExample") -> func.HttpRequest:
    if not isinstance(body, bytes):
        body = json.dumps(body).encode("utf-8")
    return func.HttpRequest(
        method="POST",
        url=f"http://localhost:7071/api/{route}",
        headers={"Content-Type": "application/json"},
        body=body,
    )


def response_rows(response: func.HttpResponse):
    return json.loads(response.get_body())["data"]
