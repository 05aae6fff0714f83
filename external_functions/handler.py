"""
HTTP handling shared by every external function.

A request goes through decode, credential acquisition (protected APIs only),
row processing and encode. Failures before rows are processed (bad envelope,
missing settings, authentication, deadline) are answered with HTTP 400 and
one error row per input row, never with an unstructured 500.
"""

import asyncio
import logging
from typing import Any, List, Optional, Type

import azure.functions as func
import httpx

from external_functions.authentication import CredentialProvider
from external_functions.codec import BatchCodec, is_error_payload
from external_functions.config import Settings
from external_functions.downstream import DownstreamClient
from external_functions.errors import (ConfigurationError, DecodeError,
                                       ExternalFunctionError)
from external_functions.rows import RowProcessor, row_identifier

JSON_MIMETYPE = "application/json"


class BatchHandler:
    """
    Serve one external function backed by a downstream client type.

    Args:
        client_type: DownstreamClient subclass built once per batch
        settings: Application settings
        credential_provider: Required when the client type needs a bearer credential
        row_processor: Defaults to a RowProcessor bounded by MaxConcurrentRows
        codec: Defaults to BatchCodec
    """

    def __init__(
        self,
        client_type: Type[DownstreamClient],
        settings: Settings,
        credential_provider: Optional[CredentialProvider] = None,
        row_processor: Optional[RowProcessor] = None,
        codec: Optional[BatchCodec] = None,
    ):
        self.client_type = client_type
        self.settings = settings
        self.credential_provider = credential_provider
        self.row_processor = row_processor or RowProcessor(settings.max_concurrent_rows)
        self.codec = codec or BatchCodec()

    @property
    def name(self) -> str:
        return self.client_type.name

    async def handle(self, req: func.HttpRequest) -> func.HttpResponse:
        """
        Answer a Snowflake external function request.

        Args:
            req: HTTP request with the batch envelope as JSON body

        Returns:
            200 with aligned results (row failures included), or 400 with an
            aligned batch of error rows when the batch could not be processed
        """
        logging.info(f"Python HTTP trigger function {self.name} processed a request.")

        body = req.get_body()
        try:
            rows = self.codec.decode(body)
        except DecodeError as e:
            logging.error(f"{self.name} received an invalid batch: {str(e)}")
            return self._respond(self.codec.error_rows(None, e), status_code=400)

        if not rows:
            return self._respond([], status_code=200)

        timeout = self.settings.request_timeout_seconds
        try:
            output = await asyncio.wait_for(self.process(rows), timeout=timeout)
        except asyncio.TimeoutError:
            error = ExternalFunctionError(f"Request timed out after {timeout} seconds")
            logging.error(f"{self.name} failed: {str(error)}")
            return self._batch_error(rows, error)
        except Exception as e:
            logging.error(f"{self.name} failed: {str(e)}", exc_info=True)
            return self._batch_error(rows, e)

        failed = sum(1 for _, value in output if is_error_payload(value))
        logging.info(f"{self.name} processed {len(output)} row(s), {failed} failed")
        return self._respond(output, status_code=200)

    async def process(self, rows: List[Any]) -> List[List[Any]]:
        """
        Acquire the batch credential if needed and run every row.

        Raises:
            ConfigurationError: If the client can't be built from settings
            AuthError: If the bearer credential can't be acquired
        """
        credential = None
        if self.client_type.requires_credential:
            if self.credential_provider is None:
                raise ConfigurationError(f"{self.name} requires a credential provider")
            credential = await self.credential_provider.acquire()

        async with httpx.AsyncClient(timeout=self.settings.http_timeout_seconds) as http:
            client = self.client_type.from_settings(self.settings, http, credential)
            return await self.row_processor.process(rows, client)

    def _batch_error(self, rows: List[Any], error: Exception) -> func.HttpResponse:
        identifiers = [row_identifier(row) for row in rows]
        return self._respond(self.codec.error_rows(identifiers, error), status_code=400)

    def _respond(self, rows: List[List[Any]], status_code: int) -> func.HttpResponse:
        return func.HttpResponse(
            self.codec.encode(rows), status_code=status_code, mimetype=JSON_MIMETYPE
        )
