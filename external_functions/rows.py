"""
Per-row processing of a Snowflake batch.

Rows are sent to the downstream client concurrently with a bounded number of
calls in flight. Results are written back by input position, so the output
always has one row per input row in input order, whatever order the calls
complete in.
"""

import asyncio
import dataclasses
import logging
from typing import Any, List, Optional, Union

from external_functions.codec import error_payload
from external_functions.config import DEFAULT_MAX_CONCURRENT_ROWS
from external_functions.downstream import DownstreamClient
from external_functions.errors import RowShapeError


@dataclasses.dataclass(frozen=True)
class Success:
    payload: Any

    def to_wire(self) -> Any:
        return self.payload


@dataclasses.dataclass(frozen=True)
class Failure:
    message: str

    def to_wire(self) -> Any:
        return error_payload(self.message)


RowResult = Union[Success, Failure]


def row_identifier(row: Any) -> Optional[Any]:
    """First element of a row, or None (null on the wire) when the row has none."""
    if isinstance(row, list) and row:
        return row[0]
    return None


class RowProcessor:
    """
    Run one downstream call per row and collect aligned results.

    Row-level failures never escape process(): they are turned into
    Failure results for that row only. Cancellation is not caught.
    """

    def __init__(self, max_concurrency: int = DEFAULT_MAX_CONCURRENT_ROWS):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency

    async def process(
        self, rows: List[Any], client: DownstreamClient
    ) -> List[List[Any]]:
        """
        Process a batch of input rows.

        Args:
            rows: Input rows, each expected to start with the row identifier
            client: Downstream client shared by all rows of the batch

        Returns:
            Output rows [identifier, payload or error payload], aligned with rows
        """
        results: List[Optional[List[Any]]] = [None] * len(rows)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _visit(position: int, row: List[Any]) -> None:
            async with semaphore:
                result = await self.process_row(row, client)
            results[position] = [row_identifier(row), result.to_wire()]

        await asyncio.gather(*(_visit(i, row) for i, row in enumerate(rows)))
        return results

    async def process_row(self, row: Any, client: DownstreamClient) -> RowResult:
        """
        Process a single row.

        Returns:
            Success with the downstream payload, or Failure with a message
            embedding the row parameter and the error text
        """
        try:
            param = client.extract_param(row)
        except RowShapeError as e:
            logging.error(f"Row {row_identifier(row)!r} rejected: {str(e)}")
            return Failure(str(e))

        try:
            payload = await client.call(param)
        except Exception as e:
            # Return a special response with an exception message for failed requests
            logging.error(
                f"Row {row_identifier(row)!r} failed in {client.name}: {str(e)}",
                exc_info=True,
            )
            return Failure(client.describe_failure(param, e))
        return Success(payload)
