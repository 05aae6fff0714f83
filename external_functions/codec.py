"""
Snowflake external function batch envelope.

Snowflake posts rows as {"data": [[row_number, arg1, arg2, ...], ...]} and
expects the reply in the same shape, one [row_number, value] pair per input
row, in input order.

Numbers are decoded and encoded as strict JSON: NaN, Infinity and literals
that overflow a double are rejected instead of being written back as tokens
no JSON parser accepts.
"""

import json
import logging
import math
from typing import Any, Dict, List, Optional, Union

from external_functions.errors import DecodeError

DATA_KEY = "data"
ERROR_MESSAGE_KEY = "exceptionMessage"

# Identifier used for the single diagnostic row when no input row is readable
UNRECOVERABLE_ROW_ID = 0


def error_payload(message: str) -> Dict[str, str]:
    """Uniform error value so callers can tell failures apart by shape alone."""
    return {ERROR_MESSAGE_KEY: message}


def is_error_payload(value: Any) -> bool:
    return isinstance(value, dict) and set(value.keys()) == {ERROR_MESSAGE_KEY}


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-finite number {name} is not valid JSON")


def _finite_float(literal: str) -> float:
    value = float(literal)
    if math.isinf(value):
        raise ValueError(f"Number {literal} is out of range")
    return value


def strict_loads(data: Union[str, bytes]) -> Any:
    """
    Parse a JSON document, rejecting non-finite numbers.

    Raises:
        ValueError: If the document is not valid JSON or holds a number
            that can't be represented as a finite double
    """
    return json.loads(data, parse_constant=_reject_constant, parse_float=_finite_float)


class BatchCodec:
    """Decode inbound and encode outbound batch envelopes."""

    def decode(self, body: bytes) -> List[Any]:
        """
        Decode and validate the inbound envelope.

        Only the envelope is validated here. The shape of each row is checked
        when the row is processed, so a malformed row fails on its own.

        Args:
            body: Raw request body

        Returns:
            List of input rows in request order

        Raises:
            DecodeError: If the body is not a valid batch envelope
        """
        envelope = self._parse(body)

        if not isinstance(envelope, dict) or DATA_KEY not in envelope:
            raise DecodeError(f"Request body must be a JSON object with a '{DATA_KEY}' array")

        rows = envelope[DATA_KEY]
        if not isinstance(rows, list):
            raise DecodeError(f"'{DATA_KEY}' must be an array, got {type(rows).__name__}")
        return rows

    def encode(self, rows: List[List[Any]]) -> str:
        return json.dumps({DATA_KEY: rows}, allow_nan=False)

    def error_rows(
        self, identifiers: Optional[List[Any]], error: Exception
    ) -> List[List[Any]]:
        """
        Build an aligned batch where every row carries a batch-level error.

        Each row gets its own message naming its identifier.

        Args:
            identifiers: Row identifiers in input order, None if unknown
            error: The batch-level failure

        Returns:
            One [identifier, error payload] row per identifier, or a single
            diagnostic row when the identifiers are unknown
        """
        if identifiers is None:
            return [
                [
                    UNRECOVERABLE_ROW_ID,
                    error_payload(f"Batch could not be read: {str(error)}"),
                ]
            ]
        return [
            [
                row_id,
                error_payload(
                    f"Batch failed before row {json.dumps(row_id)} was processed: {str(error)}"
                ),
            ]
            for row_id in identifiers
        ]

    def _parse(self, body: bytes) -> Any:
        if not body:
            raise DecodeError("Request body is empty")
        try:
            return strict_loads(body)
        except ValueError as e:
            logging.warning(f"Invalid JSON body: {str(e)}")
            raise DecodeError(f"Invalid JSON body: {str(e)}") from e
