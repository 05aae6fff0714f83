"""
Snowflake external functions hosted on Azure Functions.

Each function receives a batch of rows from Snowflake, calls a downstream API
once per row and answers with results aligned to the input rows.
"""

__version__ = "1.0.0"
