# ============================================================================
# MODULE CONTEXT - FEATURE SERVER EXCEPTIONS
# ============================================================================
# STATUS: Shared - raised by every FeatureServer layer
# PURPOSE: Typed error hierarchy mapped to HTTP status codes by the triggers
# EXPORTS: FeatureServerError, InvalidParameterError, ConfigurationError,
#          RateLimitExceededError, QueryExecutionError, QueryTimeoutError
# DEPENDENCIES: None (standard library only)
# PATTERNS: Exception hierarchy for error categorization
# ENTRY_POINTS: Raised at component boundaries, translated in feature_server.triggers
# ============================================================================

"""
FeatureServer Exception Hierarchy

Every failure that leaves the query engine is one of these types. The HTTP
layer maps them to status codes:

    InvalidParameterError   -> 400
    RateLimitExceededError  -> 429 (with Retry-After)
    ConfigurationError      -> 500
    QueryExecutionError     -> 502
    QueryTimeoutError       -> 504

Degraded results (malformed geometry JSON, failed DESCRIBE) are logged and
never raised.
"""

from typing import Optional


class FeatureServerError(Exception):
    """
    Base class for expected runtime failures of the query engine.

    These are normal failures that occur during operation and are returned
    to the caller as a typed error instead of crashing the host.
    """

    status_code = 500
    code = "InternalError"


class InvalidParameterError(FeatureServerError, ValueError):
    """
    A request parameter failed validation.

    Raised before any session is opened and before any SQL text is
    produced. ``parameter`` names the wire parameter (``where``,
    ``outFields``, ``orderByFields``, ``h3col``, ``h3res``, ``timeField``,
    ``table``).
    """

    status_code = 400
    code = "InvalidParameterValue"

    def __init__(self, parameter: str, message: Optional[str] = None):
        self.parameter = parameter
        self.message = message or f"Invalid {parameter} parameter"
        super().__init__(self.message)


class ConfigurationError(FeatureServerError):
    """
    Missing or inconsistent process configuration.

    Examples:
        - DATABRICKS_SERVER_HOSTNAME not set
        - Neither an access token nor a client id/secret pair supplied
    """

    status_code = 500
    code = "ConfigurationError"


class RateLimitExceededError(FeatureServerError):
    """Client exceeded its request budget for the current window."""

    status_code = 429
    code = "RateLimitExceeded"

    def __init__(self, client_id: str, retry_after: int):
        self.client_id = client_id
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for client {client_id}; retry after {retry_after}s"
        )


class QueryExecutionError(FeatureServerError):
    """
    The remote engine rejected or failed a statement.

    Examples:
        - Unknown table or column
        - Warehouse unavailable
        - Connection lost mid-statement
    """

    status_code = 502
    code = "QueryExecutionError"


class QueryTimeoutError(QueryExecutionError):
    """Statement exceeded the configured timeout and was cancelled."""

    status_code = 504
    code = "QueryTimeout"
