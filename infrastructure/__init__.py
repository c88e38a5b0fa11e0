# ============================================================================
# MODULE CONTEXT - INFRASTRUCTURE MODULE
# ============================================================================
# STATUS: Core Infrastructure - Remote SQL engine access
# PURPOSE: Databricks SQL connection management for the FeatureServer engine
# EXPORTS: DatabricksConnectionManager, DatabricksSession, DatabricksClient, OAuthTokenProvider
# DEPENDENCIES: httpx, config, util_logger
# ============================================================================

"""
Infrastructure Module

Provides shared infrastructure components:
- Databricks SQL client lifecycle (DatabricksConnectionManager)
- Per-request sessions with timed, cancellable statement execution
- Service principal OAuth tokens (OAuthTokenProvider)
"""

from .databricks import (
    DatabricksConnectionManager,
    DatabricksSession,
    DatabricksClient,
    OAuthTokenProvider
)

__version__ = "1.0.0"
__all__ = [
    "DatabricksConnectionManager",
    "DatabricksSession",
    "DatabricksClient",
    "OAuthTokenProvider"
]
