# ============================================================================
# MODULE CONTEXT - APPLICATION CONFIGURATION
# ============================================================================
# STATUS: Core Infrastructure - Configuration Management
# PURPOSE: Databricks SQL warehouse target and credential selection
# EXPORTS: AppConfig, get_app_config, DatabricksCredentials, resolve_credentials,
#          validate_configuration
# DEPENDENCIES: pydantic, pydantic-settings
# SOURCE: Environment variables, .env file
# PATTERNS: Singleton pattern for config, credential scheme selection
# ============================================================================

"""
Application Configuration Module

Connection target and credentials for the Databricks SQL warehouse.

Authentication Modes:
    1. OAuth machine-to-machine (service principal, production):
       - Requires: DATABRICKS_CLIENT_ID, DATABRICKS_CLIENT_SECRET
       - Selected whenever both are set

    2. Personal access token (local development):
       - Requires: DATABRICKS_TOKEN
       - Selected when no client id/secret pair is configured

Connection Target:
    - DATABRICKS_SERVER_HOSTNAME: Workspace hostname (scheme optional)
    - DATABRICKS_HTTP_PATH: SQL warehouse HTTP path

Missing pieces are reported as ConfigurationError at the first connection
attempt, so a misconfigured process fails each request with a clear message
and the next request retries the connection.

Usage:
    from config import get_app_config, resolve_credentials

    credentials = resolve_credentials(get_app_config())
"""

import logging
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from feature_server.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# ============================================================================
# Application Configuration
# ============================================================================

class AppConfig(BaseSettings):
    """
    Application-wide configuration loaded from environment variables.

    Attributes:
        databricks_server_hostname: Workspace hostname
        databricks_http_path: SQL warehouse HTTP path
        databricks_token: Personal access token
        databricks_client_id: Service principal application id
        databricks_client_secret: Service principal OAuth secret
        register_shutdown_hooks: Install atexit/signal handlers that close the client
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Databricks Connection
    databricks_server_hostname: Optional[str] = Field(default=None, description="Workspace hostname")
    databricks_http_path: Optional[str] = Field(default=None, description="SQL warehouse HTTP path")

    # Credentials
    databricks_token: Optional[SecretStr] = Field(default=None, description="Personal access token")
    databricks_client_id: Optional[str] = Field(default=None, description="Service principal client id")
    databricks_client_secret: Optional[SecretStr] = Field(default=None, description="Service principal secret")

    # Process lifecycle
    register_shutdown_hooks: bool = Field(
        default=True,
        description="Close the shared Databricks client on exit and SIGTERM/SIGINT"
    )

    @field_validator("databricks_server_hostname")
    @classmethod
    def normalize_hostname(cls, v: Optional[str]) -> Optional[str]:
        """Accept hostnames pasted with a scheme or trailing slash."""
        if v is None:
            return None
        v = v.strip()
        for prefix in ("https://", "http://"):
            if v.lower().startswith(prefix):
                v = v[len(prefix):]
        return v.rstrip("/") or None


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """
    Get singleton application configuration instance.

    Returns:
        AppConfig: Validated configuration object
    """
    return AppConfig()


# ============================================================================
# Credential Selection
# ============================================================================

class CredentialScheme(str, Enum):
    OAUTH_M2M = "oauth-m2m"
    ACCESS_TOKEN = "access-token"


@dataclass(frozen=True)
class DatabricksCredentials:
    """Resolved connection target plus exactly one credential scheme."""
    scheme: CredentialScheme
    server_hostname: str
    http_path: str
    access_token: Optional[SecretStr] = None
    client_id: Optional[str] = None
    client_secret: Optional[SecretStr] = None


def _is_set(value) -> bool:
    if value is None:
        return False
    if isinstance(value, SecretStr):
        value = value.get_secret_value()
    return bool(value.strip())


def resolve_credentials(config: AppConfig) -> DatabricksCredentials:
    """
    Select the credential scheme for the configured workspace.

    Client id + secret wins over an access token.

    Args:
        config: Application configuration

    Returns:
        DatabricksCredentials

    Raises:
        ConfigurationError: If the target or every credential is missing
    """
    missing = [
        name for name, value in (
            ("DATABRICKS_SERVER_HOSTNAME", config.databricks_server_hostname),
            ("DATABRICKS_HTTP_PATH", config.databricks_http_path),
        ) if not _is_set(value)
    ]
    if missing:
        raise ConfigurationError(f"Missing Databricks connection settings: {', '.join(missing)}")

    if _is_set(config.databricks_client_id) and _is_set(config.databricks_client_secret):
        return DatabricksCredentials(
            scheme=CredentialScheme.OAUTH_M2M,
            server_hostname=config.databricks_server_hostname,
            http_path=config.databricks_http_path,
            client_id=config.databricks_client_id.strip(),
            client_secret=config.databricks_client_secret,
        )

    if _is_set(config.databricks_token):
        return DatabricksCredentials(
            scheme=CredentialScheme.ACCESS_TOKEN,
            server_hostname=config.databricks_server_hostname,
            http_path=config.databricks_http_path,
            access_token=config.databricks_token,
        )

    raise ConfigurationError(
        "No Databricks credentials configured: set DATABRICKS_CLIENT_ID and "
        "DATABRICKS_CLIENT_SECRET, or DATABRICKS_TOKEN"
    )


# ============================================================================
# Configuration Validation
# ============================================================================

def validate_configuration() -> bool:
    """
    Validate configuration on application startup.

    Logs a redacted summary; secrets are never written to logs.

    Returns:
        bool: True if configuration is valid

    Raises:
        ConfigurationError: If configuration validation fails
    """
    try:
        config = get_app_config()
        logger.info("Configuration validation:")
        logger.info(f"  Databricks Host: {config.databricks_server_hostname}")
        logger.info(f"  HTTP Path: {config.databricks_http_path}")

        credentials = resolve_credentials(config)
        logger.info(f"  Credential scheme: {credentials.scheme.value}")
        logger.info("✅ Databricks configuration resolved successfully")

        return True

    except ConfigurationError as e:
        logger.error(f"❌ Configuration validation failed: {e}")
        raise


# ============================================================================
# Module Initialization
# ============================================================================

if __name__ == "__main__":
    # For testing configuration
    logging.basicConfig(level=logging.INFO)
    validate_configuration()
