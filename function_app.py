# ============================================================================
# MODULE CONTEXT - AZURE FUNCTIONS ENTRY POINT
# ============================================================================
# STATUS: Core Infrastructure - Function App Entry Point
# PURPOSE: Main entry point for Azure Functions runtime with the FeatureServer API
# EXPORTS: app (FunctionApp instance)
# DEPENDENCIES: azure-functions, feature_server
# ============================================================================

"""
Azure Functions Entry Point

Registers the FeatureServer HTTP triggers with the Azure Functions runtime.

Architecture:
    - FeatureServer API: 2 endpoints serving Databricks SQL tables
        - /api/databricks/rest/info - Server info
        - /api/databricks/rest/services/{table}/FeatureServer/{layer}/query - Query

Deployment:
    - Local: func start
    - Azure: func azure functionapp publish <app-name> --python --build remote
"""

import azure.functions as func
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Initialize Azure Function App
app = func.FunctionApp()

# ============================================================================
# FeatureServer API - 2 Endpoints
# ============================================================================

try:
    from feature_server import get_feature_server_triggers

    logger.info("Registering FeatureServer API endpoints...")

    triggers = get_feature_server_triggers()

    # Server info
    @app.route(route="databricks/rest/info", methods=["GET"], auth_level=func.AuthLevel.ANONYMOUS)
    def featureserver_info(req: func.HttpRequest) -> func.HttpResponse:
        return triggers[0]['handler'](req)

    # Layer query
    @app.route(route="databricks/rest/services/{table}/FeatureServer/{layer}/query", methods=["GET"],
               auth_level=func.AuthLevel.ANONYMOUS)
    def featureserver_query(req: func.HttpRequest) -> func.HttpResponse:
        return triggers[1]['handler'](req)

    logger.info("✅ FeatureServer API registered successfully (2 endpoints)")

except ImportError as e:
    logger.warning(f"⚠️ FeatureServer module not available: {e}")
    logger.warning("FeatureServer API will not be available")
