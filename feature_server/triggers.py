# ============================================================================
# MODULE CONTEXT - FEATURE SERVER HTTP TRIGGERS
# ============================================================================
# STATUS: Standalone Triggers - Azure Functions HTTP handlers
# PURPOSE: Thin HTTP glue from FeatureServer REST routes to FeatureServerService
# EXPORTS: get_feature_server_triggers, FeatureServerInfoTrigger, FeatureServerQueryTrigger
# INTERFACES: Azure Functions HttpRequest/HttpResponse
# DEPENDENCIES: azure-functions, feature_server.service
# PATTERNS: Trigger registry, Base trigger class, Error -> status mapping
# ENTRY_POINTS: from feature_server import get_feature_server_triggers
# ============================================================================

"""
FeatureServer HTTP Triggers

Routes:
    GET databricks/rest/info
    GET databricks/rest/services/{table}/FeatureServer/{layer}/query

Client identity for rate limiting comes from the first hop of
X-Forwarded-For, then X-Client-IP, else "anonymous". The correlation id is
taken from X-Correlation-ID when present and echoed back on the response.

Error mapping:
    InvalidParameterError   -> 400 {"code", "description", "parameter"}
    RateLimitExceededError  -> 429 + Retry-After
    ConfigurationError      -> 500
    QueryExecutionError     -> 502
    QueryTimeoutError       -> 504
"""

import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

import azure.functions as func

from util_logger import log_exceptions, ComponentType
from .exceptions import FeatureServerError, InvalidParameterError, RateLimitExceededError
from .models import FeatureRequest

logger = logging.getLogger(__name__)


# ============================================================================
# TRIGGER REGISTRY FUNCTION
# ============================================================================

def get_feature_server_triggers(service=None) -> List[Dict[str, Any]]:
    """
    Get list of FeatureServer trigger configurations for function_app.py.

    Args:
        service: Optional FeatureServerService; the process singleton is
            used (and created on first request) when omitted

    Returns:
        List of dicts with keys:
        - route: URL route pattern
        - methods: List of HTTP methods
        - handler: Callable trigger handler
    """
    return [
        {
            'route': 'databricks/rest/info',
            'methods': ['GET'],
            'handler': FeatureServerInfoTrigger(service).handle
        },
        {
            'route': 'databricks/rest/services/{table}/FeatureServer/{layer}/query',
            'methods': ['GET'],
            'handler': FeatureServerQueryTrigger(service).handle
        }
    ]


# ============================================================================
# BASE TRIGGER CLASS
# ============================================================================

class BaseFeatureServerTrigger:
    """
    Base class for FeatureServer triggers.

    Provides common functionality:
    - Lazy service resolution
    - JSON response formatting
    - Error responses in the {"code", "description"} shape
    """

    def __init__(self, service=None, service_factory: Optional[Callable] = None):
        self._service = service
        self._service_factory = service_factory

    @property
    def service(self):
        if self._service is None:
            if self._service_factory is None:
                from .service import get_feature_server_service
                self._service_factory = get_feature_server_service
            self._service = self._service_factory()
        return self._service

    def _json_response(
        self,
        data: Any,
        status_code: int = 200,
        headers: Optional[Dict[str, str]] = None
    ) -> func.HttpResponse:
        return func.HttpResponse(
            body=json.dumps(data, indent=2, default=str),
            status_code=status_code,
            headers=headers,
            mimetype="application/json"
        )

    def _error_response(
        self,
        message: str,
        status_code: int = 400,
        error_type: str = "BadRequest",
        headers: Optional[Dict[str, str]] = None,
        **extra: Any
    ) -> func.HttpResponse:
        error_body = {
            "code": error_type,
            "description": message
        }
        error_body.update(extra)
        return self._json_response(error_body, status_code=status_code, headers=headers)


# ============================================================================
# ENDPOINT TRIGGERS
# ============================================================================

class FeatureServerInfoTrigger(BaseFeatureServerTrigger):
    """
    Server info trigger.

    Endpoint: GET /api/databricks/rest/info
    """

    def handle(self, req: func.HttpRequest) -> func.HttpResponse:
        try:
            return self._json_response(self.service.get_server_info())
        except Exception as e:
            logger.error(f"Error generating server info: {e}")
            return self._error_response(
                message=f"Internal server error: {str(e)}",
                status_code=500,
                error_type="InternalServerError"
            )


class FeatureServerQueryTrigger(BaseFeatureServerTrigger):
    """
    FeatureServer query trigger (main endpoint).

    Endpoint: GET /api/databricks/rest/services/{table}/FeatureServer/{layer}/query

    Query Parameters:
    - where, geometry, geometryType, outFields, returnGeometry
    - resultOffset, resultRecordCount, orderByFields
    - returnCountOnly, returnIdsOnly, returnExtentOnly
    - bbox, h3col, h3res, time, timeField
    """

    @staticmethod
    def _client_id(req: func.HttpRequest) -> str:
        forwarded = req.headers.get('X-Forwarded-For')
        if forwarded:
            first_hop = forwarded.split(',')[0].strip()
            if first_hop:
                return first_hop
        client_ip = req.headers.get('X-Client-IP')
        if client_ip and client_ip.strip():
            return client_ip.strip()
        return "anonymous"

    @staticmethod
    def _correlation_id(req: func.HttpRequest) -> str:
        supplied = req.headers.get('X-Correlation-ID')
        return supplied.strip() if supplied and supplied.strip() else str(uuid.uuid4())

    @log_exceptions(ComponentType.TRIGGER, "FeatureServerQueryTrigger",
                    expected=(InvalidParameterError, RateLimitExceededError))
    def _execute(self, request: FeatureRequest):
        return self.service.get_data(request)

    def handle(self, req: func.HttpRequest) -> func.HttpResponse:
        """
        Handle a FeatureServer query.

        Args:
            req: Azure Functions HTTP request

        Returns:
            HttpResponse with a FeatureCollection or a scalar result
        """
        correlation_id = self._correlation_id(req)
        headers = {'X-Correlation-ID': correlation_id}

        request = FeatureRequest(
            table=req.route_params.get('table') or '',
            params=dict(req.params),
            client_id=self._client_id(req),
            correlation_id=correlation_id,
        )
        logger.info(f"{correlation_id}> Received request for {request.table} from {request.client_id}")

        try:
            result = self._execute(request)
            return self._json_response(result.to_response(), headers=headers)

        except RateLimitExceededError as e:
            headers['Retry-After'] = str(e.retry_after)
            return self._error_response(str(e), status_code=e.status_code,
                                        error_type=e.code, headers=headers)

        except InvalidParameterError as e:
            return self._error_response(e.message, status_code=e.status_code, error_type=e.code,
                                        headers=headers, parameter=e.parameter)

        except FeatureServerError as e:
            logger.error(f"{correlation_id}> {type(e).__name__}: {e}")
            return self._error_response(str(e), status_code=e.status_code,
                                        error_type=e.code, headers=headers)

        except Exception as e:
            logger.error(f"{correlation_id}> Unexpected error: {e}")
            return self._error_response(
                message=f"Internal server error: {str(e)}",
                status_code=500,
                error_type="InternalServerError",
                headers=headers
            )
