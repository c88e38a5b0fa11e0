# ============================================================================
# MODULE CONTEXT - LOGGING
# ============================================================================
# STATUS: Shared Infrastructure - used by every layer
# PURPOSE: JSON-only structured logging for the FeatureServer query engine
# EXPORTS: ComponentType, LogLevel, LogContext, LoggerFactory, JSONFormatter, request_dimensions, log_exceptions
# INTERFACES: Dataclass models, enums, factory, JSON formatter, exception decorator
# DEPENDENCIES: enum, dataclasses, typing, datetime, logging, json, traceback (stdlib only!)
# SOURCE: Layers of the query engine define component types
# SCOPE: Foundation and factory layers for all logging in the application
# PATTERNS: JSON-only output, Azure Functions integration, Exception decorator pattern
# ENTRY_POINTS: LoggerFactory.create_logger(), @log_exceptions decorator
# INDEX: ComponentType:50, LogLevel:70, LogContext:95, JSONFormatter:140, LoggerFactory:191, request_dimensions:289, log_exceptions:304
# ============================================================================

"""
Unified Logger System

Structured JSON logging for the FeatureServer query engine. Every record is a
single JSON line on stdout so Application Insights (or any log shipper) can
parse it without a custom grammar.

Request correlation:
    Each getData request carries a correlation id. Loggers add it (and the
    client id / table token, when known) to ``custom_dimensions``.

Design Principles:
- Strong typing with dataclasses (stdlib only)
- Enum safety for categories
- Component-specific loggers
- No external dependencies
"""

from enum import Enum
from typing import Optional, Dict, Any, Tuple, Type
from datetime import datetime, timezone
from dataclasses import dataclass
import logging
import os
import sys
import json
import traceback
from functools import wraps


# ============================================================================
# COMPONENT TYPES - Aligned with engine layers
# ============================================================================

class ComponentType(Enum):
    """
    Component types aligned with the layers of the query engine.

    Each layer has specific logging needs and levels.
    """
    SERVICE = "service"        # Request orchestration (getData)
    BUILDER = "builder"        # SQL statement construction
    VALIDATOR = "validator"    # Request parameter validation
    REPOSITORY = "repository"  # Databricks session / statement execution
    CACHE = "cache"            # Field metadata cache
    LIMITER = "limiter"        # Rate limiting
    TRIGGER = "trigger"        # HTTP entry point layer
    ADAPTER = "adapter"        # Row -> GeoJSON translation


# ============================================================================
# LOG LEVELS - Standard Python levels with enum safety
# ============================================================================

class LogLevel(Enum):
    """
    Standard Python log levels as enum for type safety.
    """
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    def to_python_level(self) -> int:
        """Convert to Python logging level constant."""
        return getattr(logging, self.value)

    @classmethod
    def from_string(cls, level: str) -> 'LogLevel':
        """Create from string, case-insensitive."""
        return cls[level.upper()]


# ============================================================================
# LOG CONTEXT - Correlation and tracking
# ============================================================================

@dataclass
class LogContext:
    """
    Context for log correlation across one request.
    """
    correlation_id: Optional[str] = None  # Per-request UUID
    client_id: Optional[str] = None       # Rate-limit identity (IP or caller id)
    table: Optional[str] = None           # Target table token
    mode: Optional[str] = None            # query / count / ids / extent

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            k: v for k, v in {
                'correlation_id': self.correlation_id,
                'client_id': self.client_id,
                'table': self.table,
                'mode': self.mode
            }.items() if v is not None
        }

    def dimensions(self, **fields) -> Dict[str, Any]:
        """``extra`` mapping for one log call; ``fields`` are added on top."""
        dims = self.to_dict()
        dims.update({k: v for k, v in fields.items() if v is not None})
        return {'custom_dimensions': dims}


# ============================================================================
# COMPONENT CONFIGURATION - Per-component settings
# ============================================================================

@dataclass
class ComponentConfig:
    """
    Configuration for component-specific logging.
    """
    component_type: ComponentType
    log_level: LogLevel = LogLevel.INFO
    max_message_length: int = 4000


# ============================================================================
# JSON FORMATTER - Structured logging for Azure Functions
# ============================================================================

class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.
    Outputs logs in a format that Application Insights can automatically parse.
    """

    def __init__(self, max_message_length: int = 4000):
        super().__init__()
        self.max_message_length = max_message_length

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record as JSON.

        Args:
            record: Python LogRecord to format

        Returns:
            JSON string with structured log data
        """
        message = record.getMessage()
        if len(message) > self.max_message_length:
            message = message[:self.max_message_length] + '...'

        log_obj = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'message': message,
            'logger': record.name,
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if hasattr(record, 'custom_dimensions'):
            log_obj['customDimensions'] = record.custom_dimensions

        if record.exc_info:
            log_obj['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info)
            }

        return json.dumps(log_obj, default=str)


# ============================================================================
# LOGGER FACTORY - Creates component-specific loggers
# ============================================================================

class LoggerFactory:
    """
    Factory for creating component-specific loggers.

    Example:
        logger = LoggerFactory.create_logger(
            ComponentType.SERVICE,
            "FeatureServerService"
        )
        logger.info("Processing request")
    """

    # DEBUG_LOGGING=true lowers every component to DEBUG
    default_level = LogLevel.DEBUG if os.getenv('DEBUG_LOGGING', '').lower() == 'true' else LogLevel.INFO

    DEFAULT_CONFIGS = {
        ComponentType.SERVICE: ComponentConfig(ComponentType.SERVICE, log_level=default_level),
        ComponentType.BUILDER: ComponentConfig(ComponentType.BUILDER, log_level=default_level),
        ComponentType.VALIDATOR: ComponentConfig(ComponentType.VALIDATOR, log_level=default_level),
        # Repositories always log at DEBUG so executed SQL can be traced
        ComponentType.REPOSITORY: ComponentConfig(ComponentType.REPOSITORY, log_level=LogLevel.DEBUG),
        ComponentType.CACHE: ComponentConfig(ComponentType.CACHE, log_level=default_level),
        ComponentType.LIMITER: ComponentConfig(ComponentType.LIMITER, log_level=default_level),
        ComponentType.TRIGGER: ComponentConfig(ComponentType.TRIGGER, log_level=default_level),
        ComponentType.ADAPTER: ComponentConfig(ComponentType.ADAPTER, log_level=default_level)
    }

    @classmethod
    def create_logger(
        cls,
        component_type: ComponentType,
        name: str,
        config: Optional[ComponentConfig] = None
    ) -> logging.Logger:
        """
        Create a logger for a specific component.

        Request context is not bound to the logger (loggers are shared across
        concurrent requests); pass it per call with ``LogContext.dimensions()``.

        Args:
            component_type: Type of component
            name: Component name (e.g., "FeatureServerService")
            config: Optional custom configuration

        Returns:
            Configured Python logger
        """
        if config is None:
            config = cls.DEFAULT_CONFIGS.get(
                component_type,
                ComponentConfig(component_type=component_type)
            )

        logger_name = f"{component_type.value}.{name}"
        logger = logging.getLogger(logger_name)

        if isinstance(config.log_level, str):
            log_level = LogLevel.from_string(config.log_level).to_python_level()
        else:
            log_level = config.log_level.to_python_level()
        logger.setLevel(log_level)

        # Remove existing handlers to avoid duplicates
        logger.handlers.clear()

        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(log_level)
        handler.setFormatter(JSONFormatter(max_message_length=config.max_message_length))
        logger.addHandler(handler)

        # Allow propagation to Azure's root logger for Application Insights
        logger.propagate = True

        original_log = logger._log

        def log_with_context(level, msg, args, exc_info=None, extra=None, stack_info=False, stacklevel=1):
            """Wrapper to inject component identity as custom dimensions."""
            if extra is None:
                extra = {}

            custom_dims = {
                'component_type': component_type.value,
                'component_name': name
            }
            if 'custom_dimensions' in extra:
                custom_dims.update(extra['custom_dimensions'])

            extra['custom_dimensions'] = custom_dims

            original_log(level, msg, args, exc_info=exc_info, extra=extra,
                         stack_info=stack_info, stacklevel=stacklevel)

        logger._log = log_with_context

        return logger


def request_dimensions(correlation_id: Optional[str], **fields) -> Dict[str, Any]:
    """
    Build the ``extra`` mapping for a single log call.

    Example:
        logger.info(f"{cid}> Executing count query",
                    extra=request_dimensions(cid, table=table))
    """
    return LogContext(correlation_id=correlation_id).dimensions(**fields)


# ============================================================================
# EXCEPTION DECORATOR - Automatic exception logging with context
# ============================================================================

def log_exceptions(component_type: Optional[ComponentType] = None,
                   component_name: Optional[str] = None,
                   logger: Optional[logging.Logger] = None,
                   expected: Tuple[Type[BaseException], ...] = ()):
    """
    Decorator to automatically log exceptions with full context.

    Can be used in three ways:
    1. With existing logger: @log_exceptions(logger=my_logger)
    2. With component info: @log_exceptions(ComponentType.TRIGGER, "FeatureServerQueryTrigger")
    3. Simple: @log_exceptions() - uses function module and name

    Exceptions listed in ``expected`` (client errors the caller maps to a
    4xx response) are logged at WARNING without a traceback.

    The exception is always re-raised.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if logger:
                log = logger
            elif component_type and component_name:
                log = LoggerFactory.create_logger(component_type, component_name)
            else:
                log = LoggerFactory.create_logger(
                    ComponentType.SERVICE,
                    func.__module__ or "unknown"
                )

            try:
                return func(*args, **kwargs)
            except expected as e:
                log.warning(
                    f"{type(e).__name__} in {func.__name__}: {e}",
                    extra={
                        'custom_dimensions': {
                            'function_name': func.__name__,
                            'function_module': func.__module__,
                            'exception_type': type(e).__name__,
                            'exception_message': str(e)
                        }
                    }
                )
                raise
            except Exception as e:
                log.error(
                    f"Exception in {func.__name__}",
                    exc_info=True,
                    extra={
                        'custom_dimensions': {
                            'function_name': func.__name__,
                            'function_module': func.__module__,
                            'exception_type': type(e).__name__,
                            'exception_message': str(e),
                            'traceback': traceback.format_exc()
                        }
                    }
                )
                raise
        return wrapper
    return decorator
