"""
Order sync engine: keeps a local DuckDB copy of remote orders current.

This package contains:
- gateway: Remote order API client with session handling
- sync_service: Incremental/historical orchestration, fan-out, failed retry
- importer, reconciler, checkpoint: Import, open/closed status, watermarks
- store: DuckDB persistence
- exceptions, validators, config: Shared plumbing
"""

# Import in dependency order
from ordersync.exceptions import (
    GatewayError,
    GatewayConnectionError,
    GatewayAuthError,
    GatewayDataError,
    OrderMappingError,
    SyncAlreadyRunningError,
    ValidationError,
)

from ordersync.validators import (
    validate_date_string,
    resolve_date_window,
    validate_batch_size,
)

from ordersync.config import config, ConfigurationError

__version__ = config.version

__all__ = [
    # Exceptions
    "GatewayError",
    "GatewayConnectionError",
    "GatewayAuthError",
    "GatewayDataError",
    "OrderMappingError",
    "SyncAlreadyRunningError",
    "ValidationError",
    "ConfigurationError",
    # Validators
    "validate_date_string",
    "resolve_date_window",
    "validate_batch_size",
    # Config
    "config",
]
