"""
Mesh Dispatch

Resilient service-to-service calls by logical name.
Provides registry-backed service location, scheduled retries, response
classification and single-fire completion of transport callbacks.
"""

from .dispatcher import Dispatcher, ONCE_PREFIX
from .config import DispatcherConfig, CallOptions, ResolvedOptions, DEFAULT_RETRY_SCHEDULE
from .classifier import ResponseClassifier, ClassifierPolicy, classify, looks_like_markup, DEFAULT_MESSAGE
from .discovery import Endpoint, RouteRecord, RoutingTable, ServiceLocator
from .guard import CompletionGuard, CompletionLatch, call_once_only
from .retry import RetryScheduler, retry_delays
from .transport import (
    Transport,
    AiohttpTransport,
    TransportRequest,
    TransportResponse,
    TransportTimeout,
    TransportConnectionError,
)
from .metrics import MetricsCollector
from .exceptions import (
    DispatchError,
    NoRouteError,
    TransportFailure,
    ServerFailure,
    ClientFailure,
    DispatchTimeoutError,
    RedirectSignal,
    RouteResolutionError,
    InvalidConfigurationError,
)

__version__ = "0.1.0"

__all__ = [
    # Main entry point
    "Dispatcher",
    "DispatcherConfig",
    "CallOptions",
    "ResolvedOptions",
    "DEFAULT_RETRY_SCHEDULE",
    "ONCE_PREFIX",

    # Components
    "ResponseClassifier",
    "ClassifierPolicy",
    "classify",
    "looks_like_markup",
    "DEFAULT_MESSAGE",
    "Endpoint",
    "RouteRecord",
    "RoutingTable",
    "ServiceLocator",
    "CompletionGuard",
    "CompletionLatch",
    "call_once_only",
    "RetryScheduler",
    "retry_delays",
    "MetricsCollector",

    # Transport
    "Transport",
    "AiohttpTransport",
    "TransportRequest",
    "TransportResponse",
    "TransportTimeout",
    "TransportConnectionError",

    # Exceptions
    "DispatchError",
    "NoRouteError",
    "TransportFailure",
    "ServerFailure",
    "ClientFailure",
    "DispatchTimeoutError",
    "RedirectSignal",
    "RouteResolutionError",
    "InvalidConfigurationError",
]
