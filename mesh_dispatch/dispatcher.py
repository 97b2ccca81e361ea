import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Set, Tuple, Union

from .classifier import ResponseClassifier
from .config import CallOptions, DispatcherConfig, ResolvedOptions
from .discovery import Endpoint, RoutingTable, ServiceLocator
from .exceptions import (
    ClientFailure,
    DispatchError,
    InvalidConfigurationError,
    NoRouteError,
    RedirectSignal,
)
from .guard import CompletionGuard, CompletionLatch
from .metrics import MetricsCollector
from .retry import RetryScheduler
from .transport import AiohttpTransport, Transport, TransportRequest

logger = logging.getLogger(__name__)

ONCE_PREFIX = "once:"

DispatchCallback = Callable[[Optional[DispatchError], Any], None]


def split_target(name: str) -> Tuple[str, bool]:
    """Strip the ``once:`` prefix, reporting whether it was present"""
    if name.startswith(ONCE_PREFIX):
        return name[len(ONCE_PREFIX):], True
    return name, False


class Dispatcher:
    """
    Call other services by logical name.

    Names are resolved through a routing table fetched lazily from the
    registry (itself reached through this dispatcher under a reserved name),
    each call is retried on the configured schedule while failures are
    retryable, and every call ends in exactly one result or one
    ``DispatchError``.
    """

    def __init__(
        self,
        config: Optional[DispatcherConfig] = None,
        transport: Optional[Transport] = None,
        routing_table: Optional[RoutingTable] = None,
        metrics: Optional[MetricsCollector] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.config = config or DispatcherConfig()
        self.transport = transport or AiohttpTransport()
        self.routing_table = routing_table if routing_table is not None else RoutingTable()
        self.metrics = metrics or MetricsCollector(self.config.service_name)

        self.classifier = ResponseClassifier(self.config.policy, on_markup=self.metrics.record_markup_body)
        self.retry_scheduler = RetryScheduler(sleep=sleep, on_retry=self._record_retry)
        self.locator = ServiceLocator(
            self.routing_table,
            registry_endpoint=Endpoint(
                host=self.config.registry_host,
                port=self.config.registry_port,
                scheme=self.config.registry_scheme,
            ),
            fetch_routes=self._fetch_routes,
            registry_name=self.config.registry_name,
            route_host=self.config.route_host,
            route_scheme=self.config.route_scheme,
            on_bootstrap=self.metrics.record_bootstrap,
        )

        # Keeps callback-style calls alive until they deliver
        self._active_calls: Set[asyncio.Task] = set()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        await self.transport.start()

    async def close(self):
        for task in list(self._active_calls):
            task.cancel()
        await self.transport.close()

    async def bootstrap(self):
        """Fetch the routing table now instead of on the first call"""
        await self.locator.refresh()

    async def call(
        self,
        name: str,
        params: Any = None,
        options: Union[CallOptions, Dict[str, Any], None] = None,
    ) -> Any:
        """
        Call service ``name`` with ``params`` and return its response.

        Raises DispatchError (or a subclass) once retries are exhausted or the
        failure is terminal.
        """
        if not isinstance(name, str) or not name:
            raise InvalidConfigurationError("name", name, "A logical service name is required")

        start_time = time.time()
        target, once = split_target(name)

        try:
            call_options = options if isinstance(options, CallOptions) else CallOptions.parse(options)
            if once:
                call_options = call_options.model_copy(update={"once_only": True})
            resolved = call_options.resolve(self.config, has_payload=params is not None)
        except DispatchError as e:
            self.metrics.record_request(target, self.config.method)
            self.metrics.record_failure(target, str(e), time.time() - start_time, self.config.method)
            raise

        method = resolved.method
        self.metrics.record_request(target, method)
        try:
            payload = self._encode(params)
            result = await self.retry_scheduler.execute(
                lambda: self._attempt(target, payload, resolved),
                resolved.retry_schedule,
                operation_name=target,
                once_only=resolved.once_only,
            )
        except DispatchError as e:
            self.metrics.record_failure(target, str(e), time.time() - start_time, method)
            raise
        except asyncio.CancelledError:
            self.metrics.record_failure(target, "Call cancelled", time.time() - start_time, method)
            raise

        self.metrics.record_success(target, time.time() - start_time, method)
        return result

    def dispatch(
        self,
        target: Union[str, Dict[str, Any]],
        params: Any = None,
        callback: Optional[DispatchCallback] = None,
        **overrides,
    ) -> Optional[asyncio.Task]:
        """
        Callback flavour of ``call``.

        ``target`` is a logical name or a dict with a ``type`` key plus any of
        ``method``, ``retry``, ``timeout``, ``headers`` and ``once``.
        ``params`` may be omitted, in which case the callback can take its
        place. ``callback(error, result)`` runs exactly once; setup errors are
        delivered to it rather than raised.
        """
        if callback is None and callable(params):
            callback, params = params, None
        if callback is None:
            raise InvalidConfigurationError("callback", None, "dispatch() needs a callback")

        deliver = CompletionGuard(callback)
        try:
            name, options = self._normalize_target(target, overrides)
            task = asyncio.get_running_loop().create_task(self.call(name, params, options))
        except DispatchError as e:
            deliver(e, None)
            return None
        except Exception as e:
            error = InvalidConfigurationError("dispatch", target, f"Failed to dispatch: {e}")
            error.__cause__ = e
            deliver(error, None)
            return None

        self._active_calls.add(task)

        def _done(finished: asyncio.Task):
            self._active_calls.discard(finished)
            if finished.cancelled():
                deliver(DispatchError("Call cancelled", retryable=False), None)
            elif finished.exception() is not None:
                error = finished.exception()
                if not isinstance(error, DispatchError):
                    error = DispatchError(str(error), retryable=False)
                deliver(error, None)
            else:
                deliver(None, finished.result())

        task.add_done_callback(_done)
        return task

    # Convenience methods
    async def get(self, name: str, params: Any = None, **options) -> Any:
        return await self.call(name, params, CallOptions.parse(options, method="GET"))

    async def post(self, name: str, params: Any = None, **options) -> Any:
        return await self.call(name, params, CallOptions.parse(options, method="POST"))

    async def once(self, name: str, params: Any = None, **options) -> Any:
        """Send without retrying, for calls made on behalf of a caller who retries"""
        return await self.call(name, params, CallOptions.parse(options, once_only=True))

    # Management methods
    def get_routes(self) -> Dict[str, str]:
        return self.routing_table.snapshot()

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.get_metrics()

    def _normalize_target(self, target, overrides) -> Tuple[str, CallOptions]:
        if isinstance(target, dict):
            values = dict(target)
            name = values.pop("type", None)
            options = values
        else:
            name, options = target, {}

        if not isinstance(name, str) or not name:
            raise InvalidConfigurationError("type", name, "A logical service name is required")
        return name, CallOptions.parse(options, **overrides)

    def _encode(self, params: Any) -> Optional[bytes]:
        if params is None:
            return None
        try:
            return json.dumps(params).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise InvalidConfigurationError("params", type(params).__name__, f"Parameters are not JSON serializable: {e}")

    async def _attempt(self, name: str, payload: Optional[bytes], options: ResolvedOptions) -> Any:
        """One attempt: resolve, send, classify, following relocations"""
        endpoint = await self.locator.locate(name)
        if endpoint is None:
            raise NoRouteError(name)

        for _ in range(self.config.max_redirects + 1):
            value, error = await self._exchange(endpoint, name, payload, options)
            if error is None:
                return value
            if not isinstance(error, RedirectSignal):
                raise error
            endpoint = self.locator.relocate(name, error.location)

        raise ClientFailure(f"Too many redirects for {name}", status_code=300)

    async def _exchange(self, endpoint: Endpoint, name: str, payload: Optional[bytes], options: ResolvedOptions):
        request = TransportRequest(
            url=endpoint.url_for(name),
            method=options.method,
            headers=dict(options.headers),
            body=payload,
            timeout=options.timeout,
        )
        latch = CompletionLatch()
        self.transport.send(request, latch.signal)
        error, response = await latch.wait()
        return self.classifier.classify_outcome(error, response, service_name=name)

    async def _fetch_routes(self):
        return await self.call(self.config.registry_name)

    def _record_retry(self, target_service: str, attempt: int, delay: float, error: DispatchError):
        self.metrics.record_retry(target_service)
