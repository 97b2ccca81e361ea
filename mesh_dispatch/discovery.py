import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError
from yarl import URL

from .exceptions import DispatchError, InvalidConfigurationError, RouteResolutionError

logger = logging.getLogger(__name__)

FetchRoutes = Callable[[], Awaitable[Any]]


class Endpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str
    port: Optional[int] = None
    scheme: str = "http"
    # Path prefix the service is mounted under, without a trailing slash
    path: str = ""

    def url_for(self, name: str) -> str:
        netloc = self.host if self.port is None else f"{self.host}:{self.port}"
        return f"{self.scheme}://{netloc}{self.path}/{name}"

    @classmethod
    def from_url(cls, location: str) -> "Endpoint":
        url = URL(location)
        if not url.host:
            raise InvalidConfigurationError("location", location, f"Cannot relocate to '{location}'")
        return cls(host=url.host, port=url.explicit_port, scheme=url.scheme or "http", path=url.path.rstrip("/"))


class RouteRecord(BaseModel):
    type: str
    port: int


def parse_routes(routes: Any) -> List[RouteRecord]:
    if not isinstance(routes, list):
        raise InvalidConfigurationError("routes", routes, "Registry did not return a list of routes")
    try:
        return [RouteRecord(**route) for route in routes]
    except (TypeError, ValidationError) as e:
        raise InvalidConfigurationError("routes", routes, f"Malformed routing table: {e}")


class RoutingTable:
    """
    Logical name to endpoint mapping shared by every call that uses it.

    Starts unpopulated. ``load`` fetches the registry's records at most once
    at a time: lookups that arrive while a fetch is in flight wait on that
    same fetch instead of starting their own. A failed fetch leaves the table
    unpopulated so the next lookup tries again.

    Relocations learnt from redirects are kept apart from the registry
    entries and take precedence over them.
    """

    def __init__(self):
        self._routes: Dict[str, Endpoint] = {}
        self._relocations: Dict[str, Endpoint] = {}
        self._populated = False
        self._load_task: Optional[asyncio.Task] = None
        self._load_lock: Optional[asyncio.Lock] = None

    @property
    def populated(self) -> bool:
        return self._populated

    @property
    def loading(self) -> bool:
        return self._load_task is not None and not self._load_task.done()

    def populate(self, records: Iterable[RouteRecord], host: str = "localhost", scheme: str = "http"):
        self._routes = {record.type: Endpoint(host=host, port=record.port, scheme=scheme) for record in records}
        self._populated = True

    def get(self, name: str) -> Optional[Endpoint]:
        if name in self._relocations:
            return self._relocations[name]
        return self._routes.get(name)

    def relocate(self, name: str, endpoint: Endpoint):
        self._relocations[name] = endpoint

    def snapshot(self) -> Dict[str, str]:
        merged = {**self._routes, **self._relocations}
        return {name: endpoint.url_for(name) for name, endpoint in merged.items()}

    def __len__(self):
        return len(self._routes)

    async def load(
        self,
        fetch_routes: FetchRoutes,
        host: str = "localhost",
        scheme: str = "http",
        force: bool = False,
        on_complete: Optional[Callable[[str], None]] = None,
    ):
        """Populate the table from ``fetch_routes``, sharing any fetch in flight"""
        # Lock is created lazily so it binds to the running loop
        if self._load_lock is None:
            self._load_lock = asyncio.Lock()
        async with self._load_lock:
            if self._populated and not force:
                return
            if self._load_task is None or self._load_task.done():
                self._load_task = asyncio.ensure_future(self._fetch(fetch_routes, host, scheme, on_complete))
            task = self._load_task
        await asyncio.shield(task)

    async def _fetch(self, fetch_routes: FetchRoutes, host: str, scheme: str, on_complete):
        try:
            records = parse_routes(await fetch_routes())
        except DispatchError as e:
            logger.error("Failed to fetch routing table: %s", e)
            if on_complete:
                on_complete("failure")
            raise

        self.populate(records, host=host, scheme=scheme)
        logger.info("Fetched routing table (%d routes)", len(records))
        if on_complete:
            on_complete("success")


class ServiceLocator:
    """Resolve logical names to endpoints through a RoutingTable"""

    def __init__(
        self,
        table: RoutingTable,
        registry_endpoint: Endpoint,
        fetch_routes: FetchRoutes,
        registry_name: str = "--routes",
        route_host: str = "localhost",
        route_scheme: str = "http",
        on_bootstrap: Optional[Callable[[str], None]] = None,
    ):
        self.table = table
        self.registry_endpoint = registry_endpoint
        self.registry_name = registry_name
        self.route_host = route_host
        self.route_scheme = route_scheme
        self._fetch_routes = fetch_routes
        self._on_bootstrap = on_bootstrap

    async def locate(self, name: str) -> Optional[Endpoint]:
        """
        Endpoint for ``name``, or None when the registry does not know it.

        The registry's own name never touches the table. Raises
        RouteResolutionError if the table had to be fetched and that failed.
        """
        if name == self.registry_name:
            return self.registry_endpoint

        if self.table.populated:
            return self.table.get(name)

        try:
            await self.table.load(self._fetch_routes, host=self.route_host, scheme=self.route_scheme, on_complete=self._on_bootstrap)
        except DispatchError as e:
            raise RouteResolutionError(name, e) from e
        return self.table.get(name)

    async def refresh(self):
        """Fetch the routing table again"""
        await self.table.load(self._fetch_routes, host=self.route_host, scheme=self.route_scheme, force=True, on_complete=self._on_bootstrap)

    def relocate(self, name: str, location: str) -> Endpoint:
        endpoint = Endpoint.from_url(location)
        self.table.relocate(name, endpoint)
        logger.info("Service %s relocated to %s", name, location)
        return endpoint
