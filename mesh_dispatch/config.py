from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .classifier import ClassifierPolicy
from .exceptions import InvalidConfigurationError

DEFAULT_RETRY_SCHEDULE = [1.0, 5.0, 15.0, 25.0]

# Short spellings accepted wherever call options are given as keys
OPTION_ALIASES = {
    "retry": "retry_schedule",
    "once": "once_only",
}


def _check_schedule(schedule: Optional[List[float]]) -> Optional[List[float]]:
    if schedule is None:
        return schedule
    previous = None
    for checkpoint in schedule:
        if checkpoint < 0:
            raise ValueError("retry schedule entries must be non-negative")
        if previous is not None and checkpoint <= previous:
            raise ValueError("retry schedule must be strictly increasing")
        previous = checkpoint
    return list(schedule)


class DispatcherConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MESH_DISPATCH_", case_sensitive=False, extra="ignore")

    # Calling service identification
    service_name: str = Field(default="anonymous", description="Name of this service")

    # Registry location
    registry_name: str = Field(default="--routes", description="Reserved logical name of the registry")
    registry_scheme: str = Field(default="http")
    registry_host: str = Field(default="localhost")
    registry_port: int = Field(default=80)
    route_host: str = Field(default="localhost", description="Host every routing table entry maps to")
    route_scheme: str = Field(default="http", description="Scheme every routing table entry is reached over")

    # Call defaults
    method: str = Field(default="POST")
    retry_schedule: List[float] = Field(
        default_factory=lambda: list(DEFAULT_RETRY_SCHEDULE),
        description="Cumulative seconds after the first failure at which to try again",
    )
    timeout: float = Field(default=10.0, description="Per-attempt timeout in seconds")
    headers: Dict[str, str] = Field(default_factory=dict)

    # Classification
    policy: ClassifierPolicy = Field(default=ClassifierPolicy.STANDARD)
    max_redirects: int = Field(default=5, description="Relocations allowed within one attempt")

    @field_validator("retry_schedule")
    @classmethod
    def validate_retry_schedule(cls, value):
        return _check_schedule(value)

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @field_validator("method")
    @classmethod
    def normalize_method(cls, value: str) -> str:
        return value.upper()


class ResolvedOptions(BaseModel):
    """Call options with every default filled in"""
    method: str
    retry_schedule: List[float]
    timeout: float
    headers: Dict[str, str]
    once_only: bool


class CallOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    method: Optional[str] = Field(default=None, description="HTTP verb, defaults to the configured method")
    retry_schedule: Optional[List[float]] = Field(default=None, description="Empty list disables retries")
    timeout: Optional[float] = Field(default=None)
    headers: Dict[str, str] = Field(default_factory=dict)
    once_only: bool = Field(default=False, description="Send exactly once whatever the schedule says")

    @field_validator("retry_schedule")
    @classmethod
    def validate_retry_schedule(cls, value):
        return _check_schedule(value)

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @field_validator("method")
    @classmethod
    def normalize_method(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value

    @classmethod
    def parse(cls, data: Optional[Dict[str, Any]] = None, **overrides) -> "CallOptions":
        """
        Build options from keys, short spellings (``retry``, ``once``)
        included. Unknown keys and invalid values raise a terminal
        InvalidConfigurationError.
        """
        values: Dict[str, Any] = {}
        for source in (data or {}, {k: v for k, v in overrides.items() if v is not None}):
            for key, value in source.items():
                values[OPTION_ALIASES.get(key, key)] = value
        try:
            return cls(**values)
        except ValidationError as e:
            first = e.errors()[0]
            key = ".".join(str(part) for part in first.get("loc", ())) or "options"
            if first.get("type") == "extra_forbidden":
                raise InvalidConfigurationError(key, first.get("input"), f"Unknown call option '{key}'")
            raise InvalidConfigurationError(key, first.get("input"), f"Invalid call option '{key}': {first['msg']}")

    def resolve(self, config: DispatcherConfig, has_payload: bool = False) -> ResolvedOptions:
        headers: Dict[str, str] = {}
        if has_payload:
            headers["Content-Type"] = "application/json"
        if config.service_name:
            headers["X-Service-Name"] = config.service_name
        headers.update(config.headers)
        headers.update(self.headers)

        schedule = self.retry_schedule if self.retry_schedule is not None else config.retry_schedule
        return ResolvedOptions(
            method=self.method or config.method,
            retry_schedule=[] if self.once_only else list(schedule),
            timeout=self.timeout or config.timeout,
            headers=headers,
            once_only=self.once_only,
        )
