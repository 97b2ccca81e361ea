from typing import Any, Dict, Optional


class DispatchError(Exception):
    """Base exception for dispatch failures.

    Every failed attempt produces one of these. ``retryable`` is the single
    bit the retry scheduler looks at; ``body`` keeps whatever structured
    payload the remote service sent back.
    """
    retryable = False

    def __init__(
        self,
        message: str,
        retryable: Optional[bool] = None,
        status_code: Optional[int] = None,
        body: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        self.status_code = status_code
        self.body = dict(body) if body else {}
        super().__init__(message)

    @property
    def noretry(self) -> bool:
        return not self.retryable

    def to_dict(self) -> Dict[str, Any]:
        """Payload shape handed to callbacks"""
        data = dict(self.body)
        data["msg"] = self.message
        if not self.retryable:
            data["noretry"] = True
        return data


class NoRouteError(DispatchError):
    """No endpoint is known for the logical name"""
    def __init__(self, service_name: str):
        self.service_name = service_name
        super().__init__(f"Error - no route to {service_name} found", retryable=False)


class TransportFailure(DispatchError):
    """Connection refused, reset or otherwise never answered (status 0)"""
    retryable = True

    def __init__(self, message: str, body: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=0, body=body)


class ServerFailure(DispatchError):
    """Remote service failed but may succeed later"""
    retryable = True

    def __init__(self, message: str, status_code: int = 500, body: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=status_code, body=body)


class ClientFailure(DispatchError):
    """Request was rejected; sending it again will not help"""
    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=status_code, body=body)


class DispatchTimeoutError(DispatchError):
    """Attempt did not complete within its timeout"""
    retryable = True

    def __init__(self, service_name: str, timeout_duration: float):
        self.service_name = service_name
        self.timeout_duration = timeout_duration
        super().__init__(f"Request to {service_name} timed out after {timeout_duration} seconds")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["timeout"] = True
        return data


class RedirectSignal(DispatchError):
    """Status 300: the service lives somewhere else now"""
    def __init__(self, location: str, body: Optional[Dict[str, Any]] = None):
        self.location = location
        super().__init__(location, retryable=False, status_code=300, body=body)


class RouteResolutionError(DispatchError):
    """Routing table could not be fetched from the registry"""
    def __init__(self, service_name: str, cause: DispatchError):
        self.service_name = service_name
        self.cause = cause
        super().__init__(
            cause.message,
            retryable=cause.retryable,
            status_code=cause.status_code,
            body=cause.body,
        )


class InvalidConfigurationError(DispatchError):
    """Invalid dispatcher or call configuration"""
    def __init__(self, config_key: str, config_value: Any, message: str = None):
        self.config_key = config_key
        self.config_value = config_value
        error_message = message or f"Invalid configuration for key '{config_key}' with value '{config_value}'"
        super().__init__(error_message, retryable=False)
