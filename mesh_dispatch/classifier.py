"""
Response classification.

Turns whatever came back from one transport exchange into a value or a
``DispatchError`` carrying the retry verdict. Two rule sets exist:

``standard``
    200 succeeds; 0 (connection failure) and 500 are retryable; every other
    status is terminal.

``redirect``
    200 succeeds; 300 relocates the service (the body message is the new
    location) and resends; 400-499 are terminal; 0 and every remaining status
    are retryable.
"""

import json
import logging
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from .exceptions import (
    ClientFailure,
    DispatchError,
    DispatchTimeoutError,
    RedirectSignal,
    ServerFailure,
    TransportFailure,
)
from .transport import TransportTimeout

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE = "Failed to complete. Please try again after some time."

MARKUP_MARKERS = (
    "<html",
    "</html>",
    "<head ",
    "</head>",
    "<body",
    "</body>",
    "<pre",
    "</pre>",
    "<span>",
    "</span>",
    "<div>",
    "</div>",
)
MARKUP_THRESHOLD = 3


class ClassifierPolicy(str, Enum):
    STANDARD = "standard"
    REDIRECT = "redirect"


def looks_like_markup(message: Any) -> bool:
    """Guess whether an error message is really an HTML error page"""
    if not isinstance(message, str):
        return False
    lowered = message.lower()
    hits = sum(1 for marker in MARKUP_MARKERS if marker in lowered)
    return hits >= MARKUP_THRESHOLD


def parse_body(raw_body: Optional[str]) -> Any:
    if not raw_body:
        return {"msg": DEFAULT_MESSAGE}
    try:
        return json.loads(raw_body)
    except ValueError:
        return {"msg": raw_body}


def classify(
    status_code: int,
    raw_body: Optional[str],
    policy: ClassifierPolicy = ClassifierPolicy.STANDARD,
    on_markup: Optional[Callable[[str], None]] = None,
) -> Tuple[Any, Optional[DispatchError]]:
    """Classify one response into ``(value, error)``; exactly one is set"""
    parsed = parse_body(raw_body)
    if status_code == 200:
        return parsed, None

    if isinstance(parsed, dict):
        body = dict(parsed)
        message = body.pop("msg", None)
        if message is None:
            message = raw_body or DEFAULT_MESSAGE
    else:
        body = {}
        message = raw_body

    if not isinstance(message, str):
        message = json.dumps(message)

    if looks_like_markup(message):
        logger.error("Markup error page received (status %s): %s", status_code, message)
        if on_markup:
            on_markup(message)
        message = DEFAULT_MESSAGE

    return None, _error_for_status(status_code, message, body, policy)


def _error_for_status(status_code, message, body, policy) -> DispatchError:
    if status_code == 0:
        return TransportFailure(message, body=body)

    if policy == ClassifierPolicy.REDIRECT:
        if status_code == 300:
            return RedirectSignal(message, body=body)
        if 400 <= status_code < 500:
            return ClientFailure(message, status_code=status_code, body=body)
        return ServerFailure(message, status_code=status_code, body=body)

    if status_code == 500:
        return ServerFailure(message, status_code=status_code, body=body)
    return ClientFailure(message, status_code=status_code, body=body)


class ResponseClassifier:
    """Classifier bound to one policy, used by the dispatcher"""

    def __init__(self, policy: ClassifierPolicy = ClassifierPolicy.STANDARD, on_markup: Optional[Callable[[str], None]] = None):
        self.policy = ClassifierPolicy(policy)
        self.on_markup = on_markup

    def classify(self, status_code: int, raw_body: Optional[str]) -> Tuple[Any, Optional[DispatchError]]:
        return classify(status_code, raw_body, self.policy, self.on_markup)

    def classify_outcome(
        self,
        error: Optional[BaseException],
        response: Any,
        service_name: str = "service",
    ) -> Tuple[Any, Optional[DispatchError]]:
        """Normalize a raw transport outcome.

        ``error`` is whatever the transport reported instead of a response:
        a timeout, a connection failure, or an already classified error.
        """
        if error is None:
            return self.classify(response.status, response.body)
        if isinstance(error, TransportTimeout):
            return None, DispatchTimeoutError(service_name, error.timeout_duration)
        if isinstance(error, DispatchError):
            return None, error
        return self.classify(0, str(error) or None)
