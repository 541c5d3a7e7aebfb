"""
HTTP transport abstraction for hyperate.

A Transport performs one HTTP round trip: it takes an HttpRequest (which
carries its own RequestContext) and returns a `requests.Response`, raising
`requests.RequestException` on transport-level failures. Transports are
composable: decorators such as RateLimitedTransport wrap another Transport
and delegate to it.

Available implementations:
    - RequestsTransport: Sends requests over a `requests.Session`.
    - ConfiguredTransport: Builds a transport from the global HYPERATE config. Default.
    - RateLimitedTransport: Decorator that throttles requests (see hyperate._rate_limit).

Example:
    >>> from hyperate._http import RequestsTransport
    >>> transport = RequestsTransport()
    >>> response = transport.get("https://api.example.com/v1/items")

For rate limiting:
    >>> from hyperate import Limiter, RateLimitedTransport, RequestsTransport
    >>> transport = RateLimitedTransport(RequestsTransport(), Limiter(rate=10, burst=5))
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Self, override

import requests

from hyperate._context import RequestContext

logger = logging.getLogger(__name__)


# =============================================================================
# Request Model
# =============================================================================


@dataclass(frozen=True)
class HttpRequest:
    """
    An outgoing HTTP request together with its cancellation context.

    Attributes:
        method: HTTP method (GET, POST, ...).
        url: The full URL to request.
        headers: Additional headers to send.
        params: Query string parameters.
        json: JSON-serializable body (mutually exclusive with `data`).
        data: Raw body (form dict, bytes or str).
        timeout: Network timeout in seconds for the round trip itself.
            None uses the transport default.
        context: Deadline and cancel signal governing the request.
    """

    method: str
    url: str
    headers: dict[str, str] | None = None
    params: dict[str, Any] | None = None
    json: Any = None
    data: Any = None
    timeout: float | None = None
    context: RequestContext = field(default_factory=RequestContext.background)

    def __post_init__(self) -> None:
        assert self.method, "HTTP method cannot be empty."
        assert self.url, "URL cannot be empty."
        assert self.timeout is None or self.timeout > 0, "Timeout must be greater than 0 or None."
        assert self.json is None or self.data is None, "Only one of json or data can be set."

    def with_context(self, context: RequestContext) -> Self:
        """Return a copy of this request bound to another context."""
        return replace(self, context=context)


# =============================================================================
# Abstract Base Class
# =============================================================================


class Transport(ABC):
    """
    Abstract base class for HTTP transports.

    Subclasses implement `send()`; the `get()` and `post()` helpers build an
    HttpRequest and route it through `send()`, so decorators only need to
    override one method.

    Example:
        >>> class MyTransport(Transport):
        ...     def send(self, request):
        ...         return requests.request(request.method, request.url, timeout=request.timeout)
    """

    @abstractmethod
    def send(self, request: HttpRequest) -> requests.Response:
        """
        Execute one HTTP round trip.

        Args:
            request: The request to send, with its cancellation context.

        Returns:
            The HTTP response.

        Raises:
            requests.RequestException: If the HTTP request fails.
        """
        pass

    def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
        context: RequestContext | None = None,
    ) -> requests.Response:
        """
        Execute a GET request.

        Args:
            url: The full URL to request.
            headers: Additional headers to include.
            params: Query string parameters.
            timeout: Request timeout in seconds. None uses the transport default.
            context: Cancellation context. Defaults to a background context.

        Returns:
            The HTTP response.
        """
        return self.send(
            HttpRequest(
                method="GET",
                url=url,
                headers=headers,
                params=params,
                timeout=timeout,
                context=context or RequestContext.background(),
            )
        )

    def post(
        self,
        url: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        context: RequestContext | None = None,
    ) -> requests.Response:
        """
        Execute a POST request with JSON body.

        Args:
            url: The full URL to request.
            data: JSON-serializable data to send in the request body.
            headers: Additional headers to include.
            timeout: Request timeout in seconds. None uses the transport default.
            context: Cancellation context. Defaults to a background context.

        Returns:
            The HTTP response.
        """
        return self.send(
            HttpRequest(
                method="POST",
                url=url,
                headers=headers,
                json=data,
                timeout=timeout,
                context=context or RequestContext.background(),
            )
        )


# =============================================================================
# requests Implementation
# =============================================================================


class RequestsTransport(Transport):
    """
    Transport backed by a `requests.Session`.

    The request context is honoured up to the point the request leaves the
    process: a context that is already done raises its CancellationError, and
    the network timeout is capped at the time left before the context
    deadline. Once a request is on the wire it is not interrupted.

    Example:
        >>> transport = RequestsTransport(user_agent="my-app/1.0")
        >>> response = transport.post("https://api.example.com/v1/items", data={"name": "x"})

    Args:
        session: Session to use. If None, the transport creates and owns one.
        user_agent: Optional User-Agent header applied to every request.
        timeout: Default network timeout in seconds for requests that set none.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        user_agent: str | None = None,
        timeout: float = 30,
    ):
        assert timeout is not None, "Timeout cannot be None."
        assert timeout > 0, "Timeout must be greater than 0."

        self.timeout = timeout
        self._owns_session = session is None
        self.session = session or requests.Session()
        if user_agent:
            self.session.headers["User-Agent"] = user_agent

    @override
    def send(self, request: HttpRequest) -> requests.Response:
        """
        Send the request through the session.

        Raises:
            CancellationError: If the request context is already done.
            requests.RequestException: If the HTTP request fails.
        """
        request.context.raise_if_done()

        timeout = request.timeout or self.timeout
        remaining = request.context.remaining()
        if remaining is not None:
            if remaining <= 0:
                # Deadline passed since the check above
                request.context.raise_if_done()
            timeout = min(timeout, remaining)

        return self.session.request(
            request.method,
            request.url,
            headers=request.headers,
            params=request.params,
            json=request.json,
            data=request.data,
            timeout=timeout,
        )

    def close(self) -> None:
        """Close the underlying session if this transport created it."""
        if self._owns_session:
            self.session.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


# =============================================================================
# Configuration-Driven Implementation
# =============================================================================


class ConfiguredTransport(Transport):
    """
    Transport assembled from the global HYPERATE configuration.

    On the first request this transport builds a RequestsTransport using
    `HYPERATE.config.transport` and, when `HYPERATE.config.rate_limit.enabled`
    is set, wraps it in a RateLimitedTransport. Building lazily lets callers
    run `HYPERATE.configure()` after import.

    This implementation is thread-safe using double-checked locking pattern.

    Example:
        >>> from hyperate import HYPERATE, ConfiguredTransport
        >>> HYPERATE.configure(rate_limit={"rate": 5.0, "burst": 2, "header_adaptation": True})
        >>> transport = ConfiguredTransport()
        >>> response = transport.get("https://api.example.com/v1/items")

    Args:
        delegate: Optional base transport. Defaults to a RequestsTransport.
    """

    def __init__(self, delegate: Transport | None = None) -> None:
        self._base = delegate
        self._delegate: Transport | None = None
        self._lock = threading.Lock()

    def _get_delegate(self) -> Transport:
        """
        Get or create the delegate transport.

        Uses double-checked locking for thread-safe lazy initialization.
        """
        if self._delegate is None:
            with self._lock:
                if self._delegate is None:
                    self._delegate = self._create_delegate()
        return self._delegate

    def _create_delegate(self) -> Transport:
        from hyperate._config import HYPERATE

        config = HYPERATE.config
        base = self._base or RequestsTransport(
            user_agent=config.transport.user_agent,
            timeout=config.transport.request_timeout,
        )
        return self._apply_rate_limiting(base)

    def _apply_rate_limiting(self, transport: Transport) -> Transport:
        """
        Wrap the transport with rate limiting if configured.

        Returns:
            The transport wrapped with rate limiting, or the original transport
            if rate limiting is not enabled.
        """
        from hyperate._config import HYPERATE
        from hyperate._rate_limit import create_rate_limited_transport

        rl_config = HYPERATE.config.rate_limit

        if not rl_config.enabled:
            logger.debug("ConfiguredTransport: Rate limiting disabled. Using base transport.")
            return transport

        logger.debug(
            "ConfiguredTransport: Applying rate limiting "
            f"(rate={rl_config.rate}/s, burst={rl_config.burst}, "
            f"header_adaptation={rl_config.header_adaptation})."
        )
        return create_rate_limited_transport(transport, config=rl_config)

    @override
    def send(self, request: HttpRequest) -> requests.Response:
        """Delegate the request to the configured transport."""
        return self._get_delegate().send(request)
