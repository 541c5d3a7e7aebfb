"""
hyperate: outbound HTTP request throttling for Python.

Wraps an HTTP transport with a token-bucket rate limiter, optionally
retuning the limiter from the `RateLimit-Remaining` / `RateLimit-Reset`
headers servers send back.

Quick Start:
    >>> from hyperate import Limiter, RateLimitedTransport, RequestsTransport
    >>> from hyperate import with_rate_limit_header_check
    >>> # 10 requests per second, bursts of up to 5
    >>> transport = RateLimitedTransport(
    ...     RequestsTransport(),
    ...     Limiter(rate=10.0, burst=5),
    ...     with_rate_limit_header_check(),
    ... )
    >>> response = transport.get("https://api.example.com/v1/items")

Cancellation:
    >>> from hyperate import RequestContext
    >>> with RequestContext.with_timeout(2.0) as ctx:
    ...     transport.get("https://api.example.com/v1/items", context=ctx)

Global Configuration:
    >>> from hyperate import HYPERATE, ConfiguredTransport
    >>> HYPERATE.configure(rate_limit={"rate": 5.0, "burst": 2, "header_adaptation": True})
    >>> transport = ConfiguredTransport()

Main Classes:
    - Limiter: Token bucket admission gate (FIFO, cancellable, live rate).
    - RateLimitedTransport: Transport decorator gating requests through a Limiter.
    - RateLimitHeaderHook: Response hook adapting the rate from RateLimit-* headers.
    - ResponseHook: Abstract base class for post-response hooks.
    - RequestContext: Deadline and cancel signal carried by each request.

HTTP Transport:
    - Transport: Abstract base class for HTTP transports.
    - HttpRequest: Outgoing request with its RequestContext.
    - RequestsTransport: Transport backed by requests.Session.
    - ConfiguredTransport: Transport assembled from HYPERATE.config.

Errors:
    - CancellationError: Request abandoned before admission (never sent).
    - ContextCanceledError: The context was cancelled explicitly.
    - DeadlineExceededError: The context deadline passed or would pass before admission.
    - HeaderParseError: A rate-limit header was present but malformed.

Configuration:
    - HYPERATE: Global singleton for configuration.
    - HyperateConfig, RateLimitConfig, TransportConfig: Configuration dataclasses.
    - ConfigEnvVarError, ConfigValidationError: Configuration errors.
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("hyperate")

from hyperate._config import (
    HYPERATE,
    ConfigEnvVarError,
    ConfigValidationError,
    HyperateConfig,
    RateLimitConfig,
    TransportConfig,
)
from hyperate._context import (
    CancellationError,
    ContextCanceledError,
    DeadlineExceededError,
    RequestContext,
)
from hyperate._http import (
    ConfiguredTransport,
    HttpRequest,
    RequestsTransport,
    Transport,
)
from hyperate._limiter import INF, Limiter
from hyperate._rate_limit import (
    CallableResponseHook,
    HeaderParseError,
    RateLimitedTransport,
    RateLimitHeaderHook,
    ResponseHook,
    TransportOption,
    create_rate_limited_transport,
    with_max_wait_time,
    with_rate_limit_header_check,
    with_response_hook,
)

__all__ = [
    "__version__",
    # Configuration
    "HYPERATE",
    "HyperateConfig",
    "RateLimitConfig",
    "TransportConfig",
    "ConfigEnvVarError",
    "ConfigValidationError",
    # Context
    "RequestContext",
    "CancellationError",
    "ContextCanceledError",
    "DeadlineExceededError",
    # Limiter
    "Limiter",
    "INF",
    # HTTP Transport
    "Transport",
    "HttpRequest",
    "RequestsTransport",
    "ConfiguredTransport",
    # Rate Limiting
    "RateLimitedTransport",
    "ResponseHook",
    "CallableResponseHook",
    "RateLimitHeaderHook",
    "HeaderParseError",
    "TransportOption",
    "create_rate_limited_transport",
    "with_response_hook",
    "with_rate_limit_header_check",
    "with_max_wait_time",
]
