"""
Rate-limited transport for hyperate.

RateLimitedTransport is a Transport decorator: every request waits for a
token from a shared Limiter before it is handed to the wrapped transport,
and the round trip's outcome can then be inspected by a ResponseHook.

The built-in RateLimitHeaderHook closes the loop with the server: it reads
the `RateLimit-Remaining` and `RateLimit-Reset` response headers
(draft-polli-ratelimit-headers-02) and retunes the limiter so the remaining
quota is spread evenly over the time left in the window.

Available implementations:
    - RateLimitedTransport: Decorator that gates requests through a Limiter.
    - RateLimitHeaderHook: Adapts the limiter rate from rate-limit headers.
    - CallableResponseHook: Adapts a plain function to the ResponseHook interface.

Options (applied in order, later ones win):
    - with_response_hook(hook): Install a custom response hook.
    - with_rate_limit_header_check(): Install a RateLimitHeaderHook.
    - with_max_wait_time(seconds): Bound how long a request may wait for admission.

Example:
    >>> from hyperate import Limiter, RateLimitedTransport, RequestsTransport
    >>> from hyperate import with_rate_limit_header_check
    >>> transport = RateLimitedTransport(
    ...     RequestsTransport(),
    ...     Limiter(rate=10.0, burst=5),
    ...     with_rate_limit_header_check(),
    ... )
    >>> response = transport.get("https://api.example.com/v1/items")
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, override

import requests

from hyperate._context import RequestContext
from hyperate._http import HttpRequest, Transport
from hyperate._limiter import Limiter

if TYPE_CHECKING:
    from hyperate._config import RateLimitConfig

logger = logging.getLogger(__name__)

DEFAULT_REMAINING_HEADER = "RateLimit-Remaining"
DEFAULT_RESET_HEADER = "RateLimit-Reset"

# Header values above a signed 64-bit integer are rejected as out of range.
_MAX_HEADER_VALUE = 2**63 - 1
_MAX_HEADER_DIGITS = len(str(_MAX_HEADER_VALUE))


# =============================================================================
# Exceptions
# =============================================================================


class HeaderParseError(ValueError):
    """
    Raised when a rate-limit response header is present but malformed.

    A response whose rate-limit metadata cannot be parsed is not trusted for
    adaptation, so it is replaced by this error instead of being returned.
    The discarded response stays reachable through `response` for callers
    that want to inspect it.

    Attributes:
        header: Name of the offending header.
        value: Raw header value as received.
        response: The discarded HTTP response.

    Example:
        >>> try:
        ...     transport.get(url)
        ... except HeaderParseError as e:
        ...     print(f"Bad {e.header}: {e.value!r}")
    """

    def __init__(self, header: str, value: str, response: requests.Response | None = None):
        self.header = header
        self.value = value
        self.response = response
        super().__init__(
            f"Failed to parse rate limit header {header}: {value!r} is not a non-negative integer"
        )


# =============================================================================
# Response Hooks
# =============================================================================


class ResponseHook(ABC):
    """
    Post-response hook run by RateLimitedTransport after every round trip.

    Receives the round trip's outcome as a `(response, error)` pair, exactly
    one of which is set. The value returned becomes the result of `send()`;
    raising makes `send()` raise. A hook handed an error must re-raise that
    same error unless it deliberately substitutes another outcome.

    Example:
        >>> class LogStatusHook(ResponseHook):
        ...     def __call__(self, response, error):
        ...         if error is not None:
        ...             raise error
        ...         print(response.status_code)
        ...         return response
    """

    @abstractmethod
    def __call__(
        self,
        response: requests.Response | None,
        error: requests.RequestException | None,
    ) -> requests.Response:
        """
        Inspect or transform the outcome of a round trip.

        Args:
            response: The HTTP response, or None if the round trip failed.
            error: The transport error, or None if a response was received.

        Returns:
            The response to hand back to the caller.

        Raises:
            requests.RequestException: The original error, passed through.
            Exception: Any error the hook substitutes for the response.
        """
        pass


ResponseHookFunc = Callable[
    [requests.Response | None, requests.RequestException | None],
    requests.Response,
]


class CallableResponseHook(ResponseHook):
    """ResponseHook that delegates to a plain function with the same signature."""

    def __init__(self, fn: ResponseHookFunc):
        assert fn is not None, "Hook function cannot be None."
        assert callable(fn), "Hook function must be callable."
        self.fn = fn

    @override
    def __call__(
        self,
        response: requests.Response | None,
        error: requests.RequestException | None,
    ) -> requests.Response:
        return self.fn(response, error)


class RateLimitHeaderHook(ResponseHook):
    """
    Retunes a Limiter from the server's rate-limit response headers.

    For each successful response carrying both headers, sets the limiter
    rate to `remaining / reset` requests per second, spreading the quota the
    server reports as left evenly over the seconds until it resets.

    - Transport errors pass through untouched; headers are not read.
    - Missing headers (either one) leave the rate and the response alone.
    - A reset window of 0 leaves the rate unchanged.
    - A header that is not a non-negative integer raises HeaderParseError
      and the limiter is not touched.

    The division is fractional by default. With `integer_division=True` the
    rate is truncated (`remaining // reset`), which can yield 0 and stall the
    limiter until the next adaptation.

    Example:
        >>> limiter = Limiter(rate=10.0, burst=5)
        >>> hook = RateLimitHeaderHook(limiter)
        >>> # RateLimit-Remaining: 100, RateLimit-Reset: 50
        >>> hook(response, None)
        >>> limiter.rate
        2.0

    Args:
        limiter: The limiter to retune. If None, the hook passes everything through.
        remaining_header: Header carrying the remaining request quota.
        reset_header: Header carrying the seconds until the quota resets.
        integer_division: Truncate the computed rate to a whole number.
    """

    def __init__(
        self,
        limiter: Limiter | None,
        remaining_header: str = DEFAULT_REMAINING_HEADER,
        reset_header: str = DEFAULT_RESET_HEADER,
        integer_division: bool = False,
    ):
        assert remaining_header, "remaining_header cannot be empty."
        assert reset_header, "reset_header cannot be empty."

        self.limiter = limiter
        self.remaining_header = remaining_header
        self.reset_header = reset_header
        self.integer_division = integer_division

    @override
    def __call__(
        self,
        response: requests.Response | None,
        error: requests.RequestException | None,
    ) -> requests.Response:
        """
        Adapt the limiter rate from the response headers.

        Returns:
            The original response.

        Raises:
            requests.RequestException: The original transport error, unchanged.
            HeaderParseError: If a rate-limit header is malformed.
        """
        if error is not None:
            raise error

        assert response is not None, "Either response or error must be provided."

        if self.limiter is None:
            return response

        remaining_value = response.headers.get(self.remaining_header)
        reset_value = response.headers.get(self.reset_header)

        # Both headers are needed to derive a rate
        if not remaining_value or not reset_value:
            return response

        remaining = self._parse_header(self.remaining_header, remaining_value, response)
        reset = self._parse_header(self.reset_header, reset_value, response)

        if reset > 0:
            new_rate = remaining // reset if self.integer_division else remaining / reset
            self.limiter.set_rate(new_rate)
            if new_rate == 0:
                logger.warning(
                    f"⚠️ Rate limit adapted to 0 req/s ({self.remaining_header}={remaining}, "
                    f"{self.reset_header}={reset}). Requests will wait until the next adaptation."
                )
            else:
                logger.debug(
                    f"Rate limit adapted to {new_rate:.3f} req/s "
                    f"({self.remaining_header}={remaining}, {self.reset_header}={reset})"
                )

        return response

    @staticmethod
    def _parse_header(name: str, value: str, response: requests.Response) -> int:
        """
        Parse a rate-limit header value as a non-negative 64-bit integer.

        Raises:
            HeaderParseError: If the value is not made of ASCII digits only,
                or is too large to fit a signed 64-bit integer.
        """
        text = value.strip()
        if not (text.isascii() and text.isdigit()):
            logger.warning(f"⚠️ Rejecting response with malformed rate limit header {name}: {value!r}")
            raise HeaderParseError(header=name, value=value, response=response)

        significant = text.lstrip("0")
        if len(significant) > _MAX_HEADER_DIGITS or int(significant or "0") > _MAX_HEADER_VALUE:
            logger.warning(f"⚠️ Rejecting response with out-of-range rate limit header {name}: {value!r}")
            raise HeaderParseError(header=name, value=value, response=response)
        return int(significant or "0")


# =============================================================================
# Rate-Limited Decorator
# =============================================================================


class RateLimitedTransport(Transport):
    """
    Transport decorator that gates every request through a token bucket.

    For each request:
    1. Waits on the limiter using the request's context (FIFO, cancellable).
       If the context ends first, a CancellationError is raised and the
       request is never sent.
    2. Delegates the request to the wrapped transport.
    3. Passes the `(response, error)` outcome through the response hook, if
       any; otherwise returns the response or re-raises the error unchanged.

    Exactly one token is consumed per admitted request. The limiter and the
    delegate are shared, not owned: several transports may use one limiter,
    and closing resources stays with the caller.

    This decorator is thread-safe and can be used with concurrent requests.

    Example:
        >>> transport = RateLimitedTransport(
        ...     RequestsTransport(),
        ...     Limiter(rate=10.0, burst=5),
        ...     with_rate_limit_header_check(),
        ...     with_max_wait_time(30.0),
        ... )

    Args:
        delegate: The underlying transport to delegate requests to.
        limiter: The token bucket every request must pass.
        *options: TransportOption callables, applied in order.
    """

    def __init__(
        self,
        delegate: Transport,
        limiter: Limiter,
        *options: TransportOption,
    ):
        """
        Initialize the rate-limited transport.

        Raises:
            AssertionError: If any parameter is invalid.
        """
        assert delegate is not None, "Delegate transport is required."
        assert isinstance(delegate, Transport), "delegate must be a Transport instance."
        assert limiter is not None, "Limiter is required."

        self._delegate = delegate
        self._limiter = limiter
        self._response_hook: ResponseHook | None = None
        self._max_wait_time: float | None = None

        for option in options:
            option(self)

    @property
    def delegate(self) -> Transport:
        """The wrapped transport."""
        return self._delegate

    @property
    def limiter(self) -> Limiter:
        """The shared token bucket."""
        return self._limiter

    @property
    def response_hook(self) -> ResponseHook | None:
        """The active response hook, if any."""
        return self._response_hook

    @property
    def max_wait_time(self) -> float | None:
        """Upper bound in seconds on the admission wait, or None for unbounded."""
        return self._max_wait_time

    @override
    def send(self, request: HttpRequest) -> requests.Response:
        """
        Acquire a token, delegate the request, then run the response hook.

        Args:
            request: The request to send, with its cancellation context.

        Returns:
            The HTTP response (as returned by the response hook, if any).

        Raises:
            CancellationError: If the context ends before a token is granted.
            requests.RequestException: If the wrapped transport fails.
            HeaderParseError: If the rate-limit header hook rejects the response.
        """
        self._acquire_token(request.context)

        if self._response_hook is None:
            return self._delegate.send(request)

        try:
            response = self._delegate.send(request)
        except requests.RequestException as e:
            return self._response_hook(None, e)

        return self._response_hook(response, None)

    def _acquire_token(self, context: RequestContext) -> None:
        """
        Wait for admission, bounded by max_wait_time when configured.

        Raises:
            CancellationError: If the context (or the admission timeout) ends first.
        """
        if self._max_wait_time is None:
            self._limiter.wait(context)
            return

        with RequestContext.with_timeout(self._max_wait_time, parent=context) as admission:
            self._limiter.wait(admission)


# =============================================================================
# Options
# =============================================================================


TransportOption = Callable[[RateLimitedTransport], None]


def with_response_hook(hook: ResponseHook | ResponseHookFunc) -> TransportOption:
    """
    Install a custom response hook, replacing any hook set by an earlier option.

    Args:
        hook: A ResponseHook, or a function `(response, error) -> response`.
    """
    assert hook is not None, "hook cannot be None."
    resolved = hook if isinstance(hook, ResponseHook) else CallableResponseHook(hook)

    def apply(transport: RateLimitedTransport) -> None:
        transport._response_hook = resolved

    return apply


def with_rate_limit_header_check(
    remaining_header: str = DEFAULT_REMAINING_HEADER,
    reset_header: str = DEFAULT_RESET_HEADER,
    integer_division: bool = False,
) -> TransportOption:
    """
    Install a RateLimitHeaderHook bound to the transport's limiter.

    Replaces any hook set by an earlier option.

    See: https://www.ietf.org/archive/id/draft-polli-ratelimit-headers-02.html
    """

    def apply(transport: RateLimitedTransport) -> None:
        transport._response_hook = RateLimitHeaderHook(
            transport.limiter,
            remaining_header=remaining_header,
            reset_header=reset_header,
            integer_division=integer_division,
        )

    return apply


def with_max_wait_time(max_wait_time: float | None) -> TransportOption:
    """
    Bound how long a request may wait for admission.

    A request whose own context has an earlier deadline keeps that deadline.
    Exceeding the bound raises DeadlineExceededError.

    Args:
        max_wait_time: Seconds to wait at most (> 0), or None for no bound.
    """
    assert max_wait_time is None or max_wait_time > 0, "max_wait_time must be > 0 or None."

    def apply(transport: RateLimitedTransport) -> None:
        transport._max_wait_time = max_wait_time

    return apply


# =============================================================================
# Factory
# =============================================================================


def create_rate_limited_transport(
    delegate: Transport,
    *options: TransportOption,
    config: RateLimitConfig | None = None,
) -> RateLimitedTransport:
    """
    Build a Limiter and a RateLimitedTransport from configuration.

    Options derived from the config are applied first, so explicit `options`
    override them.

    Args:
        delegate: The underlying transport.
        *options: Extra TransportOption callables.
        config: Rate limit settings. Defaults to `HYPERATE.config.rate_limit`.

    Returns:
        The configured RateLimitedTransport.

    Example:
        >>> transport = create_rate_limited_transport(
        ...     RequestsTransport(),
        ...     config=RateLimitConfig(rate=5.0, burst=2, header_adaptation=True),
        ... )
    """
    if config is None:
        from hyperate._config import HYPERATE

        config = HYPERATE.config.rate_limit

    config.validate()

    configured: list[TransportOption] = [with_max_wait_time(config.max_wait_time)]
    if config.header_adaptation:
        configured.append(
            with_rate_limit_header_check(
                remaining_header=config.remaining_header,
                reset_header=config.reset_header,
                integer_division=config.integer_division,
            )
        )

    return RateLimitedTransport(
        delegate,
        Limiter(rate=config.rate, burst=config.burst),
        *configured,
        *options,
    )
