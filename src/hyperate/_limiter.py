"""
Token bucket admission gate.

The Limiter holds up to `burst` tokens and refills them continuously at
`rate` tokens per second. Every request consumes one token; when the bucket
is empty, callers block in `wait()` until a token is refilled or their
RequestContext ends.

Key features:
- Thread-safe: all bucket state lives behind one threading.Condition
- FIFO admission: waiters are served in arrival order
- Live rate changes: `set_rate()` takes effect for every waiter at once
- Cooperative cancellation via RequestContext (deadline or explicit cancel)

Example:
    >>> from hyperate._limiter import Limiter
    >>> # 10 requests per second, bursts of up to 5
    >>> limiter = Limiter(rate=10.0, burst=5)
    >>> limiter.wait()  # blocks until a token is available
    >>> limiter.set_rate(2.0)  # slow down from now on
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque

from hyperate._context import DeadlineExceededError, RequestContext

logger = logging.getLogger(__name__)

# Rate that never throttles: the bucket is always full.
INF = math.inf


class Limiter:
    """
    Token bucket rate limiter with blocking, cancellable acquisition.

    The bucket starts full. Tokens accumulate at `rate` per second up to
    `burst`; a rate of `INF` admits every request immediately and a rate of
    0 admits only the tokens already in the bucket, after which waiters block
    until the rate is raised or their context ends.

    Args:
        rate: Refill rate in tokens (requests) per second. Must be >= 0.
        burst: Maximum number of tokens the bucket can hold. Must be > 0.

    Example:
        >>> limiter = Limiter(rate=10.0, burst=5)
        >>> with RequestContext.with_timeout(2.0) as ctx:
        ...     limiter.wait(ctx)
    """

    def __init__(self, rate: float, burst: int):
        """
        Initialize the Limiter with a full bucket.

        Raises:
            AssertionError: If any parameter is invalid.
        """
        assert rate is not None, "rate cannot be None."
        assert rate >= 0, "rate must be >= 0."
        assert burst is not None, "burst cannot be None."
        assert burst > 0, "burst must be greater than 0."

        self._rate = float(rate)
        self._burst = int(burst)
        self._tokens = float(burst)
        self._last_refill = time.monotonic()
        self._cond = threading.Condition()
        self._waiters: deque[object] = deque()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def rate(self) -> float:
        """Current refill rate in tokens per second."""
        with self._cond:
            return self._rate

    @property
    def burst(self) -> int:
        """Maximum number of tokens the bucket can hold."""
        with self._cond:
            return self._burst

    @property
    def tokens(self) -> float:
        """Tokens available right now, refilled up to the current instant."""
        with self._cond:
            self._refill(time.monotonic())
            return self._tokens

    # -------------------------------------------------------------------------
    # Tuning
    # -------------------------------------------------------------------------

    def set_rate(self, rate: float) -> None:
        """
        Change the refill rate.

        Tokens earned so far are credited at the old rate before the change,
        and all blocked waiters re-evaluate their wait against the new rate.

        Args:
            rate: New refill rate in tokens per second. Must be >= 0.
        """
        assert rate is not None, "rate cannot be None."
        assert rate >= 0, "rate must be >= 0."

        with self._cond:
            self._refill(time.monotonic())
            old_rate = self._rate
            self._rate = float(rate)
            self._cond.notify_all()

        if old_rate != rate:
            logger.debug(f"Limiter rate changed from {old_rate:.3f}/s to {rate:.3f}/s")

    def set_burst(self, burst: int) -> None:
        """
        Change the bucket capacity. Tokens above the new capacity are dropped.

        Args:
            burst: New maximum number of tokens. Must be > 0.
        """
        assert burst is not None, "burst cannot be None."
        assert burst > 0, "burst must be greater than 0."

        with self._cond:
            self._refill(time.monotonic())
            self._burst = int(burst)
            # Clamp tokens to maintain invariant: tokens <= burst
            self._tokens = min(self._tokens, float(self._burst))
            self._cond.notify_all()

    # -------------------------------------------------------------------------
    # Acquisition
    # -------------------------------------------------------------------------

    def allow(self) -> bool:
        """
        Take a token without blocking.

        Returns:
            True if a token was consumed, False if the bucket is empty or
            other callers are already queued in wait().
        """
        with self._cond:
            self._refill(time.monotonic())
            if self._waiters or self._tokens < 1.0:
                return False
            self._tokens -= 1.0
            return True

    def wait(self, context: RequestContext | None = None) -> None:
        """
        Block until a token is available, then consume it.

        Waiters are admitted in FIFO order. If the context's deadline would
        pass before this caller's turn at the current rate, the call fails at
        once instead of sleeping until the deadline.

        Args:
            context: Cancellation context. None waits without bound.

        Raises:
            ContextCanceledError: If the context is cancelled before admission.
            DeadlineExceededError: If the deadline passes, or would pass,
                before admission.
        """
        if context is None:
            context = RequestContext.background()

        context.raise_if_done()
        context.add_done_callback(self._wake_all)
        try:
            self._wait_for_turn(context)
        finally:
            context.remove_done_callback(self._wake_all)

    def _wait_for_turn(self, context: RequestContext) -> None:
        ticket = object()
        start_time = time.monotonic()

        with self._cond:
            self._refill(start_time)
            self._fail_fast_on_deadline(context, queued_ahead=len(self._waiters))
            self._waiters.append(ticket)
            try:
                while True:
                    context.raise_if_done()
                    self._refill(time.monotonic())

                    timeout: float | None = None
                    if self._waiters[0] is ticket:
                        if self._tokens >= 1.0:
                            self._tokens -= 1.0
                            waited = time.monotonic() - start_time
                            if waited > 0.001:
                                logger.debug(f"Limiter admitted request after waiting {waited:.3f}s")
                            return
                        timeout = self._time_until(1.0)

                    remaining = context.remaining()
                    if remaining is not None:
                        timeout = remaining if timeout is None else min(timeout, remaining)

                    self._cond.wait(timeout)
            finally:
                self._waiters.remove(ticket)
                self._cond.notify_all()

    def _fail_fast_on_deadline(self, context: RequestContext, queued_ahead: int) -> None:
        """Raise DeadlineExceededError if the caller cannot be admitted before its deadline."""
        remaining = context.remaining()
        if remaining is None:
            return

        wait_time = self._time_until(queued_ahead + 1.0)
        if wait_time is not None and wait_time > remaining:
            raise DeadlineExceededError(
                f"rate limiter wait of {wait_time:.3f}s would exceed context deadline "
                f"({remaining:.3f}s remaining)",
                deadline=context.deadline,
            )

    # -------------------------------------------------------------------------
    # Bucket arithmetic (callers hold self._cond)
    # -------------------------------------------------------------------------

    def _refill(self, now: float) -> None:
        if self._rate == INF:
            self._tokens = float(self._burst)
        else:
            elapsed_since_refill = max(0.0, now - self._last_refill)
            self._tokens = min(
                float(self._burst),
                self._tokens + elapsed_since_refill * self._rate
            )
        self._last_refill = now

    def _time_until(self, needed: float) -> float | None:
        """Seconds until `needed` tokens are in the bucket, or None if never at the current rate."""
        if self._tokens >= needed or self._rate == INF:
            return 0.0
        if self._rate <= 0:
            return None
        return (needed - self._tokens) / self._rate

    def _wake_all(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def __repr__(self) -> str:
        return f"Limiter(rate={self._rate!r}, burst={self._burst!r})"
