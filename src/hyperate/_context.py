"""
Cancellation contexts for outbound requests.

A RequestContext travels with every request and tells the code waiting on
its behalf when to give up: either a deadline (monotonic clock) passes or
someone cancels it explicitly. Contexts form a tree: cancelling a parent
cancels every child derived from it, and a child's deadline never outlives
its parent's.

Example:
    >>> from hyperate._context import RequestContext
    >>> with RequestContext.with_timeout(5.0) as ctx:
    ...     transport.get("https://api.example.com/items", context=ctx)

    >>> # Explicit cancellation from another thread
    >>> ctx = RequestContext.background().with_cancel()
    >>> threading.Timer(1.0, ctx.cancel).start()
"""

from __future__ import annotations

import threading
import time
import weakref
from collections.abc import Callable
from typing import Self


# =============================================================================
# Exceptions
# =============================================================================


class CancellationError(Exception):
    """
    Base exception for requests abandoned before they were admitted.

    Raised when the caller's context ends (explicit cancel or deadline)
    while the request is still waiting for the rate limiter. A request
    failing with this error was never sent.

    Example:
        >>> try:
        ...     transport.get(url, context=ctx)
        ... except CancellationError as e:
        ...     print(f"Gave up before sending: {e}")
    """

    pass


class ContextCanceledError(CancellationError):
    """Raised when the context was cancelled explicitly."""

    def __init__(self, message: str = "context canceled"):
        super().__init__(message)


class DeadlineExceededError(CancellationError):
    """
    Raised when the context deadline passed, or would pass before admission.

    Attributes:
        deadline: The monotonic deadline of the context, if known.
    """

    def __init__(self, message: str = "context deadline exceeded", deadline: float | None = None):
        self.deadline = deadline
        super().__init__(message)


# =============================================================================
# Context
# =============================================================================


class RequestContext:
    """
    Deadline plus cancel signal for a single request (or a group of them).

    Deadlines are expressed on the `time.monotonic()` clock. Done-callbacks
    fire once on explicit cancellation (including cancellation inherited from
    a parent); deadline expiry is observed lazily by `error()` and by waiters
    that bound their sleep with `remaining()`.

    Contexts are thread-safe and can be shared across threads. A parent
    holds its children weakly, so a derived context that is dropped without
    being cancelled is released by garbage collection.

    Args:
        deadline: Absolute monotonic deadline, or None for no deadline.
        parent: Optional parent context. Cancellation propagates from parent
            to child, and the effective deadline is the earlier of both.
    """

    def __init__(self, deadline: float | None = None, parent: RequestContext | None = None):
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)

        self._deadline = deadline
        self._parent = parent
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._error: CancellationError | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._children: weakref.WeakSet[RequestContext] = weakref.WeakSet()

        if parent is not None:
            parent._add_child(self)

    # -------------------------------------------------------------------------
    # Factories
    # -------------------------------------------------------------------------

    @classmethod
    def background(cls) -> RequestContext:
        """Return a fresh context with no deadline that is never cancelled unless asked to."""
        return cls()

    @classmethod
    def with_timeout(cls, seconds: float, parent: RequestContext | None = None) -> RequestContext:
        """
        Create a context that expires `seconds` from now.

        Args:
            seconds: Time budget in seconds (must be >= 0).
            parent: Optional parent context.

        Returns:
            A new RequestContext.
        """
        assert seconds is not None, "seconds cannot be None."
        assert seconds >= 0, "seconds must be >= 0."
        return cls(deadline=time.monotonic() + seconds, parent=parent)

    @classmethod
    def with_deadline(cls, deadline: float, parent: RequestContext | None = None) -> RequestContext:
        """Create a context that expires at the given monotonic `deadline`."""
        assert deadline is not None, "deadline cannot be None."
        return cls(deadline=deadline, parent=parent)

    def with_cancel(self) -> RequestContext:
        """Derive a child context that can be cancelled independently of this one."""
        return RequestContext(parent=self)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def deadline(self) -> float | None:
        """Monotonic deadline, or None when the context never expires."""
        return self._deadline

    def remaining(self) -> float | None:
        """
        Seconds left until the deadline.

        Returns:
            Non-negative seconds, or None when there is no deadline.
        """
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def error(self) -> CancellationError | None:
        """
        Return why this context is done, or None while it is still live.

        Returns:
            ContextCanceledError after cancel(), DeadlineExceededError once the
            deadline has passed, otherwise None.
        """
        with self._lock:
            if self._error is not None:
                return self._error
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return DeadlineExceededError(deadline=self._deadline)
        return None

    def done(self) -> bool:
        """Return True once the context was cancelled or its deadline passed."""
        return self.error() is not None

    def raise_if_done(self) -> None:
        """
        Raise the context's error if it is done.

        Raises:
            ContextCanceledError: If the context was cancelled.
            DeadlineExceededError: If the deadline has passed.
        """
        error = self.error()
        if error is not None:
            raise error

    def wait(self, timeout: float | None = None) -> bool:
        """
        Block until the context is cancelled, its deadline passes or `timeout` elapses.

        Returns:
            True if the context is done, False on timeout.
        """
        remaining = self.remaining()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        self._done.wait(timeout)
        return self.done()

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel(self) -> None:
        """
        Cancel the context and every context derived from it.

        Idempotent. Done-callbacks run in the calling thread, outside the
        context's lock.
        """
        self._finish(ContextCanceledError())

    def add_done_callback(self, fn: Callable[[], None]) -> None:
        """
        Register `fn` to run when the context is cancelled.

        If the context is already cancelled, `fn` runs immediately.
        """
        with self._lock:
            if self._error is None:
                self._callbacks.append(fn)
                return
        fn()

    def remove_done_callback(self, fn: Callable[[], None]) -> None:
        """Unregister a callback previously added with add_done_callback()."""
        with self._lock:
            try:
                self._callbacks.remove(fn)
            except ValueError:
                pass

    def _add_child(self, child: RequestContext) -> None:
        with self._lock:
            if self._error is None:
                self._children.add(child)
                return
        child._on_parent_done()

    def _on_parent_done(self) -> None:
        assert self._parent is not None
        self._finish(self._parent.error() or ContextCanceledError())

    def _finish(self, error: CancellationError) -> None:
        with self._lock:
            if self._error is not None:
                return
            self._error = error
            callbacks, self._callbacks = self._callbacks, []
            children = list(self._children)
            self._children.clear()
        self._done.set()

        if self._parent is not None:
            self._parent._discard_child(self)

        for fn in callbacks:
            fn()
        for child in children:
            child._on_parent_done()

    def _discard_child(self, child: RequestContext) -> None:
        with self._lock:
            self._children.discard(child)

    # -------------------------------------------------------------------------
    # Context manager
    # -------------------------------------------------------------------------

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        # Releases the registration on the parent; harmless for root contexts.
        self.cancel()

    def __repr__(self) -> str:
        state = type(self._error).__name__ if self._error else "live"
        return f"RequestContext(deadline={self._deadline!r}, state={state})"
