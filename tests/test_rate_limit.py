"""Tests for RateLimitedTransport and response hooks."""

import threading
import time
from unittest.mock import MagicMock

import pytest
import requests

from hyperate import (
    CallableResponseHook,
    CancellationError,
    ContextCanceledError,
    DeadlineExceededError,
    HeaderParseError,
    HttpRequest,
    Limiter,
    RateLimitConfig,
    RateLimitedTransport,
    RateLimitHeaderHook,
    RequestContext,
    ResponseHook,
    Transport,
    create_rate_limited_transport,
    with_max_wait_time,
    with_rate_limit_header_check,
    with_response_hook,
)

# =============================================================================
# Helpers
# =============================================================================


def build_response(status_code=200, headers=None):
    response = requests.Response()
    response.status_code = status_code
    response.headers.update(headers or {})
    return response


class MockTransport(Transport):
    """Mock transport for testing."""

    def __init__(self, response=None, error=None):
        self.calls = []
        self.response = response if response is not None else build_response()
        self.error = error

    def send(self, request):
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return self.response


class RecordingHook(ResponseHook):
    """Hook recording what it was called with."""

    def __init__(self):
        self.calls = []

    def __call__(self, response, error):
        self.calls.append((response, error))
        if error is not None:
            raise error
        return response


def new_request(context=None):
    return HttpRequest(
        method="GET",
        url="http://example.com",
        context=context or RequestContext.background(),
    )


# =============================================================================
# Exception Tests
# =============================================================================


class TestHeaderParseError:
    """Tests for HeaderParseError."""

    def test_extends_value_error(self):
        assert issubclass(HeaderParseError, ValueError)

    def test_is_distinguishable_from_transport_and_cancellation_errors(self):
        assert not issubclass(HeaderParseError, requests.RequestException)
        assert not issubclass(HeaderParseError, CancellationError)

    def test_exposes_header_value_and_response(self):
        response = build_response()

        error = HeaderParseError(header="RateLimit-Remaining", value="abc", response=response)

        assert error.header == "RateLimit-Remaining"
        assert error.value == "abc"
        assert error.response is response
        assert "RateLimit-Remaining" in str(error)
        assert "'abc'" in str(error)


# =============================================================================
# RateLimitedTransport Tests
# =============================================================================


class TestRateLimitedTransportInit:
    """Tests for RateLimitedTransport initialization."""

    def test_init_without_options(self):
        delegate = MockTransport()
        limiter = Limiter(rate=10.0, burst=5)

        transport = RateLimitedTransport(delegate, limiter)

        assert transport.delegate is delegate
        assert transport.limiter is limiter
        assert transport.response_hook is None
        assert transport.max_wait_time is None

    def test_init_fails_without_delegate(self):
        with pytest.raises(AssertionError, match="Delegate transport is required"):
            RateLimitedTransport(None, Limiter(rate=1.0, burst=1))

    def test_init_fails_with_non_transport_delegate(self):
        with pytest.raises(AssertionError, match="delegate must be a Transport instance"):
            RateLimitedTransport(object(), Limiter(rate=1.0, burst=1))

    def test_init_fails_without_limiter(self):
        with pytest.raises(AssertionError, match="Limiter is required"):
            RateLimitedTransport(MockTransport(), None)


class TestRateLimitedTransportSend:
    """Tests for the admission and delegation flow."""

    def test_passes_response_through_without_hook(self):
        response = build_response(headers={"RateLimit-Remaining": "abc"})
        delegate = MockTransport(response=response)
        transport = RateLimitedTransport(delegate, Limiter(rate=10.0, burst=5))
        request = new_request()

        result = transport.send(request)

        assert result is response
        assert delegate.calls == [request]

    def test_consumes_exactly_one_token_per_request(self):
        limiter = Limiter(rate=0, burst=5)
        transport = RateLimitedTransport(MockTransport(), limiter)

        transport.send(new_request())
        transport.send(new_request())

        assert limiter.tokens == 3.0

    def test_cancelled_context_never_reaches_delegate(self):
        delegate = MockTransport()
        limiter = Limiter(rate=0, burst=5)
        transport = RateLimitedTransport(delegate, limiter)
        ctx = RequestContext.background()
        ctx.cancel()

        with pytest.raises(ContextCanceledError):
            transport.send(new_request(ctx))

        assert delegate.calls == []
        assert limiter.tokens == 5.0

    def test_deadline_while_waiting_never_reaches_delegate(self):
        delegate = MockTransport()
        transport = RateLimitedTransport(delegate, Limiter(rate=0, burst=1))
        transport.send(new_request())

        with pytest.raises(DeadlineExceededError):
            transport.send(new_request(RequestContext.with_timeout(0.05)))

        assert len(delegate.calls) == 1

    def test_transport_error_passes_through_without_hook(self):
        error = requests.ConnectionError("connection refused")
        transport = RateLimitedTransport(MockTransport(error=error), Limiter(rate=10.0, burst=5))

        with pytest.raises(requests.ConnectionError) as exc_info:
            transport.send(new_request())

        assert exc_info.value is error

    def test_get_and_post_helpers_are_rate_limited(self):
        delegate = MockTransport()
        limiter = Limiter(rate=0, burst=2)
        transport = RateLimitedTransport(delegate, limiter)

        transport.get("http://example.com/items")
        transport.post("http://example.com/items", data={"name": "x"})

        assert limiter.tokens == 0.0
        assert [c.method for c in delegate.calls] == ["GET", "POST"]
        assert delegate.calls[1].json == {"name": "x"}

    def test_concurrent_requests_never_exceed_burst(self):
        delegate = MockTransport()
        transport = RateLimitedTransport(delegate, Limiter(rate=0, burst=3))
        errors = []
        lock = threading.Lock()

        def make_request():
            try:
                transport.send(new_request(RequestContext.with_timeout(0.2)))
            except CancellationError as e:
                with lock:
                    errors.append(e)

        threads = [threading.Thread(target=make_request) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(delegate.calls) == 3
        assert len(errors) == 5


class TestRateLimitedTransportHook:
    """Tests for custom response hooks."""

    def test_hook_receives_response(self):
        response = build_response()
        hook = RecordingHook()
        transport = RateLimitedTransport(
            MockTransport(response=response),
            Limiter(rate=10.0, burst=5),
            with_response_hook(hook),
        )

        result = transport.send(new_request())

        assert result is response
        assert hook.calls == [(response, None)]

    def test_hook_receives_transport_error(self):
        error = requests.Timeout("read timed out")
        hook = RecordingHook()
        transport = RateLimitedTransport(
            MockTransport(error=error),
            Limiter(rate=10.0, burst=5),
            with_response_hook(hook),
        )

        with pytest.raises(requests.Timeout) as exc_info:
            transport.send(new_request())

        assert exc_info.value is error
        assert hook.calls == [(None, error)]

    def test_hook_is_not_called_when_cancelled(self):
        hook = RecordingHook()
        transport = RateLimitedTransport(
            MockTransport(),
            Limiter(rate=10.0, burst=5),
            with_response_hook(hook),
        )
        ctx = RequestContext.background()
        ctx.cancel()

        with pytest.raises(ContextCanceledError):
            transport.send(new_request(ctx))

        assert hook.calls == []

    def test_hook_result_replaces_response(self):
        replacement = build_response(status_code=204)
        transport = RateLimitedTransport(
            MockTransport(),
            Limiter(rate=10.0, burst=5),
            with_response_hook(lambda response, error: replacement),
        )

        assert transport.send(new_request()) is replacement

    def test_hook_can_substitute_an_error(self):
        def reject_server_errors(response, error):
            if error is not None:
                raise error
            if response.status_code >= 500:
                raise RuntimeError("server error")
            return response

        transport = RateLimitedTransport(
            MockTransport(response=build_response(status_code=503)),
            Limiter(rate=10.0, burst=5),
            with_response_hook(reject_server_errors),
        )

        with pytest.raises(RuntimeError, match="server error"):
            transport.send(new_request())

    def test_function_hook_is_wrapped(self):
        transport = RateLimitedTransport(
            MockTransport(),
            Limiter(rate=10.0, burst=5),
            with_response_hook(lambda response, error: response),
        )

        assert isinstance(transport.response_hook, CallableResponseHook)

    def test_with_response_hook_fails_with_none(self):
        with pytest.raises(AssertionError, match="hook cannot be None"):
            with_response_hook(None)


# =============================================================================
# Options Tests
# =============================================================================


class TestOptions:
    """Tests for option ordering and composition."""

    def test_custom_hook_after_header_check_wins(self):
        hook = RecordingHook()

        transport = RateLimitedTransport(
            MockTransport(),
            Limiter(rate=10.0, burst=5),
            with_rate_limit_header_check(),
            with_response_hook(hook),
        )

        assert transport.response_hook is hook

    def test_header_check_after_custom_hook_wins(self):
        limiter = Limiter(rate=10.0, burst=5)

        transport = RateLimitedTransport(
            MockTransport(),
            limiter,
            with_response_hook(RecordingHook()),
            with_rate_limit_header_check(),
        )

        assert isinstance(transport.response_hook, RateLimitHeaderHook)
        assert transport.response_hook.limiter is limiter

    def test_header_check_passes_header_settings(self):
        transport = RateLimitedTransport(
            MockTransport(),
            Limiter(rate=10.0, burst=5),
            with_rate_limit_header_check(
                remaining_header="X-RateLimit-Remaining",
                reset_header="X-RateLimit-Reset",
                integer_division=True,
            ),
        )

        hook = transport.response_hook
        assert hook.remaining_header == "X-RateLimit-Remaining"
        assert hook.reset_header == "X-RateLimit-Reset"
        assert hook.integer_division is True

    def test_max_wait_time_bounds_admission(self):
        delegate = MockTransport()
        transport = RateLimitedTransport(
            delegate,
            Limiter(rate=0, burst=1),
            with_max_wait_time(0.05),
        )
        transport.send(new_request())

        start = time.monotonic()
        with pytest.raises(DeadlineExceededError):
            transport.send(new_request())
        elapsed = time.monotonic() - start

        assert elapsed < 1.0
        assert len(delegate.calls) == 1

    def test_max_wait_time_keeps_earlier_request_deadline(self):
        transport = RateLimitedTransport(
            MockTransport(),
            Limiter(rate=0, burst=1),
            with_max_wait_time(60.0),
        )
        transport.send(new_request())

        start = time.monotonic()
        with pytest.raises(DeadlineExceededError):
            transport.send(new_request(RequestContext.with_timeout(0.05)))

        assert time.monotonic() - start < 1.0

    def test_max_wait_time_leaves_caller_context_live(self):
        transport = RateLimitedTransport(
            MockTransport(),
            Limiter(rate=10.0, burst=5),
            with_max_wait_time(1.0),
        )
        ctx = RequestContext.background()

        transport.send(new_request(ctx))

        assert ctx.done() is False

    def test_max_wait_time_fails_with_zero(self):
        with pytest.raises(AssertionError, match="max_wait_time must be > 0 or None"):
            with_max_wait_time(0)


# =============================================================================
# RateLimitHeaderHook Tests
# =============================================================================


class TestRateLimitHeaderHook:
    """Tests for header-based rate adaptation."""

    def _transport(self, limiter, headers, **kwargs):
        return RateLimitedTransport(
            MockTransport(response=build_response(headers=headers)),
            limiter,
            with_rate_limit_header_check(**kwargs),
        )

    def test_adapts_rate_from_headers(self):
        limiter = Limiter(rate=10.0, burst=5)
        transport = self._transport(limiter, {"RateLimit-Remaining": "100", "RateLimit-Reset": "50"})

        transport.send(new_request())

        assert limiter.rate == 2.0

    def test_adapted_rate_caps_subsequent_requests(self):
        limiter = Limiter(rate=0, burst=1)
        transport = self._transport(limiter, {"RateLimit-Remaining": "100", "RateLimit-Reset": "50"})

        transport.send(new_request())
        assert limiter.allow() is False

        start = time.monotonic()
        transport.send(new_request())
        elapsed = time.monotonic() - start

        # Next token refills at 2 req/s
        assert elapsed >= 0.4

    def test_returns_original_response(self):
        response = build_response(headers={"RateLimit-Remaining": "100", "RateLimit-Reset": "50"})
        transport = RateLimitedTransport(
            MockTransport(response=response),
            Limiter(rate=10.0, burst=5),
            with_rate_limit_header_check(),
        )

        assert transport.send(new_request()) is response

    def test_header_names_are_case_insensitive(self):
        limiter = Limiter(rate=10.0, burst=5)
        transport = self._transport(limiter, {"ratelimit-remaining": "30", "RATELIMIT-RESET": "10"})

        transport.send(new_request())

        assert limiter.rate == 3.0

    def test_missing_headers_leave_rate_unchanged(self):
        limiter = Limiter(rate=10.0, burst=5)
        response = build_response()
        transport = RateLimitedTransport(
            MockTransport(response=response),
            limiter,
            with_rate_limit_header_check(),
        )

        assert transport.send(new_request()) is response
        assert limiter.rate == 10.0

    def test_single_header_leaves_rate_unchanged(self):
        limiter = Limiter(rate=10.0, burst=5)
        transport = self._transport(limiter, {"RateLimit-Remaining": "100"})

        transport.send(new_request())

        assert limiter.rate == 10.0

    def test_empty_header_is_treated_as_missing(self):
        limiter = Limiter(rate=10.0, burst=5)
        transport = self._transport(limiter, {"RateLimit-Remaining": "", "RateLimit-Reset": "50"})

        transport.send(new_request())

        assert limiter.rate == 10.0

    def test_malformed_remaining_raises_header_parse_error(self):
        limiter = Limiter(rate=10.0, burst=5)
        response = build_response(headers={"RateLimit-Remaining": "abc", "RateLimit-Reset": "50"})
        transport = RateLimitedTransport(
            MockTransport(response=response),
            limiter,
            with_rate_limit_header_check(),
        )

        with pytest.raises(HeaderParseError) as exc_info:
            transport.send(new_request())

        assert exc_info.value.header == "RateLimit-Remaining"
        assert exc_info.value.value == "abc"
        assert exc_info.value.response is response
        assert limiter.rate == 10.0

    def test_malformed_reset_raises_header_parse_error(self):
        limiter = Limiter(rate=10.0, burst=5)
        transport = self._transport(limiter, {"RateLimit-Remaining": "100", "RateLimit-Reset": "1.5"})

        with pytest.raises(HeaderParseError) as exc_info:
            transport.send(new_request())

        assert exc_info.value.header == "RateLimit-Reset"
        assert limiter.rate == 10.0

    def test_negative_value_raises_header_parse_error(self):
        limiter = Limiter(rate=10.0, burst=5)
        transport = self._transport(limiter, {"RateLimit-Remaining": "-5", "RateLimit-Reset": "10"})

        with pytest.raises(HeaderParseError):
            transport.send(new_request())

        assert limiter.rate == 10.0

    def test_surrounding_whitespace_is_accepted(self):
        limiter = Limiter(rate=10.0, burst=5)
        transport = self._transport(limiter, {"RateLimit-Remaining": " 20 ", "RateLimit-Reset": "10"})

        transport.send(new_request())

        assert limiter.rate == 2.0

    def test_zero_reset_leaves_rate_unchanged(self):
        limiter = Limiter(rate=10.0, burst=5)
        response = build_response(headers={"RateLimit-Remaining": "100", "RateLimit-Reset": "0"})
        transport = RateLimitedTransport(
            MockTransport(response=response),
            limiter,
            with_rate_limit_header_check(),
        )

        assert transport.send(new_request()) is response
        assert limiter.rate == 10.0

    def test_zero_remaining_stops_refill(self):
        limiter = Limiter(rate=10.0, burst=5)
        transport = self._transport(limiter, {"RateLimit-Remaining": "0", "RateLimit-Reset": "30"})

        transport.send(new_request())

        assert limiter.rate == 0.0

    def test_fractional_rate_by_default(self):
        limiter = Limiter(rate=10.0, burst=5)
        transport = self._transport(limiter, {"RateLimit-Remaining": "1", "RateLimit-Reset": "10"})

        transport.send(new_request())

        assert limiter.rate == pytest.approx(0.1)

    def test_integer_division_truncates_rate(self):
        limiter = Limiter(rate=10.0, burst=5)
        transport = self._transport(
            limiter,
            {"RateLimit-Remaining": "1", "RateLimit-Reset": "10"},
            integer_division=True,
        )

        transport.send(new_request())

        assert limiter.rate == 0.0

    def test_custom_header_names(self):
        limiter = Limiter(rate=10.0, burst=5)
        transport = self._transport(
            limiter,
            {"X-RateLimit-Remaining": "60", "X-RateLimit-Reset": "20"},
            remaining_header="X-RateLimit-Remaining",
            reset_header="X-RateLimit-Reset",
        )

        transport.send(new_request())

        assert limiter.rate == 3.0

    def test_transport_error_passes_through_unchanged(self):
        limiter = Limiter(rate=10.0, burst=5)
        error = requests.ConnectionError("connection reset")
        transport = RateLimitedTransport(
            MockTransport(error=error),
            limiter,
            with_rate_limit_header_check(),
        )

        with pytest.raises(requests.ConnectionError) as exc_info:
            transport.send(new_request())

        assert exc_info.value is error
        assert limiter.rate == 10.0

    def test_hook_does_not_read_headers_on_error(self):
        limiter = MagicMock(spec=Limiter)
        hook = RateLimitHeaderHook(limiter)
        error = requests.Timeout("timed out")

        with pytest.raises(requests.Timeout):
            hook(None, error)

        limiter.set_rate.assert_not_called()

    def test_hook_without_limiter_passes_response_through(self):
        hook = RateLimitHeaderHook(None)
        response = build_response(headers={"RateLimit-Remaining": "abc", "RateLimit-Reset": "x"})

        assert hook(response, None) is response

    def test_hook_is_stateless_across_calls(self):
        limiter = Limiter(rate=10.0, burst=5)
        hook = RateLimitHeaderHook(limiter)

        hook(build_response(headers={"RateLimit-Remaining": "100", "RateLimit-Reset": "50"}), None)
        hook(build_response(), None)

        assert limiter.rate == 2.0

    def test_oversized_remaining_raises_header_parse_error(self):
        limiter = Limiter(rate=10.0, burst=5)
        response = build_response(headers={"RateLimit-Remaining": "9" * 400, "RateLimit-Reset": "1"})
        transport = RateLimitedTransport(
            MockTransport(response=response),
            limiter,
            with_rate_limit_header_check(),
        )

        with pytest.raises(HeaderParseError) as exc_info:
            transport.send(new_request())

        assert exc_info.value.header == "RateLimit-Remaining"
        assert exc_info.value.response is response
        assert limiter.rate == 10.0

    def test_value_beyond_int_string_limit_raises_header_parse_error(self):
        limiter = Limiter(rate=10.0, burst=5)
        transport = self._transport(limiter, {"RateLimit-Remaining": "100", "RateLimit-Reset": "9" * 5000})

        with pytest.raises(HeaderParseError) as exc_info:
            transport.send(new_request())

        assert exc_info.value.header == "RateLimit-Reset"
        assert limiter.rate == 10.0

    def test_oversized_value_rejected_with_integer_division(self):
        limiter = Limiter(rate=10.0, burst=5)
        transport = self._transport(
            limiter,
            {"RateLimit-Remaining": "9" * 400, "RateLimit-Reset": "1"},
            integer_division=True,
        )

        with pytest.raises(HeaderParseError):
            transport.send(new_request())

        assert limiter.rate == 10.0

    def test_largest_64_bit_value_is_accepted(self):
        limiter = Limiter(rate=10.0, burst=5)
        transport = self._transport(limiter, {"RateLimit-Remaining": str(2**63 - 1), "RateLimit-Reset": "1"})

        transport.send(new_request())

        assert limiter.rate == float(2**63 - 1)

    def test_leading_zeros_do_not_count_towards_range(self):
        limiter = Limiter(rate=10.0, burst=5)
        transport = self._transport(limiter, {"RateLimit-Remaining": "0" * 30 + "8", "RateLimit-Reset": "4"})

        transport.send(new_request())

        assert limiter.rate == 2.0

    def test_init_fails_with_empty_header_name(self):
        with pytest.raises(AssertionError, match="remaining_header cannot be empty"):
            RateLimitHeaderHook(Limiter(rate=1.0, burst=1), remaining_header="")


# =============================================================================
# Factory Tests
# =============================================================================


class TestCreateRateLimitedTransport:
    """Tests for create_rate_limited_transport()."""

    def test_builds_limiter_from_config(self):
        delegate = MockTransport()

        transport = create_rate_limited_transport(delegate, config=RateLimitConfig(rate=4.0, burst=2))

        assert transport.delegate is delegate
        assert transport.limiter.rate == 4.0
        assert transport.limiter.burst == 2
        assert transport.response_hook is None
        assert transport.max_wait_time is None

    def test_header_adaptation_installs_header_hook(self):
        config = RateLimitConfig(
            header_adaptation=True,
            integer_division=True,
            remaining_header="X-Remaining",
            reset_header="X-Reset",
        )

        transport = create_rate_limited_transport(MockTransport(), config=config)

        hook = transport.response_hook
        assert isinstance(hook, RateLimitHeaderHook)
        assert hook.limiter is transport.limiter
        assert hook.remaining_header == "X-Remaining"
        assert hook.reset_header == "X-Reset"
        assert hook.integer_division is True

    def test_max_wait_time_from_config(self):
        transport = create_rate_limited_transport(MockTransport(), config=RateLimitConfig(max_wait_time=5.0))

        assert transport.max_wait_time == 5.0

    def test_explicit_options_override_config(self):
        hook = RecordingHook()

        transport = create_rate_limited_transport(
            MockTransport(),
            with_response_hook(hook),
            config=RateLimitConfig(header_adaptation=True),
        )

        assert transport.response_hook is hook

    def test_invalid_config_is_rejected(self):
        from hyperate import ConfigValidationError

        with pytest.raises(ConfigValidationError):
            create_rate_limited_transport(MockTransport(), config=RateLimitConfig(burst=0))
