"""
Global configuration for hyperate.

Two sections drive `ConfiguredTransport` and `create_rate_limited_transport()`:
`rate_limit` (the Limiter and the header feedback loop) and `transport` (the
requests-backed base transport). Both are frozen dataclasses; every field can
be set from a `HYPERATE_*` environment variable.

Precedence (highest to lowest):
1. Arguments passed to transport constructors / factories
2. Values set via HYPERATE.configure()
3. Environment variables (HYPERATE_*) - when allow_env_override=True
4. Defaults declared on the dataclass fields

Example:
    >>> from hyperate import HYPERATE
    >>> HYPERATE.configure(
    ...     rate_limit={"rate": 5.0, "burst": 2, "header_adaptation": True},
    ...     transport={"request_timeout": 10},
    ... )
    >>> HYPERATE.config.rate_limit.burst
    2
"""

from __future__ import annotations

import math
import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from typing import Any, Self

from hyperate._rate_limit import DEFAULT_REMAINING_HEADER, DEFAULT_RESET_HEADER

_UNLIMITED_VALUES = ("none", "null", "unlimited")


# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """
    Raised when a HYPERATE_* environment variable cannot be parsed.

    The parsing error is available as `__cause__`.

    Attributes:
        env_var: Name of the environment variable.
        value: Raw value found in the environment.
        expected_type: Human-readable description of the accepted values.
    """

    def __init__(self, env_var: str, value: str, expected_type: str):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"{env_var}={value!r} is not a valid {expected_type}")


class ConfigValidationError(ValueError):
    """Raised by `validate()` when a section holds a value the transports cannot use."""

    def __init__(self, field: str, value: Any, message: str, section: str):
        self.field = field
        self.value = value
        self.section = section
        super().__init__(f"[{section}] {field}={value!r}: {message}")


# =============================================================================
# Value Parsers
# =============================================================================


def _parse_bool(raw: str) -> bool:
    normalized = raw.strip().lower()
    if normalized in ("true", "1", "yes", "on"):
        return True
    if normalized in ("false", "0", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _parse_max_wait_time(value: Any) -> float | None:
    """Seconds as a number or numeric string; None or "unlimited"/"none"/"null" for no bound."""
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if text.lower() in _UNLIMITED_VALUES:
            return None
        return float(text)
    return float(value)


def _setting(
    default: Any,
    env: str,
    parse: Callable[[Any], Any],
    expected: str | None = None,
    nullable: bool = False,
) -> Any:
    """
    Declare a config field bound to an environment variable.

    Args:
        default: Value used when nothing else sets the field.
        env: Name of the HYPERATE_* variable read by `with_env_vars()`.
        parse: Converts the raw environment string (and, for nullable
            fields, any override value) into the field value.
        expected: Description used in ConfigEnvVarError. Defaults to the
            parser's name.
        nullable: Whether None is a meaningful value rather than "not set".
    """
    return field(
        default=default,
        metadata={
            "env": env,
            "parse": parse,
            "expected": expected or parse.__name__,
            "nullable": nullable,
        },
    )


# =============================================================================
# Configuration Sections
# =============================================================================


@dataclass(frozen=True)
class _Section:
    """Shared override and environment handling for the config sections."""

    def with_overrides(self, overrides: dict[str, Any]) -> Self:
        """
        Return a copy with the given fields replaced.

        None leaves a field unchanged unless the field is nullable, in which
        case the value goes through the field's parser first.

        Raises:
            ValueError: If `overrides` names a field this section does not have.
        """
        if not overrides:
            return self

        known = {f.name: f for f in fields(self)}
        unknown = set(overrides) - set(known)
        if unknown:
            raise ValueError(f"Unknown config fields: {sorted(unknown)}. Valid fields are: {sorted(known)}")

        changes: dict[str, Any] = {}
        for name, value in overrides.items():
            metadata = known[name].metadata
            if metadata.get("nullable"):
                changes[name] = metadata["parse"](value)
            elif value is not None:
                changes[name] = value
        return replace(self, **changes) if changes else self

    def with_env_vars(self) -> Self:
        """
        Return a copy with every set, non-empty HYPERATE_* variable applied.

        Raises:
            ConfigEnvVarError: If a variable cannot be parsed.
        """
        overrides: dict[str, Any] = {}
        for f in fields(self):
            env_var = f.metadata["env"]
            raw = os.environ.get(env_var)
            if not raw:
                continue
            try:
                overrides[f.name] = f.metadata["parse"](raw)
            except (ValueError, TypeError) as e:
                raise ConfigEnvVarError(env_var, raw, f.metadata["expected"]) from e
        return self.with_overrides(overrides)


@dataclass(frozen=True)
class RateLimitConfig(_Section):
    """
    Settings for the Limiter and RateLimitedTransport built from configuration.

    Attributes:
        enabled: Whether ConfiguredTransport wraps its base transport at all.
            Env var: HYPERATE_RATE_LIMIT_ENABLED
        rate: Initial refill rate in requests per second ("inf" for unlimited).
            Env var: HYPERATE_RATE_LIMIT_RATE
        burst: Maximum number of requests admitted at once.
            Env var: HYPERATE_RATE_LIMIT_BURST
        header_adaptation: Retune the rate from RateLimit-* response headers.
            Env var: HYPERATE_RATE_LIMIT_HEADER_ADAPTATION
        integer_division: Truncate adapted rates to whole requests per second.
            Env var: HYPERATE_RATE_LIMIT_INTEGER_DIVISION
        remaining_header: Header carrying the remaining quota.
            Env var: HYPERATE_RATE_LIMIT_REMAINING_HEADER
        reset_header: Header carrying the seconds until the quota resets.
            Env var: HYPERATE_RATE_LIMIT_RESET_HEADER
        max_wait_time: Upper bound in seconds on the admission wait. None
            (or "unlimited") leaves only the request's own context in charge.
            Env var: HYPERATE_RATE_LIMIT_MAX_WAIT_TIME
    """

    enabled: bool = _setting(True, "HYPERATE_RATE_LIMIT_ENABLED", _parse_bool, "bool")
    rate: float = _setting(10.0, "HYPERATE_RATE_LIMIT_RATE", float)
    burst: int = _setting(5, "HYPERATE_RATE_LIMIT_BURST", int)
    header_adaptation: bool = _setting(False, "HYPERATE_RATE_LIMIT_HEADER_ADAPTATION", _parse_bool, "bool")
    integer_division: bool = _setting(False, "HYPERATE_RATE_LIMIT_INTEGER_DIVISION", _parse_bool, "bool")
    remaining_header: str = _setting(DEFAULT_REMAINING_HEADER, "HYPERATE_RATE_LIMIT_REMAINING_HEADER", str)
    reset_header: str = _setting(DEFAULT_RESET_HEADER, "HYPERATE_RATE_LIMIT_RESET_HEADER", str)
    max_wait_time: float | None = _setting(
        None,
        "HYPERATE_RATE_LIMIT_MAX_WAIT_TIME",
        _parse_max_wait_time,
        "float or 'unlimited'",
        nullable=True,
    )

    def validate(self) -> Self:
        """
        Check the values a Limiter and RateLimitedTransport would reject.

        Raises:
            ConfigValidationError: On the first invalid field.
        """
        if self.rate is None or math.isnan(self.rate) or self.rate < 0:
            raise ConfigValidationError("rate", self.rate, "must be >= 0 (or inf)", "rate_limit")
        if self.burst <= 0:
            raise ConfigValidationError("burst", self.burst, "must be greater than 0", "rate_limit")
        for name in ("remaining_header", "reset_header"):
            if not getattr(self, name):
                raise ConfigValidationError(name, getattr(self, name), "must not be empty", "rate_limit")
        if self.max_wait_time is not None and self.max_wait_time <= 0:
            raise ConfigValidationError(
                "max_wait_time", self.max_wait_time, "must be greater than 0 (or None)", "rate_limit"
            )
        return self


@dataclass(frozen=True)
class TransportConfig(_Section):
    """
    Settings for the RequestsTransport that ConfiguredTransport builds.

    Attributes:
        request_timeout: Network timeout in seconds for requests that set none.
            Env var: HYPERATE_TRANSPORT_REQUEST_TIMEOUT
        user_agent: User-Agent header sent with every request.
            Env var: HYPERATE_TRANSPORT_USER_AGENT
    """

    request_timeout: float = _setting(30.0, "HYPERATE_TRANSPORT_REQUEST_TIMEOUT", float)
    user_agent: str = _setting("hyperate", "HYPERATE_TRANSPORT_USER_AGENT", str)

    def validate(self) -> Self:
        """Raise ConfigValidationError if the timeout is not positive."""
        if self.request_timeout <= 0:
            raise ConfigValidationError(
                "request_timeout", self.request_timeout, "must be greater than 0", "transport"
            )
        return self


@dataclass(frozen=True)
class HyperateConfig:
    """Both configuration sections, as exposed by `HYPERATE.config`."""

    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)

    def with_env_vars(self) -> HyperateConfig:
        return HyperateConfig(
            rate_limit=self.rate_limit.with_env_vars(),
            transport=self.transport.with_env_vars(),
        )

    def with_section_overrides(
        self,
        *,
        rate_limit: dict[str, Any] | None = None,
        transport: dict[str, Any] | None = None,
    ) -> HyperateConfig:
        return HyperateConfig(
            rate_limit=self.rate_limit.with_overrides(rate_limit or {}),
            transport=self.transport.with_overrides(transport or {}),
        )

    def validate(self) -> HyperateConfig:
        self.rate_limit.validate()
        self.transport.validate()
        return self


# =============================================================================
# Global Configuration Singleton
# =============================================================================


class _Hyperate:
    """
    Holder of the process-wide HyperateConfig.

    ConfiguredTransport reads it when it builds its delegate, so configure()
    affects transports created (or first used) afterwards.
    """

    def __init__(self) -> None:
        self._config: HyperateConfig = HyperateConfig().with_env_vars()

    def configure(
        self,
        *,
        rate_limit: dict[str, Any] | None = None,
        transport: dict[str, Any] | None = None,
        allow_env_override: bool = True,
    ) -> HyperateConfig:
        """
        Replace the configuration, starting from defaults (plus env vars).

        Args:
            rate_limit: RateLimitConfig field overrides.
            transport: TransportConfig field overrides.
            allow_env_override: If True, HYPERATE_* variables fill the fields
                not given here. If False, they are ignored.

        Returns:
            The new configuration.

        Raises:
            ValueError: If a dict names an unknown field.
            ConfigEnvVarError: If an environment variable is malformed.
            ConfigValidationError: If the result is invalid.
        """
        base = HyperateConfig()
        if allow_env_override:
            base = base.with_env_vars()

        self._config = base.with_section_overrides(rate_limit=rate_limit, transport=transport)
        return self.validate()

    @property
    def config(self) -> HyperateConfig:
        """Current configuration (read-only)."""
        return self._config

    def reset(self) -> HyperateConfig:
        """Go back to defaults plus environment variables. Mostly for tests."""
        self._config = HyperateConfig().with_env_vars()
        return self.validate()

    def validate(self) -> HyperateConfig:
        """Validate the current configuration; called on import and after configure()."""
        return self._config.validate()

    def explain(self, output: Callable[[str], None] = print) -> None:
        """
        Write the current configuration, one field per line.

        Args:
            output: Line sink, e.g. `logger.info`. Defaults to print.
        """
        output("HYPERATE Configuration:")
        output("=" * 60)
        for section_name in ("rate_limit", "transport"):
            section = getattr(self._config, section_name)
            output(f"[{section_name}]")
            for f in fields(section):
                output(f"  {f.name} {'.' * (25 - len(f.name))} {getattr(section, f.name)}")
        output("=" * 60)

    def __repr__(self) -> str:
        return f"HYPERATE(config={self._config!r})"


HYPERATE: _Hyperate = _Hyperate()
HYPERATE.validate()
