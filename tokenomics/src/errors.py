"""Exception hierarchy for the aggregation engine.

Retries and provider fallback are handled inside the engine. Only
AllProvidersExhausted, JobFailed and JobTimedOut are expected to reach
callers of MetricsService.
"""

from __future__ import annotations

from typing import Any


class TokenomicsError(Exception):
    """Base exception for all engine errors."""

    pass


class ConfigError(TokenomicsError):
    """Raised when configuration is invalid (e.g., unknown provider)."""

    pass


class FetchError(TokenomicsError):
    """Base exception for provider request failures.

    :ivar provider: Name of the provider that failed, if known.
    :ivar status_code: HTTP status code, if a response was received.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        status_code: int | None = None,
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class TransientFetchError(FetchError):
    """Network error, 5xx or 429 response. Retried within the attempt budget.

    :ivar retry_after: Delay in seconds requested by the server, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, provider=provider, status_code=status_code)


class TerminalFetchError(FetchError):
    """4xx response other than 429. Not retried against the same provider."""

    pass


class ParseError(TerminalFetchError):
    """Raised when a provider payload cannot be converted to a typed record."""

    pass


class JobError(TokenomicsError):
    """Base exception for asynchronous query executions.

    :ivar execution_id: Identifier of the remote execution.
    """

    def __init__(self, message: str, *, execution_id: str = "") -> None:
        self.execution_id = execution_id
        super().__init__(message)


class JobFailed(JobError):
    """The remote execution reported failure.

    :ivar diagnostics: Error payload returned by the provider.
    """

    def __init__(
        self,
        message: str,
        *,
        execution_id: str = "",
        diagnostics: dict[str, Any] | None = None,
    ) -> None:
        self.diagnostics = diagnostics or {}
        super().__init__(message, execution_id=execution_id)


class JobTimedOut(JobError):
    """The poll budget was exhausted before the execution finished.

    :ivar polls: Number of status polls performed.
    """

    def __init__(self, message: str, *, execution_id: str = "", polls: int = 0) -> None:
        self.polls = polls
        super().__init__(message, execution_id=execution_id)


class AllProvidersExhausted(TokenomicsError):
    """Every provider, the stale cache and the fallback store were unavailable.

    :ivar key: Metric key that could not be resolved.
    :ivar errors: Dict mapping provider name to the exception it raised
        (e.g., a JobFailed with its diagnostics).
    """

    def __init__(self, key: str, errors: dict[str, Exception] | None = None) -> None:
        self.key = key
        self.errors = dict(errors or {})
        details = "; ".join(
            f"{name}: {type(err).__name__}: {err}" for name, err in self.errors.items()
        )
        message = f"All providers exhausted for {key}"
        if details:
            message += f" ({details})"
        super().__init__(message)
