"""AsyncJobPoller: Submit-then-poll protocol for query-style providers.

Some providers run a query asynchronously: a trigger request returns an
execution id, and the result must be polled until the execution reaches a
terminal state.

Lifecycle of a JobExecution:
    PENDING -> EXECUTING -> COMPLETED | FAILED
    PENDING/EXECUTING -> TIMED_OUT (poll budget exhausted)

Transitions are driven only by poll responses. Terminal states are final.
Completed rows are returned sorted by period, most recent first.

.. code-block:: python

    >>> poller = AsyncJobPoller(dune_fetcher, poll_interval=1.0, max_polls=30)
    >>> execution = await poller.submit("4740951")
    >>> result = await poller.await_completion(execution)
    >>> result.rows[0].period >= result.rows[-1].period
    True
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from .errors import JobFailed, JobTimedOut
from .records import EmissionRecord, parse_emission_rows

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    """State of a remote query execution."""

    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT)


@dataclass
class JobExecution:
    """Handle of one remote execution.

    :ivar id: Provider-assigned execution id.
    :ivar query_id: Query that was executed.
    :ivar state: Current state.
    :ivar submitted_at: Unix timestamp of submission.
    :ivar polls: Number of status polls performed so far.
    """

    id: str
    query_id: str
    state: JobState = JobState.PENDING
    submitted_at: float = field(default_factory=time.time)
    polls: int = 0


@dataclass(frozen=True)
class JobStatus:
    """One poll response, already decoded by the provider adapter.

    :ivar state: Reported state.
    :ivar rows: Raw result rows (only when completed).
    :ivar ended_at: Provider timestamp of completion, if reported.
    :ivar diagnostics: Provider error payload (only when failed).
    """

    state: JobState
    rows: list[dict[str, Any]] | None = None
    ended_at: str | None = None
    diagnostics: dict[str, Any] | None = None


@dataclass(frozen=True)
class ResultSet:
    """Parsed rows of a completed execution.

    :ivar rows: Emission records sorted descending by period.
    :ivar execution_id: Execution the rows came from.
    :ivar ended_at: Provider timestamp of completion, if reported.
    """

    rows: tuple[EmissionRecord, ...]
    execution_id: str = ""
    ended_at: str | None = None


class JobClient(Protocol):
    """Provider side of the submit/poll protocol."""

    async def execute(self, query_id: str) -> JobExecution:
        """Trigger an execution and return its handle."""
        ...

    async def get_status(self, execution_id: str) -> JobStatus:
        """Poll the execution once."""
        ...


class AsyncJobPoller:
    """Drives executions to completion with a bounded poll budget.

    :ivar client: Provider implementing the submit/poll protocol.
    :ivar poll_interval: Seconds between polls.
    :ivar max_polls: Maximum number of polls before timing out.
    """

    DEFAULT_POLL_INTERVAL = 1.0
    DEFAULT_MAX_POLLS = 30

    def __init__(
        self,
        client: JobClient,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_polls: int = DEFAULT_MAX_POLLS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        parse_rows: Callable[[Any], tuple[EmissionRecord, ...]] = parse_emission_rows,
    ) -> None:
        """Initialize the poller.

        :param client: Provider implementing execute() and get_status().
        :param poll_interval: Seconds between polls (default: 1.0).
        :param max_polls: Poll budget (default: 30, i.e. ~30s ceiling).
        :param sleep: Coroutine used to wait between polls.
        :param parse_rows: Converts raw rows into sorted records.
        :raises ValueError: If max_polls is less than 1.
        """
        if max_polls < 1:
            raise ValueError("max_polls must be at least 1")
        self.client = client
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._sleep = sleep
        self._parse_rows = parse_rows
        self._last_result: ResultSet | None = None

    @property
    def last_result(self) -> ResultSet | None:
        """Last successfully completed result set held in memory."""
        return self._last_result

    async def submit(self, query_id: str) -> JobExecution:
        """Trigger an execution of the query.

        :param query_id: Provider query identifier.
        :returns: Execution handle.
        """
        execution = await self.client.execute(query_id)
        logger.info(f"Submitted query {query_id} as execution {execution.id}")
        return execution

    async def await_completion(
        self,
        execution: JobExecution,
        poll_interval: float | None = None,
        max_polls: int | None = None,
    ) -> ResultSet:
        """Poll until the execution reaches a terminal state.

        :param execution: Handle returned by submit().
        :param poll_interval: Override of the poll interval.
        :param max_polls: Override of the poll budget.
        :returns: Result set sorted descending by period.
        :raises JobFailed: If the provider reports failure.
        :raises JobTimedOut: If the budget is exhausted first.
        """
        interval = self.poll_interval if poll_interval is None else poll_interval
        budget = self.max_polls if max_polls is None else max_polls

        for poll in range(1, budget + 1):
            status = await self.client.get_status(execution.id)
            execution.polls = poll
            execution.state = status.state
            logger.debug(f"Execution {execution.id}: {status.state.value} (poll {poll}/{budget})")

            if status.state == JobState.COMPLETED:
                result = ResultSet(
                    rows=self._parse_rows(status.rows or []),
                    execution_id=execution.id,
                    ended_at=status.ended_at,
                )
                self._last_result = result
                logger.info(
                    f"Execution {execution.id} completed after {poll} polls "
                    f"({len(result.rows)} rows)"
                )
                return result

            if status.state == JobState.FAILED:
                logger.warning(f"Execution {execution.id} failed: {status.diagnostics}")
                raise JobFailed(
                    f"Execution {execution.id} failed",
                    execution_id=execution.id,
                    diagnostics=status.diagnostics,
                )

            if poll < budget:
                await self._sleep(interval)

        execution.state = JobState.TIMED_OUT
        logger.warning(f"Execution {execution.id} timed out after {budget} polls")
        raise JobTimedOut(
            f"Execution {execution.id} not finished after {budget} polls",
            execution_id=execution.id,
            polls=budget,
        )

    async def run(self, query_id: str, *, fallback: bool = False) -> ResultSet:
        """Submit the query and wait for its result.

        :param query_id: Provider query identifier.
        :param fallback: Return the last completed result set instead of
            triggering a new execution, if one is held in memory.
        :returns: Result set sorted descending by period.
        """
        if fallback and self._last_result is not None:
            logger.info(f"Serving last completed result for query {query_id}")
            return self._last_result
        execution = await self.submit(query_id)
        return await self.await_completion(execution)
