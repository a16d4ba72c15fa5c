"""Dune fetcher.

Endpoints:
    - POST /query/{query_id}/execute (trigger an execution)
    - GET /execution/{execution_id}/results (poll state and rows)
    - GET /query/{query_id}/results (latest completed result, no execution)
API Key: Required (x-dune-api-key header)

Queries execute asynchronously; AsyncJobPoller drives execute() and
get_status() until a terminal state.
"""

import logging
from typing import Any

from ..errors import ConfigError, ParseError
from ..JobPoller import JobExecution, JobState, JobStatus, ResultSet
from ..records import parse_emission_rows
from .base import EMISSIONS, BaseFetcher, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class DuneFetcher(BaseFetcher):
    """Fetcher for the Dune query API.

    Implements the submit/poll protocol consumed by AsyncJobPoller.
    """

    name = "dune"
    capabilities = frozenset({EMISSIONS})
    BASE_URL = "https://api.dune.com/api/v1"

    # Dune execution states -> JobState
    STATES = {
        "QUERY_STATE_PENDING": JobState.PENDING,
        "QUERY_STATE_EXECUTING": JobState.EXECUTING,
        "QUERY_STATE_COMPLETED": JobState.COMPLETED,
        "QUERY_STATE_COMPLETED_PARTIAL": JobState.COMPLETED,
        "QUERY_STATE_FAILED": JobState.FAILED,
        "QUERY_STATE_CANCELLED": JobState.FAILED,
        "QUERY_STATE_EXPIRED": JobState.FAILED,
    }

    @property
    def headers(self) -> dict[str, str]:
        """Return the API key header.

        :raises ConfigError: If no API key is configured.
        """
        if not self.api_key:
            raise ConfigError("[dune] API key required but not provided")
        return {"x-dune-api-key": self.api_key}

    def _state(self, data: dict[str, Any]) -> JobState:
        raw = data.get("state")
        state = self.STATES.get(str(raw))
        if state is None:
            raise ParseError(f"Unknown execution state: {raw!r}", provider=self.name)
        return state

    async def execute(self, query_id: str) -> JobExecution:
        """Trigger an execution of the query.

        :param query_id: Dune query id.
        :returns: Execution handle in its reported state.
        :raises ParseError: If the response has no execution id.
        """
        response = await self._post(
            f"{self.BASE_URL}/query/{query_id}/execute", json={}, headers=self.headers
        )
        data = self._json(response)
        if not isinstance(data, dict) or not data.get("execution_id"):
            raise ParseError(f"No execution_id in response: {data}", provider=self.name)
        return JobExecution(
            id=str(data["execution_id"]),
            query_id=str(query_id),
            state=self._state(data) if data.get("state") else JobState.PENDING,
        )

    async def get_status(self, execution_id: str) -> JobStatus:
        """Poll an execution once.

        :param execution_id: Execution handle id.
        :returns: Decoded status with rows when completed.
        """
        response = await self._get(
            f"{self.BASE_URL}/execution/{execution_id}/results", headers=self.headers
        )
        data = self._json(response)
        if not isinstance(data, dict):
            raise ParseError(f"Unexpected status payload: {data!r}", provider=self.name)

        state = self._state(data)
        if state == JobState.COMPLETED:
            return JobStatus(
                state=state,
                rows=self._rows(data),
                ended_at=data.get("execution_ended_at"),
            )
        if state == JobState.FAILED:
            return JobStatus(
                state=state,
                diagnostics={"state": data.get("state"), "error": data.get("error")},
            )
        return JobStatus(state=state)

    async def fetch_latest(self, query_id: str) -> ResultSet:
        """Fetch the latest completed result without triggering an execution.

        :param query_id: Dune query id.
        :returns: Result set sorted descending by period.
        """
        response = await self._get(
            f"{self.BASE_URL}/query/{query_id}/results", headers=self.headers
        )
        data = self._json(response)
        if not isinstance(data, dict):
            raise ParseError(f"Unexpected results payload: {data!r}", provider=self.name)
        rows = parse_emission_rows(self._rows(data))
        logger.debug(f"[dune] Latest results for query {query_id}: {len(rows)} rows")
        return ResultSet(
            rows=rows,
            execution_id=str(data.get("execution_id") or ""),
            ended_at=data.get("execution_ended_at"),
        )

    def _rows(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        result = data.get("result")
        rows = result.get("rows") if isinstance(result, dict) else None
        if not isinstance(rows, list):
            raise ParseError("No result rows in response", provider=self.name)
        return rows
