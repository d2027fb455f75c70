"""HTTP client for the remote workflow execution engine."""

from typing import Any, Dict, Optional

import httpx
from loguru import logger
from pydantic import ValidationError

from ..errors import EngineError
from ..stream import EventStreamClient
from .models import RunRecord, StartRunResponse, error_message


class EngineClient:
    """
    Async client for the execution engine endpoints.

    Every failure (transport error, non-2xx status, unparseable body) is
    raised as :class:`~tracesync.errors.EngineError`.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        events_path: str = "/api/events/stream",
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.events_path = events_path
        self._api_key = api_key
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    @classmethod
    def from_config(cls, config, http_client: Optional[httpx.AsyncClient] = None) -> "EngineClient":
        """Build a client from an ``EngineConfig``."""
        return cls(
            config.base_url,
            api_key=config.api_key,
            timeout=config.timeout_seconds,
            events_path=config.events_path,
            http_client=http_client,
        )

    @property
    def headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    @property
    def events_url(self) -> str:
        return self.url(self.events_path)

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def start_run(self, workflow_id: str, input: Any = None) -> StartRunResponse:
        """Start a full run of ``workflow_id``."""
        data = await self._request(
            "POST", f"/api/workflows/{workflow_id}/execute", json={"input": input or {}}
        )
        response = self._parse(StartRunResponse, data)
        logger.info(f"Started run {response.run_id} of workflow {workflow_id}")
        return response

    async def test_node(self, workflow_id: str, node_id: str, input: Any = None) -> StartRunResponse:
        """Run ``workflow_id`` up to and including ``node_id``."""
        data = await self._request(
            "POST",
            f"/api/workflows/{workflow_id}/nodes/{node_id}/test-with-context",
            json=input or {},
        )
        response = self._parse(StartRunResponse, data)
        logger.info(f"Started test of node {node_id} in workflow {workflow_id}")
        return response

    async def get_run(self, run_id: str) -> RunRecord:
        """Fetch the current snapshot of a run."""
        data = await self._request("GET", f"/api/execution/{run_id}")
        return self._parse(RunRecord, data)

    def event_stream(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        stream_id: Optional[str] = None,
    ) -> EventStreamClient:
        """Create (but do not connect) a client for the engine's push feed.

        The stream shares this client's connection pool unless ``http_client``
        is given.
        """
        headers = {}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return EventStreamClient(
            self.events_url,
            http_client=http_client or self._client,
            headers=headers,
            stream_id=stream_id,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "EngineClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = self.url(path)
        try:
            response = await self._client.request(method, url, headers=self.headers, **kwargs)
        except httpx.HTTPError as e:
            raise EngineError(f"{method} {url} failed: {e}") from e

        if response.status_code >= 400:
            raise EngineError(
                f"{method} {url} returned HTTP {response.status_code}: {self._error_message(response)}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise EngineError(f"{method} {url} returned invalid JSON: {e}", status_code=response.status_code) from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return error_message(body.get("error") or body.get("message") or body)
        return str(body)

    @staticmethod
    def _parse(model, data: Any):
        if not isinstance(data, dict):
            raise EngineError(f"Unexpected response body: {type(data).__name__}")
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise EngineError(f"Invalid {model.__name__}: {e}") from e
