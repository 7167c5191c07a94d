"""
HTTP client for the agent backend.

HTTPClientWrapper wraps httpx with retry, exponential backoff and error
mapping. HTTPAgentBackend implements the AgentBackend protocol on top of it:
session and message commands under the project's opencode API, and the
server-sent event stream.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from kestrel_chat.client.sse import iter_events
from kestrel_chat.core.events import RawEvent
from kestrel_chat.core.exceptions import BackendError, StreamError
from kestrel_chat.core.models import SessionInfo
from kestrel_chat.core.settings import Settings, get_settings


logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


class HTTPClientWrapper:
    """Wrapper for httpx with retry logic and comprehensive error handling"""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        base_timeout: float = 60.0,
        max_retries: int = 3,
        initial_backoff: float = 1.0,
        max_backoff: float = 32.0,
        backoff_multiplier: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.base_timeout = base_timeout
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=timeout if timeout is not None else self.base_timeout,
            transport=self.transport,
        )

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """GET request with retry logic"""
        return await self._request_with_retry("GET", path, params=params, retries=self.max_retries)

    async def post(self, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """POST request; commands are not idempotent, so no retries"""
        return await self._request_with_retry("POST", path, json=json, retries=0)

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        retries: int = 0,
    ) -> httpx.Response:
        """Execute HTTP request with retry logic"""
        last_error: Optional[Exception] = None

        for attempt in range(retries + 1):
            try:
                async with self._client() as client:
                    response = await client.request(method, path, json=json, params=params)
                    self._check_response_status(response)
                    response.raise_for_status()
                    return response

            except httpx.TimeoutException as e:
                last_error = e
                if attempt < retries:
                    backoff = self._calculate_backoff(attempt)
                    logger.warning(
                        f"Timeout on attempt {attempt + 1}/{retries + 1}: {method} {path}. "
                        f"Retrying in {backoff}s..."
                    )
                    await asyncio.sleep(backoff)

            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                last_error = e

                if self._is_retryable_error(status_code) and attempt < retries:
                    backoff = self._calculate_backoff(attempt)
                    logger.warning(
                        f"HTTP {status_code} on attempt {attempt + 1}/{retries + 1}: {method} {path}. "
                        f"Retrying in {backoff}s..."
                    )
                    await asyncio.sleep(backoff)
                else:
                    raise BackendError(
                        f"HTTP error {status_code}: {_error_detail(e.response)}",
                        status_code=status_code,
                        retry_count=attempt,
                    ) from e

            except httpx.RequestError as e:
                last_error = e
                if attempt < retries:
                    backoff = self._calculate_backoff(attempt)
                    logger.warning(
                        f"Request error on attempt {attempt + 1}/{retries + 1}: {method} {path}. "
                        f"Retrying in {backoff}s..."
                    )
                    await asyncio.sleep(backoff)

        raise BackendError(
            f"Failed after {retries + 1} attempts: {last_error}",
            retry_count=retries,
        )

    @asynccontextmanager
    async def stream(self, path: str, params: Optional[Dict[str, Any]] = None) -> AsyncIterator[httpx.Response]:
        """Open a streaming GET; no retries, the stream lifecycle manager reconnects"""
        try:
            async with self._client() as client:
                headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
                timeout = httpx.Timeout(self.base_timeout, read=None)
                async with client.stream("GET", path, params=params, headers=headers, timeout=timeout) as response:
                    if response.status_code >= 400:
                        raise StreamError(f"Event stream rejected with HTTP {response.status_code}")
                    yield response
        except httpx.HTTPError as e:
            raise StreamError(f"Event stream failed: {e}") from e

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate exponential backoff delay"""
        backoff = min(
            self.initial_backoff * (self.backoff_multiplier ** attempt),
            self.max_backoff,
        )
        return float(backoff)

    def _check_response_status(self, response: httpx.Response) -> None:
        """Map auth failures to a clear error; they are never retried"""
        if response.status_code in (401, 403):
            raise BackendError(
                "Authentication failed: invalid or expired API token",
                status_code=response.status_code,
            )

    def _is_retryable_error(self, status_code: int) -> bool:
        """Determine if HTTP error is retryable"""
        return status_code in RETRYABLE_STATUS_CODES


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body)
    return str(body)


def _json_list(response: httpx.Response) -> List[Dict[str, Any]]:
    body = response.json()
    if isinstance(body, dict):
        body = body.get("data", body.get("items", []))
    if not isinstance(body, list):
        raise BackendError(f"Expected a list from {response.request.url}, got {type(body).__name__}")
    return [item for item in body if isinstance(item, dict)]


class HTTPAgentBackend:
    """AgentBackend over the REST API and event stream of a project sandbox"""

    def __init__(self, http: HTTPClientWrapper):
        self.http = http

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> HTTPAgentBackend:
        settings = settings or get_settings()
        return cls(
            HTTPClientWrapper(
                base_url=settings.api_url,
                token=settings.token_value(),
                base_timeout=settings.request_timeout,
                max_retries=settings.max_retries,
                transport=transport,
            )
        )

    @staticmethod
    def _base(project_id: str) -> str:
        return f"/api/v2/sandboxes/{project_id}/opencode"

    async def list_sessions(self, project_id: str) -> List[SessionInfo]:
        response = await self.http.get(f"{self._base(project_id)}/session")
        return [SessionInfo.model_validate(item) for item in _json_list(response)]

    async def create_session(self, project_id: str, title: Optional[str] = None) -> SessionInfo:
        body: Dict[str, Any] = {}
        if title:
            body["title"] = title
        response = await self.http.post(f"{self._base(project_id)}/session", json=body)
        return SessionInfo.model_validate(response.json())

    async def list_messages(self, project_id: str, session_id: str) -> List[Dict[str, Any]]:
        response = await self.http.get(f"{self._base(project_id)}/session/{session_id}/message")
        return _json_list(response)

    async def send_message(
        self,
        project_id: str,
        session_id: str,
        parts: List[Dict[str, Any]],
        agent: Optional[str] = None,
        model: Optional[Dict[str, str]] = None,
    ) -> None:
        body: Dict[str, Any] = {"parts": parts}
        if agent:
            body["agent"] = agent
        if model:
            body["model"] = {"providerID": model["provider_id"], "modelID": model["model_id"]}
        await self.http.post(f"{self._base(project_id)}/session/{session_id}/message", json=body)

    async def abort_session(self, project_id: str, session_id: str) -> None:
        await self.http.post(f"{self._base(project_id)}/session/{session_id}/abort")

    async def revert_message(self, project_id: str, session_id: str, message_id: str) -> None:
        await self.http.post(
            f"{self._base(project_id)}/session/{session_id}/revert",
            json={"messageID": message_id},
        )

    async def respond_to_permission(
        self,
        project_id: str,
        session_id: str,
        permission_id: str,
        response: str,
    ) -> None:
        await self.http.post(
            f"{self._base(project_id)}/session/{session_id}/permissions/{permission_id}",
            json={"response": response},
        )

    async def list_permissions(self, project_id: str, session_id: str) -> List[Dict[str, Any]]:
        response = await self.http.get(f"{self._base(project_id)}/session/{session_id}/permissions")
        return _json_list(response)

    @asynccontextmanager
    async def event_stream(self, project_id: str) -> AsyncIterator[AsyncIterator[RawEvent]]:
        params = {"token": self.http.token} if self.http.token else None
        async with self.http.stream(f"{self._base(project_id)}/event", params=params) as response:
            logger.info(f"Event stream connected for project {project_id}")
            yield iter_events(response.aiter_lines())


def create_backend(settings: Optional[Settings] = None) -> HTTPAgentBackend:
    """Factory function to create the HTTP backend from settings"""
    return HTTPAgentBackend.from_settings(settings)
