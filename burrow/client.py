"""HTTP/SSE client for the coding agent API running inside a task container."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from .errors import AgentProtocolError
from .sse import parse_sse_chunk

logger = logging.getLogger("burrow.client")

PROMPT_ACCEPTED = frozenset({200, 202, 204})
PERMISSION_ACCEPTED = frozenset({200, 204})

EventCallback = Callable[[dict[str, Any]], Awaitable[None] | None]
CloseCallback = Callable[[BaseException | None], Awaitable[None] | None]


def base_url_for(port: int, host: str = "127.0.0.1") -> str:
    return f"http://{host}:{port}"


def text_parts(instruction: str) -> list[dict[str, Any]]:
    return [{"type": "text", "text": instruction}]


def _normalize_base_url(url: str) -> str:
    return url.rstrip("/")


def _detail(response: httpx.Response) -> str:
    try:
        body = response.text
    except httpx.ResponseNotRead:
        return ""
    if not body:
        return ""
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return f": {body[:200]}"
    if isinstance(payload, Mapping):
        message = payload.get("error") or payload.get("message") or payload.get("detail")
        if message:
            return f": {message}"
    return ""


async def _call(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class EventReader:
    """Handle around the asyncio task that consumes the agent event stream."""

    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> None:
        await asyncio.wait({self._task})

    async def stop(self) -> None:
        if self._task.done():
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task


class SessionProtocolClient(Protocol):
    async def health(self, base_url: str) -> None: ...

    async def create_session(self, base_url: str) -> str: ...

    async def send_prompt_async(self, base_url: str, session_id: str, parts: list[dict[str, Any]]) -> None: ...

    async def abort_session(self, base_url: str, session_id: str) -> bool: ...

    async def reply_permission(
        self,
        base_url: str,
        session_id: str,
        permission_id: str,
        response: str,
    ) -> None: ...

    def subscribe_events(
        self,
        base_url: str,
        sink: EventCallback,
        *,
        on_close: CloseCallback | None = None,
    ) -> EventReader: ...


@dataclass(slots=True)
class OpencodeClient:
    """SessionProtocolClient for the opencode server API.

    Every unary call is bounded by ``timeout_s``. The event stream keeps the
    connect timeout but never times out on reads.
    """

    timeout_s: float = 30.0
    headers: Mapping[str, str] | None = None
    client: httpx.AsyncClient | None = None

    @asynccontextmanager
    async def _client_context(self):
        if self.client is not None:
            yield self.client
            return
        async with httpx.AsyncClient() as client:
            yield client

    def _base_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.headers:
            headers.update(self.headers)
        return headers

    async def _request(self, method: str, url: str, *, payload: Any | None = None) -> httpx.Response:
        try:
            async with self._client_context() as client:
                return await client.request(
                    method,
                    url,
                    json=payload,
                    headers=self._base_headers(),
                    timeout=self.timeout_s,
                )
        except httpx.HTTPError as exc:
            raise AgentProtocolError(f"{method} {url} failed: {exc!r}") from exc

    async def health(self, base_url: str) -> None:
        url = f"{_normalize_base_url(base_url)}/global/health"
        response = await self._request("GET", url)
        if not response.is_success:
            raise AgentProtocolError(f"Agent unhealthy ({response.status_code})", status_code=response.status_code)

    async def create_session(self, base_url: str) -> str:
        url = f"{_normalize_base_url(base_url)}/session"
        response = await self._request("POST", url, payload={})
        if not response.is_success:
            raise AgentProtocolError(
                f"Session creation failed ({response.status_code}){_detail(response)}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise AgentProtocolError("Session creation returned invalid JSON") from exc
        session_id = data.get("id") if isinstance(data, Mapping) else None
        if not isinstance(session_id, str) or not session_id:
            raise AgentProtocolError("Session creation response has no id")
        return session_id

    async def send_prompt_async(self, base_url: str, session_id: str, parts: list[dict[str, Any]]) -> None:
        url = f"{_normalize_base_url(base_url)}/session/{session_id}/prompt_async"
        response = await self._request("POST", url, payload={"parts": parts})
        if response.status_code not in PROMPT_ACCEPTED:
            raise AgentProtocolError(
                f"Prompt dispatch failed ({response.status_code}){_detail(response)}",
                status_code=response.status_code,
            )

    async def abort_session(self, base_url: str, session_id: str) -> bool:
        url = f"{_normalize_base_url(base_url)}/session/{session_id}/abort"
        response = await self._request("POST", url)
        if not response.is_success:
            raise AgentProtocolError(
                f"Session abort failed ({response.status_code}){_detail(response)}",
                status_code=response.status_code,
            )
        if not response.content:
            return True
        try:
            data = response.json()
        except json.JSONDecodeError:
            return True
        if isinstance(data, bool):
            return data
        if isinstance(data, Mapping):
            return bool(data.get("aborted", True))
        return True

    async def reply_permission(
        self,
        base_url: str,
        session_id: str,
        permission_id: str,
        response: str,
    ) -> None:
        url = f"{_normalize_base_url(base_url)}/session/{session_id}/permissions/{permission_id}"
        reply = await self._request("POST", url, payload={"response": response})
        if reply.status_code not in PERMISSION_ACCEPTED:
            raise AgentProtocolError(
                f"Permission reply failed ({reply.status_code}){_detail(reply)}",
                status_code=reply.status_code,
            )

    def subscribe_events(
        self,
        base_url: str,
        sink: EventCallback,
        *,
        on_close: CloseCallback | None = None,
    ) -> EventReader:
        """Start streaming ``/event`` on a background task.

        Decoded events are passed to ``sink`` in wire order. ``on_close`` is
        called once the stream ends on its own, with the error if any; it is
        not called when the reader is stopped.
        """
        url = f"{_normalize_base_url(base_url)}/event"
        task = asyncio.create_task(self._run_reader(url, sink, on_close), name=f"event-reader:{url}")
        return EventReader(task)

    async def _run_reader(self, url: str, sink: EventCallback, on_close: CloseCallback | None) -> None:
        error: BaseException | None = None
        try:
            await self._read_events(url, sink)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc
            logger.warning("event_stream_failed", extra={"url": url, "error": repr(exc)})
        if on_close is not None:
            await _call(on_close, error)

    async def _read_events(self, url: str, sink: EventCallback) -> None:
        headers = self._base_headers()
        headers["Accept"] = "text/event-stream"
        timeout = httpx.Timeout(self.timeout_s, read=None)
        async with self._client_context() as client:
            async with client.stream("GET", url, headers=headers, timeout=timeout) as response:
                if not response.is_success:
                    await response.aread()
                    raise AgentProtocolError(
                        f"Event subscription failed ({response.status_code}){_detail(response)}",
                        status_code=response.status_code,
                    )
                buffer = b""
                async for chunk in response.aiter_bytes():
                    buffer += chunk
                    events, buffer = parse_sse_chunk(buffer)
                    for event in events:
                        try:
                            await _call(sink, event)
                        except Exception:
                            logger.exception("event_sink_failed", extra={"url": url, "type": event.get("type")})
                if buffer.strip():
                    logger.warning("event_stream_truncated", extra={"url": url, "pending_bytes": len(buffer)})


__all__ = [
    "PERMISSION_ACCEPTED",
    "PROMPT_ACCEPTED",
    "EventReader",
    "OpencodeClient",
    "SessionProtocolClient",
    "base_url_for",
    "text_parts",
]
