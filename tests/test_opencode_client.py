import asyncio
import json

import httpx
import pytest

from burrow.client import OpencodeClient, base_url_for, text_parts
from burrow.errors import AgentProtocolError

BASE = base_url_for(41001)


def _client(handler) -> OpencodeClient:
    return OpencodeClient(timeout_s=1.0, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_health_ok_and_unhealthy() -> None:
    statuses = iter([200, 503])
    seen: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(next(statuses), json={"healthy": True})

    client = _client(handler)
    await client.health(BASE)
    with pytest.raises(AgentProtocolError) as excinfo:
        await client.health(BASE)

    assert excinfo.value.status_code == 503
    assert seen == ["http://127.0.0.1:41001/global/health"] * 2


@pytest.mark.asyncio
async def test_transport_error_is_wrapped() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(AgentProtocolError, match="connection refused"):
        await _client(handler).health(BASE)


@pytest.mark.asyncio
async def test_create_session_returns_id() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/session"
        return httpx.Response(200, json={"id": "ses_123", "title": "new"})

    assert await _client(handler).create_session(BASE) == "ses_123"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [httpx.Response(500, json={"error": "boom"}), httpx.Response(200, json={"title": "no id"})],
)
async def test_create_session_failures(response: httpx.Response) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return response

    with pytest.raises(AgentProtocolError):
        await _client(handler).create_session(BASE)


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [200, 202, 204])
async def test_prompt_accepts_success_statuses(status: int) -> None:
    bodies = []

    async def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/session/s1/prompt_async"
        bodies.append(json.loads(request.content))
        return httpx.Response(status)

    await _client(handler).send_prompt_async(BASE, "s1", text_parts("do it"))

    assert bodies == [{"parts": [{"type": "text", "text": "do it"}]}]


@pytest.mark.asyncio
async def test_prompt_rejection_carries_detail() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"message": "bad parts"})

    with pytest.raises(AgentProtocolError, match="bad parts"):
        await _client(handler).send_prompt_async(BASE, "s1", text_parts("x"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("response", "expected"),
    [
        (httpx.Response(200, json={"aborted": True}), True),
        (httpx.Response(200, json=False), False),
        (httpx.Response(204), True),
    ],
)
async def test_abort_session(response: httpx.Response, expected: bool) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/session/s1/abort"
        return response

    assert await _client(handler).abort_session(BASE, "s1") is expected


@pytest.mark.asyncio
async def test_reply_permission_posts_response() -> None:
    captured = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json=True)

    await _client(handler).reply_permission(BASE, "s1", "perm1", "always")

    assert captured == {"path": "/session/s1/permissions/perm1", "body": {"response": "always"}}


@pytest.mark.asyncio
async def test_subscribe_events_reassembles_split_frames() -> None:
    chunks = [
        b'event: session.status\ndata: {"sessionID":"s1","sta',
        b'tus":{"type":"busy"}}\n\ndata: {"type":"session.idle","properties":{"sessionID":"s1"}}',
        b"\n\n",
    ]

    async def body():
        for chunk in chunks:
            yield chunk

    async def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/event"
        assert request.headers["accept"] == "text/event-stream"
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())

    received = []
    closed = asyncio.Event()
    close_errors = []

    def on_close(error):
        close_errors.append(error)
        closed.set()

    reader = _client(handler).subscribe_events(BASE, received.append, on_close=on_close)
    await asyncio.wait_for(closed.wait(), timeout=1.0)
    await reader.wait()

    assert [event["type"] for event in received] == ["session.status", "session.idle"]
    assert received[0]["status"] == {"type": "busy"}
    assert close_errors == [None]
    assert reader.done


@pytest.mark.asyncio
async def test_subscribe_failure_reports_error_on_close() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="nope")

    errors = []
    reader = _client(handler).subscribe_events(BASE, lambda event: None, on_close=errors.append)
    await reader.wait()

    assert len(errors) == 1
    assert isinstance(errors[0], AgentProtocolError)
    assert errors[0].status_code == 500


@pytest.mark.asyncio
async def test_stopping_reader_does_not_call_on_close() -> None:
    async def body():
        yield b": hello\n\n"
        await asyncio.Event().wait()

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    errors = []
    reader = _client(handler).subscribe_events(BASE, lambda event: None, on_close=errors.append)
    await asyncio.sleep(0.05)
    await reader.stop()
    await reader.stop()

    assert reader.done
    assert errors == []
